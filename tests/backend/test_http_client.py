from __future__ import annotations

import pytest

from backend.app.services.http_client import HttpResponse, TransportError, error_text, urllib_transport


def test_url_without_scheme_raises_transport_error() -> None:
    with pytest.raises(TransportError):
        urllib_transport("POST", "hooks.test/lead", {}, {"ok": True}, 5)


def test_invalid_header_value_raises_transport_error() -> None:
    with pytest.raises(TransportError):
        urllib_transport("GET", "http://127.0.0.1:9/", {"X-Token": "a\nb"}, None, 1)


def test_error_text_prefers_message_fields() -> None:
    assert error_text(HttpResponse(status=400, body={"message": " número inválido "}, text="")) == "número inválido"
    assert error_text(HttpResponse(status=502, body=None, text="bad gateway")) == "HTTP 502: bad gateway"
