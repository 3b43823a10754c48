from __future__ import annotations

import http.client
import json
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union
from urllib import request
from urllib.error import HTTPError, URLError


class TransportError(Exception):
    pass


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: Any
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json_dict(self) -> dict:
        return self.body if isinstance(self.body, dict) else {}


# (method, url, headers, payload, timeout) -> HttpResponse
HttpTransport = Callable[[str, str, dict, Optional[Union[dict, list, str]], int], HttpResponse]


def _decode(raw: bytes) -> tuple[Any, str]:
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text), text
    except json.JSONDecodeError:
        return None, text


def urllib_transport(
    method: str,
    url: str,
    headers: dict,
    payload: Optional[Union[dict, list, str]],
    timeout: int,
) -> HttpResponse:
    data: Optional[bytes] = None
    if payload is not None and method.upper() != "GET":
        if isinstance(payload, str):
            data = payload.encode("utf-8")
        else:
            data = json.dumps(payload).encode("utf-8")
    try:
        req = request.Request(url, data=data, method=method.upper())
        req.add_header("Content-Type", "application/json")
        for key, value in headers.items():
            req.add_header(key, value)
        with request.urlopen(req, timeout=timeout) as response:
            body, text = _decode(response.read())
            return HttpResponse(status=response.status, body=body, text=text)
    except HTTPError as exc:
        body, text = _decode(exc.read())
        return HttpResponse(status=exc.code, body=body, text=text)
    except (URLError, OSError, ValueError, http.client.HTTPException) as exc:
        raise TransportError(f"request to {url} failed: {exc}") from exc


def error_text(response: HttpResponse) -> str:
    body = response.json_dict()
    for key in ("error", "message", "detail"):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    nested = body.get("response")
    if isinstance(nested, dict) and nested.get("message"):
        return str(nested["message"])[:300]
    return f"HTTP {response.status}: {response.text[:200]}"
