from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app


def _token(secret: str, subject: str, roles: list[str], *, expires_in: timedelta = timedelta(hours=1)) -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _headers(subject: str, roles: list[str], **kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {_token('test-secret', subject, roles, **kwargs)}"}


@pytest.fixture()
def secured(env, monkeypatch) -> TestClient:
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    return TestClient(create_app())


def test_auth_blocks_missing_or_expired_token(secured) -> None:
    missing = secured.get("/flows")
    expired = secured.get("/flows", headers=_headers("owner-1", ["owner"], expires_in=timedelta(minutes=-5)))
    forged = secured.get("/flows", headers={"Authorization": f"Bearer {_token('other', 'owner-1', ['owner'])}"})

    assert missing.status_code == 401
    assert expired.status_code == 401
    assert expired.json()["detail"] == "auth token expired"
    assert forged.status_code == 401


def test_owner_token_is_scoped_to_own_data(secured) -> None:
    owner = _headers("owner-1", ["owner"])
    created = secured.post("/flows", headers=owner, json={"name": "Meu fluxo"})

    assert created.status_code == 201
    assert created.json()["user_id"] == "owner-1"
    assert len(secured.get("/flows", headers=owner).json()) == 1
    assert secured.get("/flows?user_id=owner-2", headers=owner).status_code == 403
    assert secured.get("/flows", headers=_headers("owner-2", ["owner"])).json() == []
    assert secured.get(f"/flows/{created.json()['id']}", headers=_headers("owner-2", ["owner"])).status_code == 403


def test_admin_may_read_other_tenants(secured) -> None:
    secured.post("/flows", headers=_headers("owner-1", ["owner"]), json={"name": "Meu fluxo"})

    response = secured.get("/flows?user_id=owner-1", headers=_headers("admin-1", ["admin"]))

    assert response.status_code == 200
    assert [flow["name"] for flow in response.json()] == ["Meu fluxo"]


def test_service_token_runs_queues_but_cannot_edit_flows(secured) -> None:
    service = _headers("scheduler", ["service"])

    assert secured.post("/flows", headers=service, json={"name": "x"}).status_code == 403
    assert secured.post("/queue/delays/run", headers=service).status_code == 200
    assert secured.post("/push/queue/run", headers=service).status_code == 200
    assert secured.post("/queue/delays/run", headers=_headers("owner-1", ["owner"])).status_code == 403


def test_member_lookup_requires_admin_or_service(secured) -> None:
    assert secured.get("/members/a@b.com", headers=_headers("owner-1", ["owner"])).status_code == 403
    assert secured.get("/members/a@b.com", headers=_headers("admin-1", ["admin"])).status_code == 404


def test_provider_webhooks_are_public_even_when_auth_enabled(secured) -> None:
    gateway = secured.post(
        "/webhooks/gateway",
        json={"event": "connection.update", "instance": "ghost", "data": {"state": "open"}},
    )
    sale = secured.post(
        "/webhooks/sales",
        json={"event": {"userEmail": "cliente@example.com"}},
        headers={"x-hubla-token": "hubla-token"},
    )

    assert gateway.status_code == 200
    assert sale.status_code == 200
