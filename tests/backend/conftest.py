from __future__ import annotations

import random
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import (
    ApiProvider,
    ContactRecord,
    FlowCreateRequest,
    FlowRecord,
    FlowTriggerType,
    InstanceCreateRequest,
    InstanceRecord,
    InstanceStatus,
)
from backend.app.services.flow_engine import FlowEngine
from backend.app.services.gateway import GatewayFactory
from backend.app.services.http_client import HttpResponse
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore

USER_ID = "dev-local"


def no_sleep(seconds: float) -> None:
    return None


class FakeTransport:
    """Records outbound HTTP calls; replays queued responses, else answers 200."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.queued: list[Any] = []

    def __call__(self, method, url, headers, payload, timeout) -> HttpResponse:
        self.calls.append({"method": method, "url": url, "headers": headers, "payload": payload})
        if self.queued:
            response = self.queued.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return HttpResponse(
            status=200,
            body={"key": {"id": f"WAMSG{len(self.calls):06d}"}},
            text="{}",
        )

    def reply(self, status: int, body: Any = None) -> None:
        self.queued.append(HttpResponse(status=status, body=body, text=str(body)))

    def calls_to(self, fragment: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if fragment in call["url"]]

    def sent_texts(self) -> list[str]:
        return [
            call["payload"]["text"]
            for call in self.calls
            if "/message/sendText/" in call["url"] or call["url"].endswith("/send/text")
        ]


class Seeder:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def instance(
        self,
        name: str = "inst-1",
        *,
        user_id: str = USER_ID,
        provider: ApiProvider = ApiProvider.evolution,
        status: InstanceStatus = InstanceStatus.connected,
        token: Optional[str] = None,
    ) -> InstanceRecord:
        return self.store.create_instance(
            user_id,
            InstanceCreateRequest(
                name=name,
                instance_name=name,
                api_provider=provider,
                api_token=token,
                status=status,
            ),
        )

    def flow(
        self,
        nodes: list[dict[str, Any]],
        *,
        user_id: str = USER_ID,
        edges: Optional[list[dict[str, Any]]] = None,
        trigger_type: FlowTriggerType = FlowTriggerType.manual,
        keywords: tuple[str, ...] = (),
        **extra: Any,
    ) -> FlowRecord:
        """Start node followed by the given nodes, chained in order unless edges are given."""
        all_nodes = [{"id": "start-1", "type": "start", "data": {}}] + nodes
        if edges is None:
            edges = [
                {"source": all_nodes[i]["id"], "target": all_nodes[i + 1]["id"]}
                for i in range(len(all_nodes) - 1)
            ]
        request = FlowCreateRequest(
            name=extra.pop("name", "Fluxo teste"),
            nodes=all_nodes,
            edges=edges,
            trigger_type=trigger_type,
            trigger_keywords=list(keywords),
            **extra,
        )
        return self.store.create_flow(user_id, request)

    def contact(
        self,
        phone: str = "5511999990001",
        *,
        user_id: str = USER_ID,
        instance_id: Optional[str] = None,
        name: Optional[str] = "Maria",
    ) -> ContactRecord:
        contact, _ = self.store.find_or_create_contact(
            user_id=user_id, phone=phone, instance_id=instance_id, name=name
        )
        return contact


@pytest.fixture()
def env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("EVOLUTION_BASE_URL", "https://evolution.test")
    monkeypatch.setenv("EVOLUTION_API_KEY", "evo-key")
    monkeypatch.setenv("UAZAPI_BASE_URL", "https://uazapi.test")
    monkeypatch.setenv("GATEWAY_WEBHOOK_SECRET", "")
    monkeypatch.setenv("HUBLA_WEBHOOK_TOKEN", "hubla-token")
    monkeypatch.setenv("ONESIGNAL_APP_ID", "onesignal-app")
    monkeypatch.setenv("ONESIGNAL_API_KEY", "onesignal-key")
    monkeypatch.setenv("AI_GATEWAY_API_KEY", "")


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def client(env: None, transport: FakeTransport) -> TestClient:
    app = create_app()
    app.state.http_transport = transport
    app.state.sleeper = no_sleep
    app.state.gateway_factory.transport = transport
    app.state.gateway_factory.sleeper = no_sleep
    app.state.push_client.transport = transport
    return TestClient(app)


@pytest.fixture()
def api_seed(client: TestClient) -> Seeder:
    return Seeder(client.app.state.store)


@pytest.fixture()
def settings(env: None) -> Settings:
    return load_settings()


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def seed(store: InMemoryStore) -> Seeder:
    return Seeder(store)


@pytest.fixture()
def gateway_factory(store: InMemoryStore, settings: Settings, transport: FakeTransport) -> GatewayFactory:
    return GatewayFactory(store=store, settings=settings, transport=transport, sleeper=no_sleep)


@pytest.fixture()
def engine(
    store: InMemoryStore,
    settings: Settings,
    gateway_factory: GatewayFactory,
    transport: FakeTransport,
) -> FlowEngine:
    return FlowEngine(
        store=store,
        settings=settings,
        gateway_factory=gateway_factory,
        http_transport=transport,
        sleeper=no_sleep,
        rng=random.Random(7),
    )
