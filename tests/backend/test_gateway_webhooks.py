from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import ApiProvider, FlowTriggerType, MessageStatus, utc_now
from backend.app.services.inbound import PermanentWebhookError, parse_gateway_event
from backend.app.services.webhooks import sign_body


PHONE = "5511988887777"


def _message(text: str, message_id: str, *, instance: str = "inst-1", phone: str = PHONE, **extra) -> dict:
    data = {
        "key": {"remoteJid": f"{phone}@s.whatsapp.net", "fromMe": False, "id": message_id},
        "pushName": "Carlos",
        "message": {"conversation": text},
    }
    data.update(extra)
    return {"event": "messages.upsert", "instance": instance, "data": data}


def _post(client: TestClient, payload: dict):
    response = client.post("/webhooks/gateway", json=payload)
    assert response.status_code == 200
    return response.json()


def test_parse_evolution_media_message() -> None:
    event = parse_gateway_event(
        {
            "event": "messages.upsert",
            "instance": "inst-1",
            "data": {
                "key": {"remoteJid": f"{PHONE}@s.whatsapp.net", "fromMe": False, "id": "BAE5F00D12345678"},
                "message": {"imageMessage": {"url": "https://cdn.test/a.jpg", "caption": "comprovante"}},
            },
        }
    )
    assert event.provider == ApiProvider.evolution
    assert event.message_type == "image"
    assert event.content == "comprovante"
    assert event.media_url == "https://cdn.test/a.jpg"
    assert event.phone == PHONE


def test_parse_uazapi_message() -> None:
    event = parse_gateway_event(
        {
            "EventType": "messages",
            "instanceName": "uaz-1",
            "message": {
                "chatid": f"{PHONE}@s.whatsapp.net",
                "messageid": "5511900000000:3EB0C0FFEE1234",
                "fromMe": False,
                "wasSentByApi": False,
                "text": "Olá",
                "senderName": "Bia",
                "messageType": "ExtendedTextMessage",
            },
        }
    )
    assert event.provider == ApiProvider.uazapi
    assert event.event == "messages.upsert"
    assert event.instance_name == "uaz-1"
    assert event.message_id == "3EB0C0FFEE1234"
    assert event.content == "Olá"
    assert event.message_type == "text"
    assert event.push_name == "Bia"


def test_parse_rejects_payload_without_event() -> None:
    with pytest.raises(PermanentWebhookError):
        parse_gateway_event({"data": {}})


def test_keyword_message_starts_flow(client, api_seed, transport) -> None:
    api_seed.instance()
    api_seed.flow(
        [{"id": "offer", "type": "text", "data": {"message": "Oferta para {{nome}}"}}],
        trigger_type=FlowTriggerType.keyword,
        keywords=("promo",),
    )

    body = _post(client, _message("quero a PROMO", "3EB0AAAA00000001"))

    assert body["status"] == "processed"
    assert body["attempts"] == 1
    assert body["detail"].startswith("keyword_flow:")
    assert transport.sent_texts() == ["Oferta para Carlos"]
    assert transport.calls[0]["payload"]["number"] == PHONE


def test_answer_resumes_waiting_session(client, api_seed, transport) -> None:
    api_seed.instance()
    api_seed.flow(
        [
            {"id": "ask", "type": "text", "data": {"message": "Qual seu email?"}},
            {"id": "wait", "type": "waitInput", "data": {"variableName": "email"}},
            {"id": "thanks", "type": "text", "data": {"message": "Recebido {{email}}"}},
        ],
        trigger_type=FlowTriggerType.keyword,
        keywords=("cadastro",),
    )

    _post(client, _message("cadastro", "3EB0AAAA00000002"))
    body = _post(client, _message("ana@exemplo.com", "3EB0AAAA00000003"))

    assert body["detail"].startswith("resumed:")
    assert transport.sent_texts() == ["Qual seu email?", "Recebido ana@exemplo.com"]


def test_all_flow_runs_once_per_contact(client, api_seed, transport) -> None:
    api_seed.instance()
    api_seed.flow(
        [{"id": "hello", "type": "text", "data": {"message": "Bem-vindo"}}],
        trigger_type=FlowTriggerType.all,
    )

    first = _post(client, _message("oi", "3EB0AAAA00000004"))
    second = _post(client, _message("tudo bem?", "3EB0AAAA00000005"))

    assert first["detail"].startswith("all_flow:")
    assert second["detail"] == "stored"
    assert transport.sent_texts() == ["Bem-vindo"]


def test_media_pauses_flows_until_resumed(client, api_seed, transport) -> None:
    api_seed.instance()
    api_seed.flow(
        [{"id": "hello", "type": "text", "data": {"message": "Bem-vindo"}}],
        trigger_type=FlowTriggerType.all,
        pause_on_media=True,
    )
    image = _message("", "3EB0AAAA00000006")
    image["data"]["message"] = {"imageMessage": {"url": "https://cdn.test/pix.jpg"}}

    paused = _post(client, image)
    after = _post(client, _message("oi", "3EB0AAAA00000007"))

    assert paused["detail"] == "stored:paused_on_media"
    assert after["detail"] == "stored:flow_paused"
    assert transport.sent_texts() == []

    contact = client.get("/contacts").json()[0]
    assert contact["flow_paused"] is True
    resumed = client.post(f"/contacts/{contact['id']}/resume-flows")
    assert resumed.status_code == 200
    assert resumed.json()["flow_paused"] is False


def test_duplicate_event_and_repeated_content_are_skipped(client, api_seed) -> None:
    api_seed.instance()
    payload = _message("oi", "3EB0AAAA00000008")

    first = _post(client, payload)
    replay = _post(client, payload)
    echo = _post(client, _message("oi", "3EB0AAAA00000009"))

    assert first["detail"] == "stored"
    assert replay["status"] == "duplicate"
    assert echo["detail"] == "skipped:duplicate_content"


def test_group_and_own_messages_do_not_trigger_flows(client, api_seed) -> None:
    api_seed.instance()
    api_seed.flow(
        [{"id": "hello", "type": "text", "data": {"message": "Bem-vindo"}}],
        trigger_type=FlowTriggerType.all,
    )
    group = _message("oi grupo", "3EB0AAAA00000010")
    group["data"]["key"]["remoteJid"] = "120363025555555555@g.us"
    own = _message("mensagem do celular", "3EB0AAAA00000011")
    own["data"]["key"]["fromMe"] = True

    assert _post(client, group)["detail"] == "skipped:group_message"
    assert _post(client, own)["detail"] == "stored:outbound"


def test_locked_session_is_retried(client, api_seed, transport) -> None:
    store = client.app.state.store
    api_seed.instance()
    api_seed.flow(
        [
            {"id": "wait", "type": "waitInput", "data": {"variableName": "cidade"}},
            {"id": "thanks", "type": "text", "data": {"message": "Cidade {{cidade}}"}},
        ],
        trigger_type=FlowTriggerType.keyword,
        keywords=("frete",),
    )
    started = _post(client, _message("frete", "3EB0AAAA00000012"))
    session_id = started["detail"].split(":", 1)[1]
    store.try_lock_session(session_id, now=utc_now(), lock_timeout_seconds=60)
    answer = _message("Campinas", "3EB0AAAA00000013")

    pending = _post(client, answer)
    assert pending["status"] == "retry_pending"
    assert pending["attempts"] == 1

    store.release_session_lock(session_id)
    retried = _post(client, answer)
    assert retried["status"] == "processed"
    assert retried["attempts"] == 2
    assert transport.sent_texts() == ["Cidade Campinas"]


def test_unknown_instance_fails_permanently(client) -> None:
    body = _post(client, _message("oi", "3EB0AAAA00000014", instance="ghost"))
    assert body["status"] == "failed"
    assert body["detail"] == "unknown instance: ghost"


def test_status_updates_only_move_forward(client, api_seed, transport) -> None:
    store = client.app.state.store
    api_seed.instance()
    api_seed.flow(
        [{"id": "offer", "type": "text", "data": {"message": "Oferta"}}],
        trigger_type=FlowTriggerType.keyword,
        keywords=("promo",),
    )
    _post(client, _message("promo", "3EB0AAAA00000015"))

    read = _post(
        client,
        {"event": "messages.update", "instance": "inst-1", "data": {"keyId": "WAMSG000001", "status": "READ"}},
    )
    late_ack = _post(
        client,
        {
            "event": "messages.update",
            "instance": "inst-1",
            "data": {"key": {"id": "WAMSG000001"}, "update": {"status": "DELIVERY_ACK"}},
        },
    )

    assert read["detail"] == "status_updated:1"
    assert late_ack["detail"] == "status_updated:0"
    assert store.find_message_by_remote_id("WAMSG000001").status == MessageStatus.read


def test_connection_update_sets_instance_status(client, api_seed) -> None:
    api_seed.instance()

    body = _post(client, {"event": "connection.update", "instance": "inst-1", "data": {"state": "close"}})

    assert body["detail"] == "instance_status:disconnected"
    assert client.get("/instances").json()[0]["status"] == "disconnected"


def test_uazapi_instance_replies_through_uazapi(client, api_seed, transport) -> None:
    api_seed.instance("uaz-1", provider=ApiProvider.uazapi, token="uaz-token")
    api_seed.flow(
        [{"id": "hello", "type": "text", "data": {"message": "Oi {{nome}}"}}],
        trigger_type=FlowTriggerType.all,
    )

    body = _post(
        client,
        {
            "EventType": "messages",
            "instanceName": "uaz-1",
            "message": {
                "chatid": f"{PHONE}@s.whatsapp.net",
                "messageid": "3EB0BBBB00000001",
                "fromMe": False,
                "text": "bom dia",
                "senderName": "Bia",
                "messageType": "Conversation",
            },
        },
    )

    assert body["detail"].startswith("all_flow:")
    call = transport.calls[0]
    assert call["url"] == "https://uazapi.test/send/text"
    assert call["headers"] == {"token": "uaz-token"}
    assert call["payload"] == {"number": PHONE, "text": "Oi Bia"}


def test_invalid_json_is_rejected(client) -> None:
    response = client.post(
        "/webhooks/gateway", content=b"{not json", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400


def test_signature_required_when_secret_set(env, monkeypatch, transport) -> None:
    monkeypatch.setenv("GATEWAY_WEBHOOK_SECRET", "topsecret")
    app = create_app()
    app.state.gateway_factory.transport = transport
    client = TestClient(app)
    body = json.dumps(
        {"event": "connection.update", "instance": "inst-x", "data": {"state": "open"}},
        separators=(",", ":"),
    ).encode("utf-8")

    missing = client.post("/webhooks/gateway", content=body, headers={"content-type": "application/json"})
    wrong = client.post(
        "/webhooks/gateway",
        content=body,
        headers={"content-type": "application/json", "x-hub-signature-256": sign_body(body, "other")},
    )
    valid = client.post(
        "/webhooks/gateway",
        content=body,
        headers={"content-type": "application/json", "x-hub-signature-256": sign_body(body, "topsecret")},
    )

    assert missing.status_code == 403
    assert wrong.status_code == 403
    assert valid.status_code == 200
    assert valid.json()["detail"] == "unknown instance: inst-x"


def test_health_stays_responsive_while_a_flow_sleeps(client, api_seed, transport) -> None:
    app = client.app
    app.state.sleeper = time.sleep
    api_seed.instance()
    api_seed.flow(
        [
            {"id": "pause", "type": "delay", "data": {"delay": 2, "unit": "seconds"}},
            {"id": "hello", "type": "text", "data": {"message": "Pronto"}},
        ],
        trigger_type=FlowTriggerType.all,
    )

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
            webhook = asyncio.create_task(
                http.post("/webhooks/gateway", json=_message("oi", "3EB0DDDD00000001"))
            )
            await asyncio.sleep(0.3)
            started = time.perf_counter()
            health = await http.get("/health")
            latency = time.perf_counter() - started
            return health, latency, await webhook

    health, latency, webhook = asyncio.run(scenario())

    assert health.status_code == 200
    assert latency < 1.0
    assert webhook.json()["detail"].startswith("all_flow:")
    assert transport.sent_texts() == ["Pronto"]
