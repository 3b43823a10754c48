from __future__ import annotations

from backend.app.services.push import priority_options

EVENT = {
    "user_id": "dev-local",
    "event_type": "new_sale",
    "title": {"pt": "Nova venda", "en": "New sale"},
    "content": {"pt": "Você vendeu R$ 97", "en": "You sold R$ 97"},
    "data": {"order": "LZ-1"},
}


def test_push_event_targets_registered_subscriptions(client, transport) -> None:
    profile = client.put(
        "/push/profile", json={"push_enabled": True, "subscription_ids": ["sub-1", "sub-1", " sub-2 "]}
    )
    assert profile.json()["subscription_ids"] == ["sub-1", "sub-2"]
    transport.reply(200, {"id": "notif-1", "recipients": 2})

    response = client.post("/push/events", json=EVENT)

    assert response.status_code == 200
    assert response.json() == {"sent": True, "reason": None, "notification_id": "notif-1", "recipients": 2}
    payload = transport.calls[0]["payload"]
    assert payload["app_id"] == "onesignal-app"
    assert payload["include_subscription_ids"] == ["sub-1", "sub-2"]
    assert payload["headings"] == {"pt": "Nova venda", "en": "New sale"}
    assert payload["data"]["event_type"] == "new_sale"
    assert payload["data"]["order"] == "LZ-1"
    assert payload["data"]["timestamp"].endswith("Z")


def test_push_event_skipped_without_enabled_profile(client, transport) -> None:
    missing = client.post("/push/events", json=EVENT).json()
    client.put("/push/profile", json={"push_enabled": False, "subscription_ids": ["sub-1"]})
    disabled = client.post("/push/events", json=EVENT).json()
    client.put("/push/profile", json={"push_enabled": True, "subscription_ids": []})
    empty = client.post("/push/events", json=EVENT).json()

    assert missing["reason"] == "push notifications disabled"
    assert disabled["reason"] == "push notifications disabled"
    assert empty["reason"] == "no subscription ids registered"
    assert transport.calls == []


def test_push_event_provider_failure_is_bad_gateway(client, transport) -> None:
    client.put("/push/profile", json={"push_enabled": True, "subscription_ids": ["sub-1"]})
    transport.reply(400, {"errors": ["All included players are not subscribed"]})

    response = client.post("/push/events", json=EVENT)

    assert response.status_code == 502


def test_push_queue_sends_pending_items_once(client, transport) -> None:
    client.put("/push/profile", json={"push_enabled": True, "subscription_ids": ["sub-1"]})
    urgent = client.post(
        "/push/queue", json={"user_id": "dev-local", "title": "Pix", "body": "R$ 10", "priority": 10}
    )
    assert urgent.status_code == 201
    client.post("/push/queue", json={"user_id": "dev-local", "title": "Resumo", "body": "Hoje"})
    client.post("/push/queue", json={"user_id": "someone-else", "title": "X", "body": "Y"})

    first = client.post("/push/queue/run").json()
    second = client.post("/push/queue/run").json()

    assert first == {"processed": 3, "sent": 2, "failed": 0}
    assert second == {"processed": 0, "sent": 0, "failed": 0}
    assert transport.calls[0]["payload"]["priority"] == 10
    assert transport.calls[0]["payload"]["require_interaction"] is True
    assert transport.calls[1]["payload"]["ttl"] == 86400


def test_push_queue_counts_failures(client, transport) -> None:
    client.put("/push/profile", json={"push_enabled": True, "subscription_ids": ["sub-1"]})
    client.post("/push/queue", json={"user_id": "dev-local", "title": "A", "body": "B"})
    transport.reply(500, {"errors": ["down"]})

    result = client.post("/push/queue/run").json()

    assert result == {"processed": 1, "sent": 0, "failed": 1}
    item = next(iter(client.app.state.store.push_queue.values()))
    assert item.processed is True
    assert item.last_error.startswith("onesignal rejected request: 500")


def test_priority_options() -> None:
    assert priority_options(10) == {"priority": 10, "ttl": 300, "require_interaction": True}
    assert priority_options(3)["ttl"] == 86400
