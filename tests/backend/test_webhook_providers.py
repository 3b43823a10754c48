from __future__ import annotations

from datetime import datetime

from backend.app.models import InstanceStatus, PaymentProvider
from backend.app.services.commerce_webhooks import normalize_commerce_phone, parse_lenient_datetime
from backend.app.services.membership import extract_buyer
from backend.app.services.payments import parse_payment


def _order(**overrides) -> dict:
    body = {
        "order_number": "LZ-1001",
        "order_status": "Agendado",
        "client_name": "Paula Souza",
        "client_phone": "(11) 98888-7777",
        "client_email": "paula@example.com",
        "order_final_price": "197,00",
        "date_order": "2024-05-10 14:30:00",
        "products": {"main": [{"product_name": "Kit Detox"}]},
    }
    body.update(overrides)
    return body


def _logzz_webhook(client, **overrides) -> dict:
    payload = {"name": "Pedidos", "event_type": "order"}
    payload.update(overrides)
    response = client.post("/logzz/webhooks", json=payload)
    assert response.status_code == 201
    return response.json()


def test_commerce_phone_and_date_parsing() -> None:
    assert normalize_commerce_phone("(11) 98888-7777") == "5511988887777"
    assert normalize_commerce_phone("+55 11 98888-7777") == "5511988887777"
    assert normalize_commerce_phone("1234") is None
    assert parse_lenient_datetime("10/05/2024 14:30") == datetime(2024, 5, 10, 14, 30)
    assert parse_lenient_datetime("2024-05-10T17:30:00Z") == datetime(2024, 5, 10, 17, 30)
    assert parse_lenient_datetime("ontem") is None


def test_logzz_order_triggers_flow_even_when_inactive(client, api_seed, transport) -> None:
    instance = api_seed.instance()
    flow = api_seed.flow(
        [
            {
                "id": "notify",
                "type": "text",
                "data": {"message": "{{logzz_client_name}}, pedido {{pedido}} ({{logzz_product_name}}): {{status_pedido}}"},
            }
        ],
        is_active=False,
    )
    webhook = _logzz_webhook(client, flow_id=flow.id, instance_id=instance.id)

    response = client.post(f"/webhooks/logzz/order?token={webhook['token']}", json=_order())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["flow_triggered"] is True
    assert transport.sent_texts() == ["Paula Souza, pedido LZ-1001 (Kit Detox): Agendado"]
    assert transport.calls[0]["payload"]["number"] == "5511988887777"

    events = client.get("/logzz/events").json()
    assert len(events) == 1
    assert events[0]["total"] == 197.0
    assert events[0]["customer_phone"] == "5511988887777"
    assert events[0]["occurred_at_utc"].startswith("2024-05-10T14:30:00")


def test_logzz_repeated_status_is_deduplicated(client, api_seed) -> None:
    webhook = _logzz_webhook(client)
    url = f"/webhooks/logzz/order?token={webhook['token']}"

    first = client.post(url, json=_order()).json()
    repeat = client.post(url, json=_order()).json()
    moved = client.post(url, json=_order(order_status="Entregue")).json()

    assert first["duplicate"] is False
    assert repeat["duplicate"] is True
    assert repeat["event_id"] == first["event_id"]
    assert moved["duplicate"] is False
    assert len(client.get("/logzz/events").json()) == 2


def test_logzz_reports_missing_connected_instance(client, api_seed, transport) -> None:
    api_seed.instance(status=InstanceStatus.disconnected)
    flow = api_seed.flow([{"id": "t", "type": "text", "data": {"message": "Oi"}}])
    webhook = _logzz_webhook(client, flow_id=flow.id)

    body = client.post(f"/webhooks/logzz/order?token={webhook['token']}", json=_order()).json()

    assert body["flow_triggered"] is False
    assert body["flow_error"] == "No connected instance available"
    assert transport.calls == []


def test_logzz_cart_event_fills_cart_variables(client, api_seed, transport) -> None:
    api_seed.instance()
    cart_flow = api_seed.flow([{"id": "t", "type": "text", "data": {"message": "{{produto}} {{status_carrinho}}"}}])
    cart = _logzz_webhook(client, name="Carrinho", event_type="cart", flow_id=cart_flow.id)

    body = client.post(
        f"/webhooks/logzz/cart?token={cart['token']}",
        json={
            "code": "CART-77",
            "cart_status": "abandonado",
            "client_name": "Rui",
            "client_phone": "11977776666",
            "sale_name": "Curso Online",
            "cost": "49.90",
        },
    ).json()

    assert body["flow_triggered"] is True
    assert transport.sent_texts() == ["Curso Online abandonado"]


def test_logzz_token_and_kind_errors(client) -> None:
    webhook = _logzz_webhook(client)
    disabled = _logzz_webhook(client, name="Off", is_active=False)

    assert client.post("/webhooks/logzz/order", json=_order()).status_code == 400
    assert client.post("/webhooks/logzz/order?token=nope", json=_order()).status_code == 401
    assert client.post(f"/webhooks/logzz/order?token={disabled['token']}", json=_order()).status_code == 403
    assert client.post(f"/webhooks/logzz/cart?token={webhook['token']}", json=_order()).status_code == 400
    assert client.post(f"/webhooks/logzz/order?token={webhook['token']}", json=[1, 2]).status_code == 400


def test_sale_grants_membership(client) -> None:
    headers = {"x-hubla-token": "hubla-token"}
    payload = {"type": "NewSale", "event": {"userEmail": "Cliente@Email.com", "userName": "Cliente Teste"}}

    first = client.post("/webhooks/sales", json=payload, headers=headers)
    again = client.post("/webhooks/sales", json=payload, headers=headers)

    assert first.status_code == 200
    assert first.json()["created"] is True
    assert first.json()["email"] == "cliente@email.com"
    assert again.json()["created"] is False
    assert again.json()["member_id"] == first.json()["member_id"]

    member = client.get("/members/cliente@email.com")
    assert member.status_code == 200
    assert member.json()["is_full_member"] is True
    assert member.json()["name"] == "Cliente Teste"


def test_sale_rejects_bad_token_and_missing_email(client) -> None:
    assert client.post("/webhooks/sales", json={"email": "a@b.com"}).status_code == 401
    assert (
        client.post("/webhooks/sales", json={"event": {}}, headers={"x-hubla-token": "wrong"}).status_code
        == 401
    )
    response = client.post("/webhooks/sales", json={"event": {}}, headers={"x-hubla-token": "hubla-token"})
    assert response.status_code == 400
    assert client.get("/members/nobody@example.com").status_code == 404


def test_extract_buyer_from_other_checkouts() -> None:
    assert extract_buyer({"Customer": {"email": "K@Kiwify.com", "full_name": "Kiwi"}}) == ("k@kiwify.com", "Kiwi")
    assert extract_buyer([{"body": {"data": {"buyer": {"email": "h@hot.com"}}}}]) == ("h@hot.com", "h")
    assert extract_buyer({"foo": "bar"}) == (None, None)


def test_parse_payment_providers() -> None:
    assert parse_payment(PaymentProvider.inter, {"pix": [{"valor": "150.50", "pagador": {"nome": "João"}}]}) == (
        150.5,
        "João",
    )
    assert parse_payment(
        PaymentProvider.infinitepay, {"data": {"attributes": {"amount": 2590, "payer_name": "Ana"}}}
    ) == (25.9, "Ana")
    assert parse_payment(PaymentProvider.infinitepay, {"amount": 1000}) == (10.0, "Desconhecido")


def test_pix_payment_records_and_pushes(client, transport) -> None:
    webhook = client.post("/payments/webhooks", json={"name": "Banco Inter", "provider": "inter"}).json()

    response = client.post(
        f"/webhooks/payments/{webhook['id']}",
        json={"pix": [{"valor": "150.50", "pagador": {"nome": "João"}}]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["amount"] == 150.5
    assert body["payer_name"] == "João"
    assert body["push_sent"] is True

    call = transport.calls_to("onesignal.com")[0]
    assert call["headers"]["Authorization"] == "Basic onesignal-key"
    assert call["payload"]["contents"] == {"en": "R$ 150.50 - João"}
    assert call["payload"]["filters"][0]["value"] == "dev-local"

    listed = client.get("/payments/webhooks").json()[0]
    assert listed["notifications_count"] == 1
    assert listed["total_received"] == 150.5
    notifications = client.get(f"/payments/webhooks/{webhook['id']}/notifications").json()
    assert [n["payer_name"] for n in notifications] == ["João"]


def test_pix_payment_survives_push_failure(client, transport) -> None:
    webhook = client.post("/payments/webhooks", json={"name": "InfinitePay", "provider": "infinitepay"}).json()
    transport.reply(500, {"errors": ["unavailable"]})

    body = client.post(
        f"/webhooks/payments/{webhook['id']}",
        json={"data": {"attributes": {"amount": 2590, "payer_name": "Ana"}}},
    ).json()

    assert body["success"] is True
    assert body["amount"] == 25.9
    assert body["push_sent"] is False


def test_pix_payment_edge_cases(client) -> None:
    active = client.post("/payments/webhooks", json={"name": "Inter", "provider": "inter"}).json()
    inactive = client.post(
        "/payments/webhooks", json={"name": "Old", "provider": "inter", "is_active": False}
    ).json()

    empty = client.post(f"/webhooks/payments/{active['id']}", json={"pix": []})
    assert empty.json() == {
        "success": True,
        "message": "No amount detected",
        "notification_id": None,
        "amount": None,
        "payer_name": None,
        "push_sent": False,
    }
    assert client.post(f"/webhooks/payments/{inactive['id']}", json={}).status_code == 404
    assert client.post("/webhooks/payments/pay_missing", json={}).status_code == 404
