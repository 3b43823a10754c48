from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from backend.app.models import (
    CommerceEventKind,
    CommerceEventRecord,
    CommerceWebhookResponse,
    InstanceRecord,
    InstanceStatus,
    LogzzWebhookRecord,
    SessionStatus,
    utc_now,
)
from backend.app.services.flow_engine import FlowEngine
from backend.app.services.webhooks import PayloadError, WebhookTokenError
from backend.app.settings import Settings
from backend.app.store import InMemoryStore, StoreForbiddenError, StoreNotFoundError, new_id

logger = logging.getLogger("zapdesk.commerce")

_DATE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d", "%d/%m/%Y %H:%M:%S", "%d/%m/%Y %H:%M", "%d/%m/%Y")


def normalize_commerce_phone(value: Any) -> Optional[str]:
    """Brazilian phone with country code, or None when too short to be dialable."""
    if not value:
        return None
    cleaned = "".join(char for char in str(value) if char.isdigit())
    if 10 <= len(cleaned) <= 11 and not cleaned.startswith("55"):
        cleaned = "55" + cleaned
    return cleaned if len(cleaned) >= 12 else None


def parse_lenient_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def safe_var(value: Any) -> str:
    if value is None or value == "":
        return " "
    return str(value)


def _product_name(body: dict) -> str:
    products = body.get("products")
    if isinstance(products, dict):
        main = products.get("main")
        if isinstance(main, list) and main and isinstance(main[0], dict):
            return str(main[0].get("product_name") or "")
    if isinstance(products, list) and products and isinstance(products[0], dict):
        return str(products[0].get("product_name") or "")
    return ""


def _to_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(str(value).replace(",", "."))
    except ValueError:
        return None


def _order_fields(body: dict) -> dict[str, Any]:
    return {
        "phone": body.get("client_phone"),
        "name": body.get("client_name"),
        "email": body.get("client_email"),
        "order_number": body.get("order_number") or body.get("order_code"),
        "status": body.get("order_status"),
        "product_name": _product_name(body),
        "total": body.get("order_final_price"),
        "occurred_at": body.get("date_order"),
    }


def _cart_fields(body: dict) -> dict[str, Any]:
    return {
        "phone": body.get("client_phone"),
        "name": body.get("client_name"),
        "email": body.get("client_email"),
        "order_number": body.get("code") or body.get("external_id"),
        "status": body.get("cart_status"),
        "product_name": _product_name(body) or body.get("sale_name") or "",
        "total": body.get("cost"),
        "occurred_at": body.get("date_open_cart"),
    }


def _shipment_fields(body: dict) -> dict[str, Any]:
    return {
        "phone": body.get("recipient_phone"),
        "name": body.get("recipient_name") or body.get("client_name"),
        "email": body.get("recipient_email"),
        "order_number": body.get("code") or body.get("tracking_code"),
        "status": body.get("status"),
        "product_name": body.get("product") or "",
        "total": body.get("cost"),
        "occurred_at": body.get("shipping_date"),
    }


_EXTRACTORS: dict[CommerceEventKind, Callable[[dict], dict[str, Any]]] = {
    CommerceEventKind.order: _order_fields,
    CommerceEventKind.cart: _cart_fields,
    CommerceEventKind.shipment: _shipment_fields,
}


def flow_variables(kind: CommerceEventKind, body: dict, fields: dict[str, Any], phone: str) -> dict[str, Any]:
    variables: dict[str, Any] = {
        "lastMessage": "",
        "nome": safe_var(fields["name"] or phone),
        "telefone": safe_var(phone),
        "logzz_client_name": safe_var(fields["name"]),
        "logzz_client_phone": safe_var(fields["phone"]),
        "logzz_client_email": safe_var(fields["email"]),
        "logzz_client_document": safe_var(body.get("client_document") or body.get("recipient_document")),
        "logzz_product_name": safe_var(fields["product_name"]),
        "logzz_order_number": safe_var(fields["order_number"]),
        "logzz_order_status": safe_var(fields["status"]),
        "logzz_order_value": safe_var(fields["total"]),
        "logzz_client_address_city": safe_var(body.get("client_address_city") or body.get("recipient_city")),
        "logzz_client_address_state": safe_var(body.get("client_address_state") or body.get("recipient_state")),
        "logzz_client_zip_code": safe_var(body.get("client_zip_code") or body.get("recipient_zip_code")),
        "logzz_checkout_url": safe_var(body.get("checkout_url")),
        "logzz_tracking_code": safe_var(body.get("tracking_code")),
        "logzz_carrier": safe_var(body.get("logistic_operator") or body.get("carrier")),
        "logzz_delivery_estimate": safe_var(body.get("delivery_estimate")),
        "_sent_node_ids": [],
        "_triggered_by": "logzz_webhook",
    }
    if kind == CommerceEventKind.order:
        variables.update(
            pedido=safe_var(fields["order_number"]),
            status_pedido=safe_var(fields["status"]),
            valor_pedido=safe_var(fields["total"]),
        )
    elif kind == CommerceEventKind.cart:
        variables.update(
            status_carrinho=safe_var(fields["status"]),
            produto=safe_var(fields["product_name"]),
        )
    else:
        variables.update(
            codigo_envio=safe_var(fields["order_number"]),
            status_envio=safe_var(fields["status"]),
            data_envio=safe_var(body.get("shipping_date")),
        )
    return variables


class CommerceWebhookProcessor:
    def __init__(self, *, store: InMemoryStore, engine: FlowEngine, settings: Settings) -> None:
        self.store = store
        self.engine = engine
        self.settings = settings

    def authenticate(self, token: str, kind: CommerceEventKind) -> LogzzWebhookRecord:
        webhook = self.store.get_logzz_webhook_by_token(token)
        if webhook is None:
            raise WebhookTokenError("invalid token")
        if not webhook.is_active:
            raise StoreForbiddenError("webhook disabled")
        if webhook.event_type != kind:
            raise PayloadError(f"webhook expects {webhook.event_type.value} events")
        return webhook

    def process(self, *, token: str, kind: CommerceEventKind, body: Any) -> CommerceWebhookResponse:
        webhook = self.authenticate(token, kind)
        if not isinstance(body, dict):
            raise PayloadError("payload must be a json object")

        fields = _EXTRACTORS[kind](body)
        phone = normalize_commerce_phone(fields["phone"])
        order_number = str(fields["order_number"]) if fields["order_number"] else None
        status = str(fields["status"]) if fields["status"] else None

        if order_number:
            since = utc_now() - timedelta(seconds=self.settings.commerce_dedupe_window_seconds)
            duplicate = self.store.find_recent_commerce_event(
                webhook_id=webhook.id, order_number=order_number, status=status, since=since
            )
            if duplicate:
                logger.info(
                    "commerce_event_duplicate webhook_id=%s order_number=%s status=%s",
                    webhook.id,
                    order_number,
                    status,
                )
                return CommerceWebhookResponse(success=True, event_id=duplicate.id, duplicate=True)

        event = self.store.add_commerce_event(
            CommerceEventRecord(
                id=new_id("cev"),
                webhook_id=webhook.id,
                user_id=webhook.user_id,
                kind=kind,
                order_number=order_number,
                status=status,
                customer_name=str(fields["name"]) if fields["name"] else None,
                customer_phone=phone,
                customer_email=str(fields["email"]) if fields["email"] else None,
                product_name=fields["product_name"] or None,
                total=_to_float(fields["total"]),
                occurred_at_utc=parse_lenient_datetime(fields["occurred_at"]),
                payload=body,
                created_at_utc=utc_now(),
            )
        )
        logger.info("commerce_event_stored event_id=%s kind=%s webhook_id=%s", event.id, kind.value, webhook.id)

        if not webhook.flow_id or not phone:
            return CommerceWebhookResponse(success=True, event_id=event.id)

        flow_error = self._trigger_flow(webhook, kind, body, fields, phone, event.id)
        event = self.store.update_commerce_event(
            event.id, flow_triggered=flow_error is None, flow_error=flow_error
        )
        return CommerceWebhookResponse(
            success=True,
            event_id=event.id,
            flow_triggered=event.flow_triggered,
            flow_error=event.flow_error,
        )

    def _pick_instance(self, webhook: LogzzWebhookRecord) -> Optional[InstanceRecord]:
        if webhook.instance_id:
            instance = self.store.instances.get(webhook.instance_id)
            if (
                instance
                and instance.user_id == webhook.user_id
                and instance.status == InstanceStatus.connected
            ):
                return instance
            logger.warning("commerce_instance_unavailable instance_id=%s", webhook.instance_id)
        connected = self.store.connected_instances(webhook.user_id)
        return connected[0] if connected else None

    def _trigger_flow(
        self,
        webhook: LogzzWebhookRecord,
        kind: CommerceEventKind,
        body: dict,
        fields: dict[str, Any],
        phone: str,
        event_id: str,
    ) -> Optional[str]:
        instance = self._pick_instance(webhook)
        if instance is None:
            return "No connected instance available"
        try:
            flow = self.store.get_flow(webhook.flow_id, user_id=webhook.user_id)
        except (StoreNotFoundError, StoreForbiddenError):
            return "Flow not found"

        contact, _ = self.store.find_or_create_contact(
            user_id=webhook.user_id,
            phone=phone,
            instance_id=instance.id,
            name=str(fields["name"] or phone),
        )
        variables = flow_variables(kind, body, fields, phone)
        variables["contactName"] = safe_var(contact.name or contact.phone)
        variables["_logzz_event_id"] = event_id

        now = utc_now()
        existing = self.store.find_session(flow_id=flow.id, contact_id=contact.id)
        if existing:
            session = self.store.update_session(
                existing.id,
                instance_id=instance.id,
                current_node_id=flow.start_node_id(),
                variables=variables,
                status=SessionStatus.active,
                started_at_utc=now,
                last_interaction_utc=now,
                completed_at_utc=None,
                timeout_at_utc=None,
                processing=False,
                processing_started_at_utc=None,
            )
        else:
            session = self.store.create_session(
                flow=flow, contact=contact, instance_id=instance.id, variables=variables
            )
        logger.info("commerce_flow_triggered session_id=%s flow_id=%s", session.id, flow.id)
        result = self.engine.process_session(session.id)
        return result.error if not result.success else None
