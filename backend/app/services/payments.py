from __future__ import annotations

import logging
from typing import Any

from backend.app.models import PaymentProvider, PaymentWebhookResponse
from backend.app.services.push import OneSignalClient, PushDeliveryError
from backend.app.store import InMemoryStore, StoreNotFoundError

logger = logging.getLogger("zapdesk.payments")

UNKNOWN_PAYER = "Desconhecido"


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _name(container: Any, key: str) -> str:
    if isinstance(container, dict) and isinstance(container.get(key), str) and container[key].strip():
        return container[key].strip()
    return UNKNOWN_PAYER


def parse_payment(provider: PaymentProvider, payload: Any) -> tuple[float, str]:
    """Return (amount in reais, payer name) from a provider's pix notification."""
    if not isinstance(payload, dict):
        return 0.0, UNKNOWN_PAYER
    if provider == PaymentProvider.inter:
        pix = payload.get("pix")
        if isinstance(pix, list) and pix and isinstance(pix[0], dict):
            return _number(pix[0].get("valor")), _name(pix[0].get("pagador"), "nome")
        return _number(payload.get("valor")), _name(payload.get("pagador"), "nome")

    attributes = (payload.get("data") or {}).get("attributes") if isinstance(payload.get("data"), dict) else None
    if isinstance(attributes, dict):
        return _number(attributes.get("amount")) / 100, _name(attributes, "payer_name")
    return _number(payload.get("amount")) / 100, _name(payload, "payer_name")


def process_payment(
    store: InMemoryStore,
    push_client: OneSignalClient,
    *,
    webhook_id: str,
    payload: Any,
) -> PaymentWebhookResponse:
    webhook = store.get_payment_webhook(webhook_id)
    if not webhook.is_active:
        raise StoreNotFoundError(f"payment webhook inactive: {webhook_id}")

    amount, payer = parse_payment(webhook.provider, payload)
    if amount <= 0:
        return PaymentWebhookResponse(success=True, message="No amount detected")

    notification = store.record_payment_notification(
        webhook_id=webhook.id,
        amount=amount,
        payer_name=payer,
        payload=payload if isinstance(payload, dict) else {},
    )
    logger.info(
        "payment_received webhook_id=%s provider=%s amount=%.2f",
        webhook.id,
        webhook.provider.value,
        amount,
    )

    push_sent = False
    if push_client.configured:
        try:
            push_client.send(
                headings={"en": "Pix Pago"},
                contents={"en": f"R$ {amount:.2f} - {payer}"},
                user_tag=webhook.user_id,
                data={
                    "type": "pix_payment",
                    "amount": amount,
                    "payer_name": payer,
                    "bank_type": webhook.provider.value,
                },
            )
            push_sent = True
        except PushDeliveryError as exc:
            logger.warning("payment_push_failed webhook_id=%s error=%s", webhook.id, exc)

    return PaymentWebhookResponse(
        success=True,
        notification_id=notification.id,
        amount=amount,
        payer_name=payer,
        push_sent=push_sent,
    )
