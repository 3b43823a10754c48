from __future__ import annotations

import logging
from typing import Any, Optional

from backend.app.models import SaleWebhookResponse
from backend.app.services.webhooks import PayloadError
from backend.app.store import InMemoryStore

logger = logging.getLogger("zapdesk.membership")


def _unwrap(body: Any) -> dict:
    if isinstance(body, list):
        first = body[0] if body else {}
        if isinstance(first, dict) and isinstance(first.get("body"), dict):
            return first["body"]
        return first if isinstance(first, dict) else {}
    return body if isinstance(body, dict) else {}


def _nested(payload: dict, *path: str) -> dict:
    current: Any = payload
    for key in path:
        current = current.get(key) if isinstance(current, dict) else None
    return current if isinstance(current, dict) else {}


def extract_buyer(body: Any) -> tuple[Optional[str], Optional[str]]:
    """Buyer email and name from Hubla, plain, Kiwify or Hotmart sale payloads."""
    payload = _unwrap(body)
    candidates = (
        (_nested(payload, "event"), "userEmail", "userName"),
        (payload, "email", "name"),
        (_nested(payload, "Customer"), "email", "full_name"),
        (_nested(payload, "data", "buyer"), "email", "name"),
    )
    for source, email_key, name_key in candidates:
        email = source.get(email_key)
        if isinstance(email, str) and email.strip():
            name = source.get(name_key)
            if not isinstance(name, str) or not name.strip():
                name = email.split("@")[0]
            return email.strip().lower(), name.strip()
    return None, None


def process_sale(store: InMemoryStore, body: Any, *, source: str = "hubla") -> SaleWebhookResponse:
    email, name = extract_buyer(body)
    if not email:
        raise PayloadError("email not found in payload")
    member, created = store.grant_full_membership(email=email, name=name, source=source)
    logger.info("sale_membership_granted member_id=%s created=%s", member.id, created)
    return SaleWebhookResponse(success=True, member_id=member.id, email=member.email, created=created)
