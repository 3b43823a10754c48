from __future__ import annotations

import logging
from typing import Any, Optional

from backend.app.models import (
    PushEventRequest,
    PushEventResponse,
    PushQueueRunResponse,
    utc_now,
)
from backend.app.services.http_client import (
    HttpTransport,
    TransportError,
    error_text,
    urllib_transport,
)
from backend.app.store import InMemoryStore

logger = logging.getLogger("zapdesk.push")

ONESIGNAL_URL = "https://onesignal.com/api/v1/notifications"
DEFAULT_ICON = "https://zapdata.com.br/favicon.png"
QUEUE_BATCH_SIZE = 50
HIGH_PRIORITY_THRESHOLD = 10


class PushDeliveryError(Exception):
    pass


class OneSignalClient:
    def __init__(
        self,
        *,
        app_id: str,
        api_key: str,
        transport: HttpTransport = urllib_transport,
        timeout: int = 15,
    ) -> None:
        self.app_id = app_id
        self.api_key = api_key
        self.transport = transport
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.api_key)

    def send(
        self,
        *,
        headings: dict[str, str],
        contents: dict[str, str],
        subscription_ids: Optional[list[str]] = None,
        user_tag: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> dict:
        if not self.configured:
            raise PushDeliveryError("onesignal credentials not configured")
        payload: dict[str, Any] = {
            "app_id": self.app_id,
            "headings": headings,
            "contents": contents,
            "chrome_web_icon": DEFAULT_ICON,
            "firefox_icon": DEFAULT_ICON,
        }
        if subscription_ids:
            payload["include_subscription_ids"] = subscription_ids
        elif user_tag:
            payload["filters"] = [{"field": "tag", "key": "user_id", "relation": "=", "value": user_tag}]
        else:
            raise PushDeliveryError("push needs subscription ids or a user tag")
        if data:
            payload["data"] = data
        payload.update(extra or {})

        headers = {"Authorization": f"Basic {self.api_key}"}
        try:
            response = self.transport("POST", ONESIGNAL_URL, headers, payload, self.timeout)
        except TransportError as exc:
            raise PushDeliveryError(str(exc)) from exc
        if not response.ok:
            raise PushDeliveryError(f"onesignal rejected request: {response.status} {error_text(response)}")
        return response.json_dict()


def send_push_event(store: InMemoryStore, client: OneSignalClient, request: PushEventRequest) -> PushEventResponse:
    profile = store.get_push_profile(request.user_id)
    if profile is None or not profile.push_enabled:
        return PushEventResponse(sent=False, reason="push notifications disabled")
    if not profile.subscription_ids:
        return PushEventResponse(sent=False, reason="no subscription ids registered")

    data = dict(request.data)
    data["event_type"] = request.event_type
    data["timestamp"] = utc_now().isoformat() + "Z"
    result = client.send(
        headings=request.title.model_dump(),
        contents=request.content.model_dump(),
        subscription_ids=profile.subscription_ids,
        data=data,
    )
    logger.info("push_event_sent user_id=%s event_type=%s", request.user_id, request.event_type)
    return PushEventResponse(
        sent=True,
        notification_id=result.get("id"),
        recipients=int(result.get("recipients") or len(profile.subscription_ids)),
    )


def priority_options(priority: int) -> dict[str, Any]:
    if priority >= HIGH_PRIORITY_THRESHOLD:
        return {"priority": 10, "ttl": 300, "require_interaction": True}
    return {"priority": 5, "ttl": 86400, "require_interaction": False}


def run_push_queue(store: InMemoryStore, client: OneSignalClient) -> PushQueueRunResponse:
    if not client.configured:
        raise PushDeliveryError("onesignal credentials not configured")
    items = store.pending_push_items(QUEUE_BATCH_SIZE)
    sent = 0
    failed = 0
    for item in items:
        profile = store.get_push_profile(item.user_id)
        if profile is None or not profile.subscription_ids:
            store.mark_push_processed(item.id)
            continue
        try:
            client.send(
                headings={"en": item.title},
                contents={"en": item.body},
                subscription_ids=profile.subscription_ids,
                data=item.data,
                extra=priority_options(item.priority),
            )
        except PushDeliveryError as exc:
            logger.warning("push_queue_item_failed item_id=%s error=%s", item.id, exc)
            failed += 1
            store.mark_push_processed(item.id, error=str(exc))
            continue
        sent += 1
        store.mark_push_processed(item.id)
    logger.info("push_queue_run processed=%s sent=%s failed=%s", len(items), sent, failed)
    return PushQueueRunResponse(processed=len(items), sent=sent, failed=failed)
