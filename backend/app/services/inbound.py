from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from backend.app.models import (
    ApiProvider,
    ContactRecord,
    DelayJobStatus,
    FlowTriggerType,
    InstanceRecord,
    InstanceStatus,
    MessageDirection,
    MessageStatus,
    SessionRecord,
    utc_now,
)
from backend.app.services.flow_engine import WAITING_NODE_TYPES, FlowEngine
from backend.app.services.flow_triggers import (
    assigned_to,
    base_variables,
    cancel_active_sessions,
    match_keyword_flow,
    start_flow_for_contact,
)
from backend.app.settings import Settings
from backend.app.store import InMemoryStore, digits_only

logger = logging.getLogger("zapdesk.inbound")

UPSERT_EVENTS = {"messages.upsert", "MESSAGES_UPSERT", "message", "messages"}
UPDATE_EVENTS = {"messages.update", "MESSAGES_UPDATE"}
CONNECTION_EVENTS = {"connection.update", "CONNECTION_UPDATE", "connection"}

STATUS_RANK = {
    MessageStatus.pending: 0,
    MessageStatus.sent: 1,
    MessageStatus.delivered: 2,
    MessageStatus.read: 3,
}

PAUSING_MEDIA_TYPES = {"image", "document"}

# evolution message key -> (message type, text field)
_EVOLUTION_MEDIA = {
    "imageMessage": ("image", "caption"),
    "videoMessage": ("video", "caption"),
    "audioMessage": ("audio", None),
    "documentMessage": ("document", "caption"),
    "stickerMessage": ("sticker", None),
}


class TransientWebhookError(Exception):
    pass


class PermanentWebhookError(Exception):
    pass


@dataclass(frozen=True)
class GatewayEvent:
    provider: ApiProvider
    event: str
    event_id: str
    instance_name: str
    data: Any
    remote_jid: str = ""
    from_me: bool = False
    sent_by_api: bool = False
    is_group: bool = False
    message_id: Optional[str] = None
    push_name: Optional[str] = None
    content: str = ""
    message_type: str = "text"
    media_url: Optional[str] = None

    @property
    def phone(self) -> str:
        return digits_only(self.remote_jid.split("@")[0])


def normalize_remote_message_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    tail = text.split(":")[-1]
    return tail if len(tail) >= 8 else text


def map_delivery_status(value: Any) -> Optional[MessageStatus]:
    if value in ("DELIVERY_ACK", 2, "delivered"):
        return MessageStatus.delivered
    if value in ("READ", 3, "read", "PLAYED", 4, "played"):
        return MessageStatus.read
    if value in ("SERVER_ACK", 1, "sent"):
        return MessageStatus.sent
    return None


def map_connection_state(value: Any) -> InstanceStatus:
    if value == "open":
        return InstanceStatus.connected
    if value == "connecting":
        return InstanceStatus.connecting
    return InstanceStatus.disconnected


def _fallback_event_id(payload: dict) -> str:
    canonical = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()[:32]


def _truthy(value: Any) -> bool:
    return value is True or value == "true"


def _uazapi_message(payload: dict) -> Optional[dict]:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    for candidate in (payload, payload.get("message"), data, data.get("message")):
        if isinstance(candidate, dict) and candidate.get("chatid"):
            return candidate
    return None


def _evolution_content(message: dict) -> tuple[str, str, Optional[str]]:
    if message.get("conversation"):
        return str(message["conversation"]), "text", None
    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and extended.get("text"):
        return str(extended["text"]), "text", None
    for key, (message_type, text_field) in _EVOLUTION_MEDIA.items():
        media = message.get(key)
        if isinstance(media, dict):
            text = str(media.get(text_field) or "") if text_field else ""
            return text, message_type, media.get("url")
    return "", "text", None


def parse_gateway_event(payload: Any) -> GatewayEvent:
    if not isinstance(payload, dict):
        raise PermanentWebhookError("gateway payload must be a json object")
    event = str(payload.get("event") or payload.get("EventType") or "").strip()
    if not event:
        raise PermanentWebhookError("gateway payload has no event")
    data = payload.get("data")
    if data is None:
        data = {}

    uaz = _uazapi_message(payload) if event in UPSERT_EVENTS else None
    evolution_key = isinstance(data, dict) and (
        data.get("key") or (isinstance(data.get("message"), dict) and data["message"].get("key"))
    )
    if uaz is not None and not evolution_key:
        instance_name = str(
            payload.get("instanceName")
            or payload.get("instance")
            or str(uaz.get("owner") or "").split("@")[0]
        )
        message_id = normalize_remote_message_id(uaz.get("messageid") or uaz.get("id"))
        file_url = uaz.get("fileURL") or None
        message_type = str(uaz.get("messageType") or "conversation")
        return GatewayEvent(
            provider=ApiProvider.uazapi,
            event="messages.upsert",
            event_id=message_id or _fallback_event_id(payload),
            instance_name=instance_name,
            data=uaz,
            remote_jid=str(uaz.get("chatid") or ""),
            from_me=_truthy(uaz.get("fromMe")),
            sent_by_api=uaz.get("wasSentByApi") is True,
            is_group=uaz.get("isGroup") is True,
            message_id=message_id,
            push_name=uaz.get("senderName") or uaz.get("pushName") or None,
            content=str(uaz.get("text") or ""),
            message_type=_uazapi_message_type(message_type, file_url),
            media_url=file_url,
        )

    instance_name = str(payload.get("instance") or payload.get("instanceName") or "")
    if event in UPSERT_EVENTS and isinstance(data, dict):
        key = data.get("key") or (data.get("message") or {}).get("key") or {}
        message = data.get("message") if isinstance(data.get("message"), dict) else {}
        content, message_type, media_url = _evolution_content(message)
        message_id = normalize_remote_message_id(key.get("id"))
        remote_jid = str(key.get("remoteJid") or "")
        return GatewayEvent(
            provider=ApiProvider.evolution,
            event="messages.upsert",
            event_id=message_id or _fallback_event_id(payload),
            instance_name=instance_name,
            data=data,
            remote_jid=remote_jid,
            from_me=_truthy(key.get("fromMe")),
            is_group=remote_jid.endswith("@g.us"),
            message_id=message_id,
            push_name=data.get("pushName") or None,
            content=content,
            message_type=message_type,
            media_url=media_url,
        )

    return GatewayEvent(
        provider=ApiProvider.evolution,
        event=event,
        event_id=f"{event}:{_fallback_event_id(payload)}",
        instance_name=instance_name,
        data=data,
    )


def _uazapi_message_type(raw: str, file_url: Optional[str]) -> str:
    lowered = raw.lower()
    for message_type in ("image", "video", "audio", "document", "sticker"):
        if message_type in lowered:
            return message_type
    if "ptt" in lowered:
        return "audio"
    return "text" if not file_url else "document"


class InboundProcessor:
    """Applies one gateway event to the store and routes inbound text into flows."""

    def __init__(self, *, store: InMemoryStore, engine: FlowEngine, settings: Settings) -> None:
        self.store = store
        self.engine = engine
        self.settings = settings

    def process(self, event: GatewayEvent, *, is_retry: bool = False) -> str:
        if event.event == "messages.upsert":
            return self._message_upsert(event, is_retry=is_retry)
        if event.event in UPDATE_EVENTS:
            return self._message_update(event)
        if event.event in CONNECTION_EVENTS:
            return self._connection_update(event)
        return "ignored_event"

    def _instance(self, event: GatewayEvent) -> InstanceRecord:
        instance = self.store.get_instance_by_name(event.instance_name)
        if instance is None:
            raise PermanentWebhookError(f"unknown instance: {event.instance_name or '-'}")
        return instance

    def _message_upsert(self, event: GatewayEvent, *, is_retry: bool) -> str:
        if event.sent_by_api:
            return "skipped:sent_by_api"
        if event.is_group:
            return "skipped:group_message"
        if event.from_me and event.message_id and self.store.find_message_by_remote_id(event.message_id):
            return "skipped:sent_by_platform"
        phone = event.phone
        if len(phone) < 10 or len(phone) > 15:
            return "skipped:invalid_phone"

        instance = self._instance(event)
        contact, _ = self.store.find_or_create_contact(
            user_id=instance.user_id,
            phone=phone,
            instance_id=instance.id,
            name=None if event.from_me else event.push_name,
        )
        content = event.content.strip()

        if event.from_me:
            self.store.record_message(
                user_id=instance.user_id,
                contact_id=contact.id,
                instance_id=instance.id,
                direction=MessageDirection.outbound,
                content=content,
                message_type=event.message_type,
                media_url=event.media_url,
                remote_message_id=event.message_id,
                status=MessageStatus.sent,
            )
            return "stored:outbound"

        if not is_retry and content and self.store.has_recent_inbound(
            contact_id=contact.id,
            content=content,
            since=utc_now() - timedelta(seconds=self.settings.inbound_dedupe_window_seconds),
        ):
            return "skipped:duplicate_content"

        message, created = self.store.record_message(
            user_id=instance.user_id,
            contact_id=contact.id,
            instance_id=instance.id,
            direction=MessageDirection.inbound,
            content=content,
            message_type=event.message_type,
            media_url=event.media_url,
            remote_message_id=event.message_id,
            status=MessageStatus.delivered,
        )
        if not created and not is_retry:
            return "skipped:duplicate_message"
        return self._route(instance, self.store.get_contact(contact.id), event, content)

    def _route(
        self, instance: InstanceRecord, contact: ContactRecord, event: GatewayEvent, content: str
    ) -> str:
        if contact.flow_paused:
            return "stored:flow_paused"

        keyword_flow = match_keyword_flow(
            self.store, user_id=instance.user_id, instance_id=instance.id, text=content
        )
        if keyword_flow:
            cancelled = cancel_active_sessions(self.store, contact.id)
            session, _ = start_flow_for_contact(
                self.store,
                self.engine,
                flow=keyword_flow,
                contact=contact,
                instance_id=instance.id,
                variables=base_variables(contact, content),
            )
            logger.info(
                "inbound_keyword_restart contact_id=%s flow_id=%s cancelled=%s",
                contact.id,
                keyword_flow.id,
                cancelled,
            )
            return f"keyword_flow:{session.id}"

        active = self.store.active_sessions_for_contact(contact.id)
        if active:
            session = active[0]
            if self._waiting_for_input(session):
                return self._resume_with_input(session, content)
            return f"skipped:session_active:{session.id}"

        for flow in self.store.active_flows(instance.user_id, FlowTriggerType.all):
            if not assigned_to(flow, instance.id):
                continue
            if self.store.find_session(flow_id=flow.id, contact_id=contact.id):
                continue
            if flow.pause_on_media and event.message_type in PAUSING_MEDIA_TYPES:
                self.store.update_contact(contact.id, flow_paused=True)
                logger.info("inbound_flow_paused_on_media contact_id=%s flow_id=%s", contact.id, flow.id)
                return "stored:paused_on_media"
            session, _ = start_flow_for_contact(
                self.store,
                self.engine,
                flow=flow,
                contact=contact,
                instance_id=instance.id,
                variables=base_variables(contact, content),
            )
            return f"all_flow:{session.id}"
        return "stored"

    def _waiting_for_input(self, session: SessionRecord) -> bool:
        flow = self.store.flows.get(session.flow_id)
        node = flow.node(session.current_node_id) if flow else None
        return node is not None and node.type in WAITING_NODE_TYPES

    def _resume_with_input(self, session: SessionRecord, content: str) -> str:
        if not content:
            return f"skipped:media_without_text:{session.id}"
        timeout_job = self.store.get_delay_job(session.id)
        result = self.engine.process_session(session.id, user_input=content)
        if result.skipped and result.reason == "session_locked":
            raise TransientWebhookError(f"session {session.id} is locked")
        # a job the run did not replace belongs to the answered timeout
        job = self.store.get_delay_job(session.id)
        if job is not None and job is timeout_job and job.status == DelayJobStatus.scheduled:
            self.store.update_delay_job(session.id, status=DelayJobStatus.done)
        return f"resumed:{session.id}"

    def _message_update(self, event: GatewayEvent) -> str:
        updates = event.data if isinstance(event.data, list) else [event.data]
        changed = 0
        for update in updates:
            if not isinstance(update, dict):
                continue
            key = update.get("key") or {}
            remote_id = normalize_remote_message_id(key.get("id") or update.get("keyId"))
            raw_status = (update.get("update") or {}).get("status") or update.get("status")
            new_status = map_delivery_status(raw_status)
            if not remote_id or new_status is None:
                continue
            message = self.store.find_message_by_remote_id(remote_id)
            if message is None or message.status == MessageStatus.failed:
                continue
            if STATUS_RANK[new_status] <= STATUS_RANK.get(message.status, 0):
                continue
            self.store.update_message(message.id, status=new_status)
            changed += 1
        return f"status_updated:{changed}"

    def _connection_update(self, event: GatewayEvent) -> str:
        instance = self._instance(event)
        data = event.data if isinstance(event.data, dict) else {}
        status = map_connection_state(data.get("state") or data.get("status"))
        self.store.set_instance_status(instance.id, status)
        logger.info("instance_connection_update instance=%s status=%s", instance.instance_name, status.value)
        return f"instance_status:{status.value}"

