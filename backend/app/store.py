from __future__ import annotations

from datetime import date, datetime, timedelta
from threading import RLock
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional
from uuid import uuid4

from pydantic import BaseModel

from backend.app.models import (
    AdMetricRecord,
    BlasterCampaignCreateRequest,
    BlasterCampaignRecord,
    BlasterLogRecord,
    CommerceEventRecord,
    ContactRecord,
    DelayJobRecord,
    DelayJobStatus,
    FlowAnalyticsRecord,
    FlowCreateRequest,
    FlowRecord,
    FlowTriggerType,
    GatewayConfigRecord,
    GatewayConfigRequest,
    InstanceCreateRequest,
    InstanceRecord,
    InstanceStatus,
    LogzzWebhookCreateRequest,
    LogzzWebhookRecord,
    MemberRecord,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    PaymentNotificationRecord,
    PaymentWebhookCreateRequest,
    PaymentWebhookRecord,
    PushProfileRecord,
    PushProfileUpdateRequest,
    PushQueueCreateRequest,
    PushQueueItemRecord,
    SessionRecord,
    SessionStatus,
    WebhookDeliveryRecord,
    WebhookProcessingStatus,
    utc_now,
)

if TYPE_CHECKING:
    from backend.app.persistence import SqlitePersistence


GLOBAL_CONFIG_OWNER = "global"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


def digits_only(value: str) -> str:
    return "".join(char for char in value if char.isdigit())


def remote_jid_for(phone: str) -> str:
    return f"{digits_only(phone)}@s.whatsapp.net"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class StoreForbiddenError(Exception):
    pass


# collection attribute -> (record type, key field)
_COLLECTIONS: dict[str, tuple[type[BaseModel], str]] = {
    "instances": (InstanceRecord, "id"),
    "gateway_configs": (GatewayConfigRecord, "owner"),
    "contacts": (ContactRecord, "id"),
    "flows": (FlowRecord, "id"),
    "sessions": (SessionRecord, "id"),
    "delay_jobs": (DelayJobRecord, "session_id"),
    "messages": (MessageRecord, "id"),
    "webhook_deliveries": (WebhookDeliveryRecord, "key"),
    "logzz_webhooks": (LogzzWebhookRecord, "id"),
    "commerce_events": (CommerceEventRecord, "id"),
    "members": (MemberRecord, "email"),
    "payment_webhooks": (PaymentWebhookRecord, "id"),
    "payment_notifications": (PaymentNotificationRecord, "id"),
    "push_profiles": (PushProfileRecord, "user_id"),
    "push_queue": (PushQueueItemRecord, "id"),
    "blaster_campaigns": (BlasterCampaignRecord, "id"),
    "blaster_logs": (BlasterLogRecord, "id"),
    "ad_metrics": (AdMetricRecord, "id"),
}

_LIST_COLLECTIONS: dict[str, type[BaseModel]] = {
    "flow_analytics": FlowAnalyticsRecord,
}


class InMemoryStore:
    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.instances: dict[str, InstanceRecord] = {}
        self.gateway_configs: dict[str, GatewayConfigRecord] = {}
        self.contacts: dict[str, ContactRecord] = {}
        self.flows: dict[str, FlowRecord] = {}
        self.sessions: dict[str, SessionRecord] = {}
        self.delay_jobs: dict[str, DelayJobRecord] = {}
        self.messages: dict[str, MessageRecord] = {}
        self.flow_analytics: list[FlowAnalyticsRecord] = []
        self.webhook_deliveries: dict[str, WebhookDeliveryRecord] = {}
        self.logzz_webhooks: dict[str, LogzzWebhookRecord] = {}
        self.commerce_events: dict[str, CommerceEventRecord] = {}
        self.members: dict[str, MemberRecord] = {}
        self.payment_webhooks: dict[str, PaymentWebhookRecord] = {}
        self.payment_notifications: dict[str, PaymentNotificationRecord] = {}
        self.push_profiles: dict[str, PushProfileRecord] = {}
        self.push_queue: dict[str, PushQueueItemRecord] = {}
        self.blaster_campaigns: dict[str, BlasterCampaignRecord] = {}
        self.blaster_logs: dict[str, BlasterLogRecord] = {}
        self.ad_metrics: dict[str, AdMetricRecord] = {}

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)
            # row tables are written on every change; the snapshot may lag them
            for delivery in self.persistence.list_webhook_deliveries():
                self.webhook_deliveries[delivery.key] = delivery
            for job in self.persistence.list_delay_jobs():
                self.delay_jobs[job.session_id] = job

    # instances

    def create_instance(self, user_id: str, request: InstanceCreateRequest) -> InstanceRecord:
        with self._lock:
            name = request.instance_name.strip()
            if self.get_instance_by_name(name):
                raise StoreConflictError(f"instance name already in use: {name}")
            now = utc_now()
            instance = InstanceRecord(
                id=new_id("inst"),
                user_id=user_id,
                name=request.name.strip(),
                instance_name=name,
                api_provider=request.api_provider,
                status=request.status,
                api_token=request.api_token,
                phone_number=request.phone_number,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.instances[instance.id] = instance
            self._persist_state()
            return instance

    def get_instance(self, instance_id: str) -> InstanceRecord:
        instance = self.instances.get(instance_id)
        if not instance:
            raise StoreNotFoundError(f"instance not found: {instance_id}")
        return instance

    def get_instance_by_name(self, instance_name: str) -> Optional[InstanceRecord]:
        with self._lock:
            for instance in self.instances.values():
                if instance.instance_name == instance_name:
                    return instance
        return None

    def list_instances(self, user_id: str) -> list[InstanceRecord]:
        with self._lock:
            instances = [i for i in self.instances.values() if i.user_id == user_id]
        return sorted(instances, key=lambda item: item.created_at_utc)

    def connected_instances(self, user_id: str) -> list[InstanceRecord]:
        return [
            instance
            for instance in self.list_instances(user_id)
            if instance.status == InstanceStatus.connected
        ]

    def set_instance_status(self, instance_id: str, status: InstanceStatus) -> InstanceRecord:
        return self._update("instances", instance_id, status=status, updated_at_utc=utc_now())

    # gateway config

    def upsert_gateway_config(self, owner: str, request: GatewayConfigRequest) -> GatewayConfigRecord:
        with self._lock:
            record = GatewayConfigRecord(
                owner=owner,
                base_url=(request.base_url or "").strip().rstrip("/") or None,
                api_key=(request.api_key or "").strip() or None,
                uazapi_base_url=(request.uazapi_base_url or "").strip().rstrip("/") or None,
                updated_at_utc=utc_now(),
            )
            self.gateway_configs[owner] = record
            self._persist_state()
            return record

    def get_gateway_config(self, owner: str) -> Optional[GatewayConfigRecord]:
        return self.gateway_configs.get(owner)

    # contacts

    def find_or_create_contact(
        self,
        *,
        user_id: str,
        phone: str,
        instance_id: Optional[str] = None,
        name: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> tuple[ContactRecord, bool]:
        normalized = digits_only(phone)
        if not normalized:
            raise StoreConflictError("contact phone has no digits")
        with self._lock:
            for contact in self.contacts.values():
                if contact.user_id == user_id and contact.phone == normalized:
                    changes: dict[str, Any] = {}
                    if instance_id and contact.instance_id != instance_id:
                        changes["instance_id"] = instance_id
                    if name and not contact.name:
                        changes["name"] = name.strip()
                    if changes:
                        contact = self._update(
                            "contacts", contact.id, updated_at_utc=utc_now(), **changes
                        )
                    return contact, False
            now = utc_now()
            contact = ContactRecord(
                id=new_id("ct"),
                user_id=user_id,
                instance_id=instance_id,
                phone=normalized,
                remote_jid=remote_jid_for(normalized),
                name=name.strip() if name else None,
                tags=list(tags or []),
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.contacts[contact.id] = contact
            self._persist_state()
            return contact, True

    def get_contact(self, contact_id: str, *, user_id: Optional[str] = None) -> ContactRecord:
        contact = self.contacts.get(contact_id)
        if not contact:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        if user_id is not None and contact.user_id != user_id:
            raise StoreForbiddenError(f"contact does not belong to user: {contact_id}")
        return contact

    def list_contacts(self, user_id: str) -> list[ContactRecord]:
        with self._lock:
            return [c for c in self.contacts.values() if c.user_id == user_id]

    def update_contact(self, contact_id: str, **changes: Any) -> ContactRecord:
        return self._update("contacts", contact_id, updated_at_utc=utc_now(), **changes)

    # flows

    def create_flow(self, user_id: str, request: FlowCreateRequest) -> FlowRecord:
        with self._lock:
            now = utc_now()
            flow = FlowRecord(
                id=new_id("flow"),
                user_id=user_id,
                name=request.name.strip(),
                nodes=request.nodes,
                edges=request.edges,
                is_active=request.is_active,
                trigger_type=request.trigger_type,
                trigger_keywords=[k.strip() for k in request.trigger_keywords if k.strip()],
                priority=request.priority,
                assigned_instances=request.assigned_instances,
                pause_on_media=request.pause_on_media,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.flows[flow.id] = flow
            self._persist_state()
            return flow

    def get_flow(self, flow_id: str, *, user_id: Optional[str] = None) -> FlowRecord:
        flow = self.flows.get(flow_id)
        if not flow:
            raise StoreNotFoundError(f"flow not found: {flow_id}")
        if user_id is not None and flow.user_id != user_id:
            raise StoreForbiddenError(f"flow does not belong to user: {flow_id}")
        return flow

    def list_flows(self, user_id: str) -> list[FlowRecord]:
        with self._lock:
            return [f for f in self.flows.values() if f.user_id == user_id]

    def active_flows(self, user_id: str, trigger_type: FlowTriggerType) -> list[FlowRecord]:
        flows = [
            flow
            for flow in self.list_flows(user_id)
            if flow.is_active and flow.trigger_type == trigger_type
        ]
        return sorted(flows, key=lambda flow: (-flow.priority, flow.created_at_utc))

    def set_flow_active(self, flow_id: str, is_active: bool) -> FlowRecord:
        return self._update("flows", flow_id, is_active=is_active, updated_at_utc=utc_now())

    # sessions

    def create_session(
        self,
        *,
        flow: FlowRecord,
        contact: ContactRecord,
        instance_id: Optional[str],
        variables: dict[str, Any],
    ) -> SessionRecord:
        with self._lock:
            now = utc_now()
            session = SessionRecord(
                id=new_id("ses"),
                flow_id=flow.id,
                contact_id=contact.id,
                user_id=flow.user_id,
                instance_id=instance_id,
                current_node_id=flow.start_node_id(),
                variables=dict(variables),
                started_at_utc=now,
                last_interaction_utc=now,
            )
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> SessionRecord:
        session = self.sessions.get(session_id)
        if not session:
            raise StoreNotFoundError(f"session not found: {session_id}")
        return session

    def update_session(self, session_id: str, **changes: Any) -> SessionRecord:
        return self._update("sessions", session_id, **changes)

    def find_session(self, *, flow_id: str, contact_id: str) -> Optional[SessionRecord]:
        with self._lock:
            for session in self.sessions.values():
                if session.flow_id == flow_id and session.contact_id == contact_id:
                    return session
        return None

    def active_sessions_for_contact(self, contact_id: str) -> list[SessionRecord]:
        with self._lock:
            sessions = [
                s
                for s in self.sessions.values()
                if s.contact_id == contact_id and s.status == SessionStatus.active
            ]
        return sorted(sessions, key=lambda s: s.last_interaction_utc, reverse=True)

    def list_sessions(
        self, predicate: Optional[Callable[[SessionRecord], bool]] = None
    ) -> list[SessionRecord]:
        with self._lock:
            sessions = list(self.sessions.values())
        if predicate is None:
            return sessions
        return [session for session in sessions if predicate(session)]

    def try_lock_session(
        self, session_id: str, *, now: datetime, lock_timeout_seconds: int
    ) -> tuple[SessionRecord, bool]:
        """Take the processing lock unless another run holds a fresh one."""
        with self._lock:
            session = self.get_session(session_id)
            started = session.processing_started_at_utc
            if session.processing and started is not None:
                if (now - started).total_seconds() < lock_timeout_seconds:
                    return session, False
            locked = self._update(
                "sessions",
                session_id,
                processing=True,
                processing_started_at_utc=now,
            )
            return locked, True

    def release_session_lock(self, session_id: str) -> SessionRecord:
        return self._update(
            "sessions",
            session_id,
            processing=False,
            processing_started_at_utc=None,
        )

    # delay jobs

    def schedule_delay_job(
        self, *, session_id: str, user_id: str, run_at: datetime
    ) -> DelayJobRecord:
        with self._lock:
            now = utc_now()
            existing = self.delay_jobs.get(session_id)
            job = DelayJobRecord(
                id=existing.id if existing else new_id("job"),
                session_id=session_id,
                user_id=user_id,
                run_at_utc=run_at,
                status=DelayJobStatus.scheduled,
                attempts=0,
                last_error=None,
                created_at_utc=existing.created_at_utc if existing else now,
                updated_at_utc=now,
            )
            self.delay_jobs[session_id] = job
            self._persist_delay_job(job)
            self._persist_state()
            return job

    def get_delay_job(self, session_id: str) -> Optional[DelayJobRecord]:
        return self.delay_jobs.get(session_id)

    def update_delay_job(self, session_id: str, **changes: Any) -> DelayJobRecord:
        with self._lock:
            job = self._update("delay_jobs", session_id, updated_at_utc=utc_now(), **changes)
            self._persist_delay_job(job)
            return job

    def due_delay_jobs(self, *, now: datetime, limit: int) -> list[DelayJobRecord]:
        with self._lock:
            due = [
                job
                for job in self.delay_jobs.values()
                if job.status == DelayJobStatus.scheduled and job.run_at_utc <= now
            ]
        return sorted(due, key=lambda job: job.run_at_utc)[:limit]

    def list_delay_jobs(self, *, status: Optional[DelayJobStatus] = None) -> list[DelayJobRecord]:
        with self._lock:
            jobs = list(self.delay_jobs.values())
        if status is None:
            return jobs
        return [job for job in jobs if job.status == status]

    # messages

    def record_message(
        self,
        *,
        user_id: str,
        contact_id: str,
        direction: MessageDirection,
        content: str,
        message_type: str = "text",
        instance_id: Optional[str] = None,
        media_url: Optional[str] = None,
        remote_message_id: Optional[str] = None,
        status: MessageStatus = MessageStatus.pending,
        flow_session_id: Optional[str] = None,
    ) -> tuple[MessageRecord, bool]:
        with self._lock:
            if remote_message_id:
                existing = self.find_message_by_remote_id(remote_message_id)
                if existing:
                    return existing, False
            message = MessageRecord(
                id=new_id("msg"),
                user_id=user_id,
                contact_id=contact_id,
                instance_id=instance_id,
                direction=direction,
                message_type=message_type,
                content=content,
                media_url=media_url,
                remote_message_id=remote_message_id,
                status=status,
                flow_session_id=flow_session_id,
                created_at_utc=utc_now(),
            )
            self.messages[message.id] = message
            if direction == MessageDirection.inbound:
                self._update("contacts", contact_id, last_message_at_utc=message.created_at_utc)
            self._persist_state()
            return message, True

    def find_message_by_remote_id(self, remote_message_id: str) -> Optional[MessageRecord]:
        with self._lock:
            for message in self.messages.values():
                if message.remote_message_id == remote_message_id:
                    return message
        return None

    def update_message(self, message_id: str, **changes: Any) -> MessageRecord:
        return self._update("messages", message_id, **changes)

    def list_messages(self, contact_id: str) -> list[MessageRecord]:
        with self._lock:
            messages = [m for m in self.messages.values() if m.contact_id == contact_id]
        return sorted(messages, key=lambda m: m.created_at_utc)

    def has_recent_inbound(self, *, contact_id: str, content: str, since: datetime) -> bool:
        with self._lock:
            return any(
                message.contact_id == contact_id
                and message.direction == MessageDirection.inbound
                and message.content == content
                and message.created_at_utc >= since
                for message in self.messages.values()
            )

    # analytics

    def record_flow_analytics(self, session: SessionRecord, *, node_id: str, node_type: str) -> None:
        with self._lock:
            self.flow_analytics.append(
                FlowAnalyticsRecord(
                    id=new_id("fan"),
                    session_id=session.id,
                    flow_id=session.flow_id,
                    user_id=session.user_id,
                    node_id=node_id,
                    node_type=node_type,
                    created_at_utc=utc_now(),
                )
            )

    def list_flow_analytics(self, *, session_id: str) -> list[FlowAnalyticsRecord]:
        with self._lock:
            return [event for event in self.flow_analytics if event.session_id == session_id]

    # webhook delivery ledger

    def get_webhook_delivery(
        self, *, channel: str, event_id: str
    ) -> Optional[WebhookDeliveryRecord]:
        key = self._webhook_key(channel=channel, event_id=event_id)
        return self.webhook_deliveries.get(key)

    def ensure_webhook_delivery(self, *, channel: str, event_id: str) -> WebhookDeliveryRecord:
        with self._lock:
            existing = self.get_webhook_delivery(channel=channel, event_id=event_id)
            if existing:
                return existing
            record = self._new_delivery(channel=channel, event_id=event_id)
            self.webhook_deliveries[record.key] = record
            self._persist_webhook_delivery(record)
            self._persist_state()
            return record

    def record_webhook_attempt(
        self,
        *,
        channel: str,
        event_id: str,
        success: bool,
        error: Optional[str] = None,
        transient: bool = False,
        max_retries: int = 3,
        backoff_seconds: int = 60,
    ) -> WebhookDeliveryRecord:
        with self._lock:
            record = self.get_webhook_delivery(channel=channel, event_id=event_id)
            if not record:
                record = self._new_delivery(channel=channel, event_id=event_id)

            attempts = record.attempts + 1
            next_retry = None
            last_error = None
            if success:
                status = WebhookProcessingStatus.processed
            else:
                last_error = error or "unknown webhook processing error"
                if transient and attempts < max_retries:
                    status = WebhookProcessingStatus.retry_pending
                    next_retry = utc_now() + timedelta(seconds=backoff_seconds * attempts)
                else:
                    status = WebhookProcessingStatus.failed

            updated = record.model_copy(
                update={
                    "attempts": attempts,
                    "status": status,
                    "last_error": last_error,
                    "next_retry_utc": next_retry,
                    "updated_at_utc": utc_now(),
                }
            )
            self.webhook_deliveries[updated.key] = updated
            self._persist_webhook_delivery(updated)
            self._persist_state()
            return updated

    # commerce webhooks

    def create_logzz_webhook(
        self, user_id: str, request: LogzzWebhookCreateRequest
    ) -> LogzzWebhookRecord:
        with self._lock:
            webhook = LogzzWebhookRecord(
                id=new_id("lzw"),
                user_id=user_id,
                name=request.name.strip(),
                token=uuid4().hex,
                event_type=request.event_type,
                flow_id=request.flow_id,
                instance_id=request.instance_id,
                is_active=request.is_active,
                created_at_utc=utc_now(),
            )
            self.logzz_webhooks[webhook.id] = webhook
            self._persist_state()
            return webhook

    def get_logzz_webhook_by_token(self, token: str) -> Optional[LogzzWebhookRecord]:
        with self._lock:
            for webhook in self.logzz_webhooks.values():
                if webhook.token == token:
                    return webhook
        return None

    def list_logzz_webhooks(self, user_id: str) -> list[LogzzWebhookRecord]:
        with self._lock:
            return [w for w in self.logzz_webhooks.values() if w.user_id == user_id]

    def add_commerce_event(self, record: CommerceEventRecord) -> CommerceEventRecord:
        with self._lock:
            self.commerce_events[record.id] = record
            self._persist_state()
            return record

    def update_commerce_event(self, event_id: str, **changes: Any) -> CommerceEventRecord:
        return self._update("commerce_events", event_id, **changes)

    def find_recent_commerce_event(
        self,
        *,
        webhook_id: str,
        order_number: str,
        status: Optional[str],
        since: datetime,
    ) -> Optional[CommerceEventRecord]:
        with self._lock:
            for event in self.commerce_events.values():
                if (
                    event.webhook_id == webhook_id
                    and event.order_number == order_number
                    and event.status == status
                    and event.created_at_utc >= since
                ):
                    return event
        return None

    def list_commerce_events(self, user_id: str) -> list[CommerceEventRecord]:
        with self._lock:
            events = [e for e in self.commerce_events.values() if e.user_id == user_id]
        return sorted(events, key=lambda e: e.created_at_utc, reverse=True)

    # members

    def grant_full_membership(
        self, *, email: str, name: Optional[str], source: str
    ) -> tuple[MemberRecord, bool]:
        key = email.strip().lower()
        with self._lock:
            now = utc_now()
            existing = self.members.get(key)
            if existing:
                member = self._update(
                    "members",
                    key,
                    is_full_member=True,
                    name=existing.name or name,
                    updated_at_utc=now,
                )
                return member, False
            member = MemberRecord(
                id=new_id("mem"),
                email=key,
                name=name,
                is_full_member=True,
                source=source,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.members[key] = member
            self._persist_state()
            return member, True

    def get_member(self, email: str) -> MemberRecord:
        member = self.members.get(email.strip().lower())
        if not member:
            raise StoreNotFoundError(f"member not found: {email}")
        return member

    # payment webhooks

    def create_payment_webhook(
        self, user_id: str, request: PaymentWebhookCreateRequest
    ) -> PaymentWebhookRecord:
        with self._lock:
            webhook = PaymentWebhookRecord(
                id=new_id("pay"),
                user_id=user_id,
                name=request.name.strip(),
                provider=request.provider,
                is_active=request.is_active,
                created_at_utc=utc_now(),
            )
            self.payment_webhooks[webhook.id] = webhook
            self._persist_state()
            return webhook

    def get_payment_webhook(self, webhook_id: str) -> PaymentWebhookRecord:
        webhook = self.payment_webhooks.get(webhook_id)
        if not webhook:
            raise StoreNotFoundError(f"payment webhook not found: {webhook_id}")
        return webhook

    def list_payment_webhooks(self, user_id: str) -> list[PaymentWebhookRecord]:
        with self._lock:
            return [w for w in self.payment_webhooks.values() if w.user_id == user_id]

    def record_payment_notification(
        self,
        *,
        webhook_id: str,
        amount: float,
        payer_name: str,
        payload: dict,
    ) -> PaymentNotificationRecord:
        with self._lock:
            webhook = self.get_payment_webhook(webhook_id)
            notification = PaymentNotificationRecord(
                id=new_id("pix"),
                webhook_id=webhook.id,
                user_id=webhook.user_id,
                amount=amount,
                payer_name=payer_name,
                payload=payload,
                created_at_utc=utc_now(),
            )
            self.payment_notifications[notification.id] = notification
            self._update(
                "payment_webhooks",
                webhook.id,
                notifications_count=webhook.notifications_count + 1,
                total_received=round(webhook.total_received + amount, 2),
            )
            return notification

    def list_payment_notifications(self, webhook_id: str) -> list[PaymentNotificationRecord]:
        with self._lock:
            return [
                n for n in self.payment_notifications.values() if n.webhook_id == webhook_id
            ]

    # push

    def upsert_push_profile(
        self, user_id: str, request: PushProfileUpdateRequest
    ) -> PushProfileRecord:
        with self._lock:
            ids = [value.strip() for value in request.subscription_ids if value.strip()]
            profile = PushProfileRecord(
                user_id=user_id,
                push_enabled=request.push_enabled,
                subscription_ids=list(dict.fromkeys(ids)),
                updated_at_utc=utc_now(),
            )
            self.push_profiles[user_id] = profile
            self._persist_state()
            return profile

    def get_push_profile(self, user_id: str) -> Optional[PushProfileRecord]:
        return self.push_profiles.get(user_id)

    def enqueue_push(self, request: PushQueueCreateRequest) -> PushQueueItemRecord:
        with self._lock:
            item = PushQueueItemRecord(
                id=new_id("psh"),
                user_id=request.user_id,
                title=request.title,
                body=request.body,
                data=request.data,
                priority=request.priority,
                created_at_utc=utc_now(),
            )
            self.push_queue[item.id] = item
            self._persist_state()
            return item

    def pending_push_items(self, limit: int) -> list[PushQueueItemRecord]:
        with self._lock:
            pending = [item for item in self.push_queue.values() if not item.processed]
        return sorted(pending, key=lambda item: item.created_at_utc)[:limit]

    def mark_push_processed(
        self, item_id: str, *, error: Optional[str] = None
    ) -> PushQueueItemRecord:
        return self._update(
            "push_queue",
            item_id,
            processed=True,
            processed_at_utc=utc_now(),
            last_error=error,
        )

    # blaster

    def create_campaign(
        self, user_id: str, request: BlasterCampaignCreateRequest
    ) -> BlasterCampaignRecord:
        with self._lock:
            numbers = [digits_only(phone) for phone in request.phone_numbers]
            campaign = BlasterCampaignRecord(
                id=new_id("blast"),
                user_id=user_id,
                name=request.name.strip(),
                messages=[message for message in request.messages if message.strip()],
                message_type=request.message_type,
                media_url=request.media_url,
                phone_numbers=[phone for phone in numbers if phone],
                assigned_instances=request.assigned_instances,
                flow_id=request.flow_id,
                delay_min=request.delay_min,
                delay_max=request.delay_max,
                dispatches_per_instance=request.dispatches_per_instance,
                created_at_utc=utc_now(),
            )
            self.blaster_campaigns[campaign.id] = campaign
            self._persist_state()
            return campaign

    def get_campaign(self, campaign_id: str, *, user_id: Optional[str] = None) -> BlasterCampaignRecord:
        campaign = self.blaster_campaigns.get(campaign_id)
        if not campaign:
            raise StoreNotFoundError(f"campaign not found: {campaign_id}")
        if user_id is not None and campaign.user_id != user_id:
            raise StoreForbiddenError(f"campaign does not belong to user: {campaign_id}")
        return campaign

    def list_campaigns(self, user_id: str) -> list[BlasterCampaignRecord]:
        with self._lock:
            campaigns = [c for c in self.blaster_campaigns.values() if c.user_id == user_id]
        return sorted(campaigns, key=lambda c: c.created_at_utc, reverse=True)

    def update_campaign(self, campaign_id: str, **changes: Any) -> BlasterCampaignRecord:
        return self._update("blaster_campaigns", campaign_id, **changes)

    def add_blaster_log(
        self,
        *,
        campaign_id: str,
        phone: str,
        instance_id: Optional[str],
        status: str,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> BlasterLogRecord:
        with self._lock:
            log = BlasterLogRecord(
                id=new_id("blog"),
                campaign_id=campaign_id,
                phone=phone,
                instance_id=instance_id,
                status=status,
                message=message,
                error=error[:500] if error else None,
                created_at_utc=utc_now(),
            )
            self.blaster_logs[log.id] = log
            self._persist_state()
            return log

    def list_blaster_logs(self, campaign_id: str) -> list[BlasterLogRecord]:
        with self._lock:
            logs = [log for log in self.blaster_logs.values() if log.campaign_id == campaign_id]
        return sorted(logs, key=lambda log: log.created_at_utc)

    # ad metrics

    def save_ad_metric(self, record: AdMetricRecord) -> AdMetricRecord:
        with self._lock:
            self.ad_metrics[record.id] = record
            self._persist_state()
            return record

    def find_ad_metric(
        self, *, user_id: str, day: date, product_name: str
    ) -> Optional[AdMetricRecord]:
        with self._lock:
            for record in self.ad_metrics.values():
                if (
                    record.user_id == user_id
                    and record.day == day
                    and record.product_name.lower() == product_name.lower()
                ):
                    return record
        return None

    def list_ad_metrics(
        self,
        user_id: str,
        *,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[AdMetricRecord]:
        with self._lock:
            records = [r for r in self.ad_metrics.values() if r.user_id == user_id]
        if date_from:
            records = [r for r in records if r.day >= date_from]
        if date_to:
            records = [r for r in records if r.day <= date_to]
        return sorted(records, key=lambda r: (r.day, r.product_name))

    def delete_ad_metric(self, user_id: str, metric_id: str) -> None:
        with self._lock:
            record = self.ad_metrics.get(metric_id)
            if not record or record.user_id != user_id:
                raise StoreNotFoundError(f"ad metric not found: {metric_id}")
            del self.ad_metrics[metric_id]
            self._persist_state()

    # internals

    def _update(self, collection: str, key: str, **changes: Any) -> Any:
        with self._lock:
            records: dict = getattr(self, collection)
            current = records.get(key)
            if current is None:
                raise StoreNotFoundError(f"{collection} record not found: {key}")
            updated = current.model_copy(update=changes)
            records[key] = updated
            self._persist_state()
            return updated

    def _new_delivery(self, *, channel: str, event_id: str) -> WebhookDeliveryRecord:
        now = utc_now()
        return WebhookDeliveryRecord(
            id=new_id("whk"),
            key=self._webhook_key(channel=channel, event_id=event_id),
            channel=channel,
            event_id=event_id,
            status=WebhookProcessingStatus.received,
            attempts=0,
            created_at_utc=now,
            updated_at_utc=now,
        )

    def _persist_webhook_delivery(self, record: WebhookDeliveryRecord) -> None:
        if self.persistence:
            self.persistence.upsert_webhook_delivery(record)

    def _persist_delay_job(self, record: DelayJobRecord) -> None:
        if self.persistence:
            self.persistence.upsert_delay_job(record)

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        data: dict[str, list] = {}
        for name in _COLLECTIONS:
            records: dict = getattr(self, name)
            data[name] = [record.model_dump(mode="json") for record in records.values()]
        for name in _LIST_COLLECTIONS:
            data[name] = [record.model_dump(mode="json") for record in getattr(self, name)]
        return data

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        for name, (record_type, key_field) in _COLLECTIONS.items():
            records = (record_type.model_validate(raw) for raw in snapshot.get(name, []))
            setattr(self, name, _index(records, key_field))
        for name, record_type in _LIST_COLLECTIONS.items():
            setattr(
                self,
                name,
                [record_type.model_validate(raw) for raw in snapshot.get(name, [])],
            )

    @staticmethod
    def _webhook_key(*, channel: str, event_id: str) -> str:
        return f"{channel}:{event_id}"


def _index(records: Iterable[BaseModel], key_field: str) -> dict[str, Any]:
    return {getattr(record, key_field): record for record in records}
