from __future__ import annotations

import json
import time
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from backend.app.auth import ADMIN, OWNER, SERVICE, AuthContext, require_roles, tenant_scope
from backend.app.models import (
    AdMetricCreateRequest,
    AdMetricRecord,
    AdMetricSummaryResponse,
    BlasterBatchResponse,
    BlasterCampaignCreateRequest,
    BlasterCampaignRecord,
    BlasterLogRecord,
    BlasterStatus,
    CampaignStatusRequest,
    CommerceEventKind,
    CommerceEventRecord,
    CommerceWebhookResponse,
    ContactCreateRequest,
    ContactRecord,
    FlowActiveRequest,
    FlowAnalyticsRecord,
    FlowCreateRequest,
    FlowRecord,
    FlowRunResult,
    FlowTriggerRequest,
    FlowTriggerResponse,
    GatewayConfigRecord,
    GatewayConfigRequest,
    InstanceCreateRequest,
    InstanceRecord,
    LogzzWebhookCreateRequest,
    LogzzWebhookRecord,
    MemberRecord,
    MessageRecord,
    PaymentNotificationRecord,
    PaymentWebhookCreateRequest,
    PaymentWebhookRecord,
    PaymentWebhookResponse,
    PushEventRequest,
    PushEventResponse,
    PushProfileRecord,
    PushProfileUpdateRequest,
    PushQueueCreateRequest,
    PushQueueItemRecord,
    PushQueueRunResponse,
    QueueRunResponse,
    SaleWebhookResponse,
    SessionProcessRequest,
    SessionRecord,
    WebhookEventResponse,
    WebhookProcessingStatus,
    utc_now,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import SqlitePersistence
from backend.app.services import ad_metrics
from backend.app.services.blaster import BlasterError, run_blaster_batch
from backend.app.services.commerce_webhooks import CommerceWebhookProcessor
from backend.app.services.delay_queue import run_delay_queue
from backend.app.services.flow_engine import FlowEngine
from backend.app.services.flow_triggers import FlowTriggerError, trigger_flow
from backend.app.services.gateway import GatewayFactory
from backend.app.services.http_client import urllib_transport
from backend.app.services.inbound import (
    InboundProcessor,
    PermanentWebhookError,
    TransientWebhookError,
    parse_gateway_event,
)
from backend.app.services.membership import process_sale
from backend.app.services.payments import process_payment
from backend.app.services.push import OneSignalClient, PushDeliveryError, run_push_queue, send_push_event
from backend.app.services.webhooks import (
    PayloadError,
    SignatureVerificationError,
    WebhookTokenError,
    verify_gateway_signature,
    verify_hubla_token,
)
from backend.app.settings import Settings, load_settings
from backend.app.store import (
    GLOBAL_CONFIG_OWNER,
    InMemoryStore,
    StoreConflictError,
    StoreForbiddenError,
    StoreNotFoundError,
)

GATEWAY_CHANNEL = "gateway"


def create_app() -> FastAPI:
    app = FastAPI(title="Zapdesk WhatsApp Automation API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    store = InMemoryStore(persistence=persistence)
    app.state.store = store
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.http_transport = urllib_transport
    app.state.sleeper = time.sleep
    app.state.gateway_factory = GatewayFactory(store=store, settings=settings)
    app.state.push_client = OneSignalClient(
        app_id=settings.onesignal_app_id,
        api_key=settings.onesignal_api_key,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_push_client(request: Request) -> OneSignalClient:
    return request.app.state.push_client


def get_engine(request: Request) -> FlowEngine:
    state = request.app.state
    return FlowEngine(
        store=state.store,
        settings=state.settings,
        gateway_factory=state.gateway_factory,
        metrics=state.metrics,
        http_transport=state.http_transport,
        sleeper=state.sleeper,
    )


async def read_json_body(request: Request) -> Any:
    raw_body = await request.body()
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (json.JSONDecodeError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="invalid json payload",
        ) from exc


def owned_instance(store: InMemoryStore, instance_id: str, user_id: str) -> InstanceRecord:
    try:
        instance = store.get_instance(instance_id)
    except StoreNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if instance.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"instance does not belong to user: {instance_id}",
        )
    return instance


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    # instances and gateway credentials

    @router.post("/instances", response_model=InstanceRecord, status_code=status.HTTP_201_CREATED)
    def create_instance(
        payload: InstanceCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> InstanceRecord:
        try:
            return get_store(request).create_instance(context.user_id, payload)
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @router.get("/instances", response_model=list[InstanceRecord])
    def list_instances(
        request: Request,
        user_id: Optional[str] = Query(default=None),
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[InstanceRecord]:
        return get_store(request).list_instances(tenant_scope(context, user_id))

    @router.put("/gateway/config", response_model=GatewayConfigRecord)
    def update_gateway_config(
        payload: GatewayConfigRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> GatewayConfigRecord:
        owner = context.user_id
        if payload.global_default:
            if not context.is_admin:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="only admins can set the global gateway config",
                )
            owner = GLOBAL_CONFIG_OWNER
        return get_store(request).upsert_gateway_config(owner, payload)

    # contacts

    @router.post("/contacts", response_model=ContactRecord)
    def create_contact(
        payload: ContactCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> ContactRecord:
        store = get_store(request)
        if payload.instance_id:
            owned_instance(store, payload.instance_id, context.user_id)
        try:
            contact, _ = store.find_or_create_contact(
                user_id=context.user_id,
                phone=payload.phone,
                instance_id=payload.instance_id,
                name=payload.name,
                tags=payload.tags,
            )
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return contact

    @router.get("/contacts", response_model=list[ContactRecord])
    def list_contacts(
        request: Request,
        user_id: Optional[str] = Query(default=None),
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[ContactRecord]:
        return get_store(request).list_contacts(tenant_scope(context, user_id))

    @router.get("/contacts/{contact_id}/messages", response_model=list[MessageRecord])
    def contact_messages(
        contact_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[MessageRecord]:
        store = get_store(request)
        try:
            store.get_contact(contact_id, user_id=None if context.is_admin else context.user_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        return store.list_messages(contact_id)

    @router.post("/contacts/{contact_id}/resume-flows", response_model=ContactRecord)
    def resume_contact_flows(
        contact_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> ContactRecord:
        store = get_store(request)
        try:
            store.get_contact(contact_id, user_id=None if context.is_admin else context.user_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        return store.update_contact(contact_id, flow_paused=False)

    # flows and sessions

    @router.post("/flows", response_model=FlowRecord, status_code=status.HTTP_201_CREATED)
    def create_flow(
        payload: FlowCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> FlowRecord:
        store = get_store(request)
        for instance_id in payload.assigned_instances:
            owned_instance(store, instance_id, context.user_id)
        return store.create_flow(context.user_id, payload)

    @router.get("/flows", response_model=list[FlowRecord])
    def list_flows(
        request: Request,
        user_id: Optional[str] = Query(default=None),
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[FlowRecord]:
        return get_store(request).list_flows(tenant_scope(context, user_id))

    @router.get("/flows/{flow_id}", response_model=FlowRecord)
    def get_flow(
        flow_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> FlowRecord:
        try:
            return get_store(request).get_flow(
                flow_id, user_id=None if context.is_admin else context.user_id
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    @router.post("/flows/{flow_id}/active", response_model=FlowRecord)
    def set_flow_active(
        flow_id: str,
        payload: FlowActiveRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> FlowRecord:
        store = get_store(request)
        try:
            store.get_flow(flow_id, user_id=None if context.is_admin else context.user_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        return store.set_flow_active(flow_id, payload.is_active)

    @router.post("/flows/{flow_id}/trigger", response_model=FlowTriggerResponse)
    def trigger_flow_for_contact(
        flow_id: str,
        payload: FlowTriggerRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> FlowTriggerResponse:
        try:
            return trigger_flow(
                get_store(request),
                get_engine(request),
                user_id=context.user_id,
                contact_id=payload.contact_id,
                flow_id=flow_id,
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        except FlowTriggerError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    @router.get("/sessions/{session_id}", response_model=SessionRecord)
    def get_session(
        session_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN, SERVICE)),
    ) -> SessionRecord:
        try:
            session = get_store(request).get_session(session_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if session.user_id != context.user_id and context.roles.isdisjoint({ADMIN, SERVICE}):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"session does not belong to user: {session_id}",
            )
        return session

    @router.get("/sessions/{session_id}/analytics", response_model=list[FlowAnalyticsRecord])
    def session_analytics(
        session_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[FlowAnalyticsRecord]:
        store = get_store(request)
        try:
            session = store.get_session(session_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if session.user_id != context.user_id and not context.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"session does not belong to user: {session_id}",
            )
        return store.list_flow_analytics(session_id=session_id)

    @router.post("/sessions/{session_id}/process", response_model=FlowRunResult)
    def process_session(
        session_id: str,
        payload: SessionProcessRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN, SERVICE)),
    ) -> FlowRunResult:
        store = get_store(request)
        try:
            session = store.get_session(session_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if session.user_id != context.user_id and context.roles.isdisjoint({ADMIN, SERVICE}):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"session does not belong to user: {session_id}",
            )
        try:
            return get_engine(request).process_session(
                session_id,
                user_input=payload.user_input,
                resume_from_delay=payload.resume_from_delay,
                resume_from_timeout=payload.resume_from_timeout,
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @router.post("/queue/delays/run", response_model=QueueRunResponse)
    def run_delays(
        request: Request,
        _: AuthContext = Depends(require_roles(SERVICE, ADMIN)),
    ) -> QueueRunResponse:
        return run_delay_queue(
            store=get_store(request),
            engine=get_engine(request),
            batch_size=get_settings(request).delay_queue_batch_size,
        )

    # gateway events

    @router.post("/webhooks/gateway", response_model=WebhookEventResponse)
    async def gateway_webhook(request: Request) -> WebhookEventResponse:
        store = get_store(request)
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            verify_gateway_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.gateway_webhook_secret,
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            event = parse_gateway_event(json.loads(raw_body.decode("utf-8")))
        except (json.JSONDecodeError, ValueError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc
        except PermanentWebhookError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        get_metrics(request).increment("gateway_events_received")
        existing = store.ensure_webhook_delivery(channel=GATEWAY_CHANNEL, event_id=event.event_id)
        if existing.status == WebhookProcessingStatus.processed:
            return WebhookEventResponse(status="duplicate", attempts=existing.attempts)
        if existing.status == WebhookProcessingStatus.failed:
            return WebhookEventResponse(
                status="failed",
                attempts=existing.attempts,
                detail="max retries reached; manual intervention required",
            )

        processor = InboundProcessor(store=store, engine=get_engine(request), settings=settings)
        try:
            detail = await run_in_threadpool(processor.process, event, is_retry=existing.attempts > 0)
            record = store.record_webhook_attempt(
                channel=GATEWAY_CHANNEL,
                event_id=event.event_id,
                success=True,
                max_retries=settings.webhook_max_retries,
                backoff_seconds=settings.webhook_retry_backoff_seconds,
            )
            return WebhookEventResponse(
                status="processed",
                attempts=record.attempts,
                detail=detail,
            )
        except TransientWebhookError as exc:
            record = store.record_webhook_attempt(
                channel=GATEWAY_CHANNEL,
                event_id=event.event_id,
                success=False,
                transient=True,
                error=str(exc),
                max_retries=settings.webhook_max_retries,
                backoff_seconds=settings.webhook_retry_backoff_seconds,
            )
            return WebhookEventResponse(
                status=record.status.value,
                attempts=record.attempts,
                next_retry_utc=record.next_retry_utc,
                detail=record.last_error,
            )
        except PermanentWebhookError as exc:
            record = store.record_webhook_attempt(
                channel=GATEWAY_CHANNEL,
                event_id=event.event_id,
                success=False,
                transient=False,
                error=str(exc),
                max_retries=settings.webhook_max_retries,
                backoff_seconds=settings.webhook_retry_backoff_seconds,
            )
            return WebhookEventResponse(
                status=record.status.value,
                attempts=record.attempts,
                detail=record.last_error,
            )

    # commerce, sale and payment webhooks

    @router.post("/logzz/webhooks", response_model=LogzzWebhookRecord, status_code=status.HTTP_201_CREATED)
    def create_logzz_webhook(
        payload: LogzzWebhookCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> LogzzWebhookRecord:
        store = get_store(request)
        if payload.instance_id:
            owned_instance(store, payload.instance_id, context.user_id)
        if payload.flow_id:
            try:
                store.get_flow(payload.flow_id, user_id=context.user_id)
            except StoreNotFoundError as exc:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
            except StoreForbiddenError as exc:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        return store.create_logzz_webhook(context.user_id, payload)

    @router.get("/logzz/webhooks", response_model=list[LogzzWebhookRecord])
    def list_logzz_webhooks(
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[LogzzWebhookRecord]:
        return get_store(request).list_logzz_webhooks(context.user_id)

    @router.get("/logzz/events", response_model=list[CommerceEventRecord])
    def list_commerce_events(
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[CommerceEventRecord]:
        return get_store(request).list_commerce_events(context.user_id)

    @router.post("/webhooks/logzz/{kind}", response_model=CommerceWebhookResponse)
    async def logzz_webhook(
        kind: CommerceEventKind,
        request: Request,
        token: Optional[str] = Query(default=None),
    ) -> CommerceWebhookResponse:
        if not token:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="token is required")
        body = await read_json_body(request)
        processor = CommerceWebhookProcessor(
            store=get_store(request),
            engine=get_engine(request),
            settings=get_settings(request),
        )
        try:
            return await run_in_threadpool(processor.process, token=token, kind=kind, body=body)
        except WebhookTokenError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
        except StoreForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        except PayloadError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    @router.post("/webhooks/sales", response_model=SaleWebhookResponse)
    async def sale_webhook(request: Request) -> SaleWebhookResponse:
        settings = get_settings(request)
        try:
            verify_hubla_token(request.headers, settings.hubla_webhook_token)
        except WebhookTokenError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
        body = await read_json_body(request)
        try:
            return process_sale(get_store(request), body)
        except PayloadError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    @router.get("/members/{email}", response_model=MemberRecord)
    def get_member(
        email: str,
        request: Request,
        _: AuthContext = Depends(require_roles(ADMIN, SERVICE)),
    ) -> MemberRecord:
        try:
            return get_store(request).get_member(email)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @router.post(
        "/payments/webhooks",
        response_model=PaymentWebhookRecord,
        status_code=status.HTTP_201_CREATED,
    )
    def create_payment_webhook(
        payload: PaymentWebhookCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> PaymentWebhookRecord:
        return get_store(request).create_payment_webhook(context.user_id, payload)

    @router.get("/payments/webhooks", response_model=list[PaymentWebhookRecord])
    def list_payment_webhooks(
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[PaymentWebhookRecord]:
        return get_store(request).list_payment_webhooks(context.user_id)

    @router.get(
        "/payments/webhooks/{webhook_id}/notifications",
        response_model=list[PaymentNotificationRecord],
    )
    def list_payment_notifications(
        webhook_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[PaymentNotificationRecord]:
        store = get_store(request)
        try:
            webhook = store.get_payment_webhook(webhook_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if webhook.user_id != context.user_id and not context.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"payment webhook does not belong to user: {webhook_id}",
            )
        return store.list_payment_notifications(webhook_id)

    @router.post("/webhooks/payments/{webhook_id}", response_model=PaymentWebhookResponse)
    async def payment_webhook(webhook_id: str, request: Request) -> PaymentWebhookResponse:
        body = await read_json_body(request)
        try:
            return await run_in_threadpool(
                process_payment,
                get_store(request),
                get_push_client(request),
                webhook_id=webhook_id,
                payload=body,
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    # push notifications

    @router.put("/push/profile", response_model=PushProfileRecord)
    def update_push_profile(
        payload: PushProfileUpdateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> PushProfileRecord:
        return get_store(request).upsert_push_profile(context.user_id, payload)

    @router.post("/push/events", response_model=PushEventResponse)
    def push_event(
        payload: PushEventRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(SERVICE, ADMIN)),
    ) -> PushEventResponse:
        try:
            return send_push_event(get_store(request), get_push_client(request), payload)
        except PushDeliveryError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    @router.post("/push/queue", response_model=PushQueueItemRecord, status_code=status.HTTP_201_CREATED)
    def enqueue_push(
        payload: PushQueueCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(SERVICE, ADMIN)),
    ) -> PushQueueItemRecord:
        return get_store(request).enqueue_push(payload)

    @router.post("/push/queue/run", response_model=PushQueueRunResponse)
    def run_push_notifications(
        request: Request,
        _: AuthContext = Depends(require_roles(SERVICE, ADMIN)),
    ) -> PushQueueRunResponse:
        try:
            return run_push_queue(get_store(request), get_push_client(request))
        except PushDeliveryError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    # blaster

    @router.post(
        "/blaster/campaigns",
        response_model=BlasterCampaignRecord,
        status_code=status.HTTP_201_CREATED,
    )
    def create_campaign(
        payload: BlasterCampaignCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> BlasterCampaignRecord:
        store = get_store(request)
        for instance_id in payload.assigned_instances:
            owned_instance(store, instance_id, context.user_id)
        if payload.flow_id:
            try:
                store.get_flow(payload.flow_id, user_id=context.user_id)
            except StoreNotFoundError as exc:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
            except StoreForbiddenError as exc:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        return store.create_campaign(context.user_id, payload)

    @router.get("/blaster/campaigns", response_model=list[BlasterCampaignRecord])
    def list_campaigns(
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[BlasterCampaignRecord]:
        return get_store(request).list_campaigns(context.user_id)

    @router.get("/blaster/campaigns/{campaign_id}", response_model=BlasterCampaignRecord)
    def get_campaign(
        campaign_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> BlasterCampaignRecord:
        try:
            return get_store(request).get_campaign(
                campaign_id, user_id=None if context.is_admin else context.user_id
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    @router.post("/blaster/campaigns/{campaign_id}/status", response_model=BlasterCampaignRecord)
    def change_campaign_status(
        campaign_id: str,
        payload: CampaignStatusRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> BlasterCampaignRecord:
        store = get_store(request)
        try:
            campaign = store.get_campaign(
                campaign_id, user_id=None if context.is_admin else context.user_id
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        if campaign.status in {BlasterStatus.completed, BlasterStatus.cancelled}:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"campaign already {campaign.status.value}",
            )
        if payload.status in {BlasterStatus.draft, BlasterStatus.completed}:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"cannot move a campaign to {payload.status.value}",
            )
        changes: dict[str, Any] = {"status": payload.status}
        if payload.status == BlasterStatus.running and campaign.started_at_utc is None:
            changes["started_at_utc"] = utc_now()
        if payload.status == BlasterStatus.cancelled:
            changes["completed_at_utc"] = utc_now()
        return store.update_campaign(campaign_id, **changes)

    @router.post("/blaster/campaigns/{campaign_id}/run", response_model=BlasterBatchResponse)
    def run_campaign_batch(
        campaign_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN, SERVICE)),
    ) -> BlasterBatchResponse:
        state = request.app.state
        scoped = context.roles.isdisjoint({ADMIN, SERVICE})
        try:
            return run_blaster_batch(
                campaign_id,
                store=state.store,
                engine=get_engine(request),
                gateway_factory=state.gateway_factory,
                settings=state.settings,
                user_id=context.user_id if scoped else None,
                sleeper=state.sleeper,
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        except BlasterError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    @router.get("/blaster/campaigns/{campaign_id}/logs", response_model=list[BlasterLogRecord])
    def campaign_logs(
        campaign_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[BlasterLogRecord]:
        store = get_store(request)
        try:
            store.get_campaign(campaign_id, user_id=None if context.is_admin else context.user_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        return store.list_blaster_logs(campaign_id)

    # ad metrics

    @router.post("/ad-metrics", response_model=AdMetricRecord)
    def save_ad_metric(
        payload: AdMetricCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> AdMetricRecord:
        return ad_metrics.save_entry(get_store(request), context.user_id, payload)

    @router.get("/ad-metrics", response_model=list[AdMetricRecord])
    def list_ad_metrics(
        request: Request,
        date_from: Optional[date] = Query(default=None),
        date_to: Optional[date] = Query(default=None),
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> list[AdMetricRecord]:
        return get_store(request).list_ad_metrics(
            context.user_id, date_from=date_from, date_to=date_to
        )

    @router.get("/ad-metrics/summary", response_model=AdMetricSummaryResponse)
    def ad_metric_summary(
        request: Request,
        date_from: Optional[date] = Query(default=None),
        date_to: Optional[date] = Query(default=None),
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> AdMetricSummaryResponse:
        if date_from and date_to and date_from > date_to:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="date_from cannot be after date_to",
            )
        return ad_metrics.summarize(
            get_store(request), context.user_id, date_from=date_from, date_to=date_to
        )

    @router.delete("/ad-metrics/{metric_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_ad_metric(
        metric_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(OWNER, ADMIN)),
    ) -> Response:
        try:
            get_store(request).delete_ad_metric(context.user_id, metric_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return router


app = create_app()
