from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    return datetime.utcnow()


class ApiProvider(str, Enum):
    evolution = "evolution"
    uazapi = "uazapi"


class InstanceStatus(str, Enum):
    connected = "connected"
    connecting = "connecting"
    disconnected = "disconnected"


class FlowTriggerType(str, Enum):
    keyword = "keyword"
    all = "all"
    manual = "manual"


class SessionStatus(str, Enum):
    active = "active"
    completed = "completed"
    failed = "failed"


class DelayJobStatus(str, Enum):
    scheduled = "scheduled"
    processing = "processing"
    done = "done"
    failed = "failed"


class MessageDirection(str, Enum):
    inbound = "inbound"
    outbound = "outbound"


class MessageStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


class WebhookProcessingStatus(str, Enum):
    received = "received"
    processed = "processed"
    retry_pending = "retry_pending"
    failed = "failed"


class CommerceEventKind(str, Enum):
    order = "order"
    cart = "cart"
    shipment = "shipment"


class PaymentProvider(str, Enum):
    inter = "inter"
    infinitepay = "infinitepay"


class BlasterStatus(str, Enum):
    draft = "draft"
    running = "running"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class InstanceCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    instance_name: str = Field(min_length=2, max_length=120)
    api_provider: ApiProvider = ApiProvider.evolution
    api_token: Optional[str] = Field(default=None, max_length=255)
    phone_number: Optional[str] = Field(default=None, max_length=20)
    status: InstanceStatus = InstanceStatus.disconnected


class InstanceRecord(BaseModel):
    id: str
    user_id: str
    name: str
    instance_name: str
    api_provider: ApiProvider
    status: InstanceStatus
    api_token: Optional[str] = None
    phone_number: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class GatewayConfigRequest(BaseModel):
    base_url: Optional[str] = Field(default=None, max_length=255)
    api_key: Optional[str] = Field(default=None, max_length=255)
    uazapi_base_url: Optional[str] = Field(default=None, max_length=255)
    global_default: bool = False


class GatewayConfigRecord(BaseModel):
    owner: str
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    uazapi_base_url: Optional[str] = None
    updated_at_utc: datetime


class ContactCreateRequest(BaseModel):
    phone: str = Field(min_length=8, max_length=20)
    name: Optional[str] = Field(default=None, max_length=120)
    instance_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class ContactRecord(BaseModel):
    id: str
    user_id: str
    instance_id: Optional[str] = None
    phone: str
    remote_jid: str
    name: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    flow_paused: bool = False
    last_message_at_utc: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class FlowNode(BaseModel):
    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class FlowEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")


class FlowCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    is_active: bool = True
    trigger_type: FlowTriggerType = FlowTriggerType.manual
    trigger_keywords: list[str] = Field(default_factory=list)
    priority: int = 0
    assigned_instances: list[str] = Field(default_factory=list)
    pause_on_media: bool = False

    @model_validator(mode="after")
    def validate_graph(self) -> "FlowCreateRequest":
        node_ids = [node.id for node in self.nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("node ids must be unique")
        if self.trigger_type == FlowTriggerType.keyword and not any(
            keyword.strip() for keyword in self.trigger_keywords
        ):
            raise ValueError("keyword flows need at least one trigger keyword")
        return self


class FlowRecord(BaseModel):
    id: str
    user_id: str
    name: str
    nodes: list[FlowNode]
    edges: list[FlowEdge]
    is_active: bool
    trigger_type: FlowTriggerType
    trigger_keywords: list[str]
    priority: int
    assigned_instances: list[str]
    pause_on_media: bool
    created_at_utc: datetime
    updated_at_utc: datetime

    def node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def start_node_id(self) -> str:
        for node in self.nodes:
            if node.type == "start":
                return node.id
        return "start-1"


class SessionRecord(BaseModel):
    id: str
    flow_id: str
    contact_id: str
    user_id: str
    instance_id: Optional[str] = None
    current_node_id: str
    variables: dict[str, Any] = Field(default_factory=dict)
    status: SessionStatus = SessionStatus.active
    processing: bool = False
    processing_started_at_utc: Optional[datetime] = None
    timeout_at_utc: Optional[datetime] = None
    started_at_utc: datetime
    last_interaction_utc: datetime
    completed_at_utc: Optional[datetime] = None


class DelayJobRecord(BaseModel):
    id: str
    session_id: str
    user_id: str
    run_at_utc: datetime
    status: DelayJobStatus = DelayJobStatus.scheduled
    attempts: int = 0
    last_error: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class MessageRecord(BaseModel):
    id: str
    user_id: str
    contact_id: str
    instance_id: Optional[str] = None
    direction: MessageDirection
    message_type: str = "text"
    content: str = ""
    media_url: Optional[str] = None
    remote_message_id: Optional[str] = None
    status: MessageStatus = MessageStatus.pending
    flow_session_id: Optional[str] = None
    created_at_utc: datetime


class FlowAnalyticsRecord(BaseModel):
    id: str
    session_id: str
    flow_id: str
    user_id: str
    node_id: str
    node_type: str
    created_at_utc: datetime


class WebhookDeliveryRecord(BaseModel):
    id: str
    key: str
    channel: str
    event_id: str
    status: WebhookProcessingStatus
    attempts: int = 0
    last_error: Optional[str] = None
    next_retry_utc: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class WebhookEventResponse(BaseModel):
    status: str
    attempts: int
    next_retry_utc: Optional[datetime] = None
    detail: Optional[str] = None


class LogzzWebhookCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    event_type: CommerceEventKind = CommerceEventKind.order
    flow_id: Optional[str] = None
    instance_id: Optional[str] = None
    is_active: bool = True


class LogzzWebhookRecord(BaseModel):
    id: str
    user_id: str
    name: str
    token: str
    event_type: CommerceEventKind
    flow_id: Optional[str] = None
    instance_id: Optional[str] = None
    is_active: bool = True
    created_at_utc: datetime


class CommerceEventRecord(BaseModel):
    id: str
    webhook_id: str
    user_id: str
    kind: CommerceEventKind
    order_number: Optional[str] = None
    status: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    product_name: Optional[str] = None
    total: Optional[float] = None
    occurred_at_utc: Optional[datetime] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    flow_triggered: bool = False
    flow_error: Optional[str] = None
    created_at_utc: datetime


class CommerceWebhookResponse(BaseModel):
    success: bool
    event_id: str
    duplicate: bool = False
    flow_triggered: bool = False
    flow_error: Optional[str] = None


class MemberRecord(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    is_full_member: bool = False
    source: str
    created_at_utc: datetime
    updated_at_utc: datetime


class SaleWebhookResponse(BaseModel):
    success: bool
    member_id: str
    email: str
    created: bool


class PaymentWebhookCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    provider: PaymentProvider
    is_active: bool = True


class PaymentWebhookRecord(BaseModel):
    id: str
    user_id: str
    name: str
    provider: PaymentProvider
    is_active: bool = True
    notifications_count: int = 0
    total_received: float = 0.0
    created_at_utc: datetime


class PaymentNotificationRecord(BaseModel):
    id: str
    webhook_id: str
    user_id: str
    amount: float
    payer_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at_utc: datetime


class PaymentWebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    notification_id: Optional[str] = None
    amount: Optional[float] = None
    payer_name: Optional[str] = None
    push_sent: bool = False


class PushProfileUpdateRequest(BaseModel):
    push_enabled: bool = True
    subscription_ids: list[str] = Field(default_factory=list)


class PushProfileRecord(BaseModel):
    user_id: str
    push_enabled: bool = False
    subscription_ids: list[str] = Field(default_factory=list)
    updated_at_utc: datetime


class LocalizedText(BaseModel):
    pt: str = Field(min_length=1)
    en: str = Field(min_length=1)


class PushEventRequest(BaseModel):
    user_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1, max_length=80)
    title: LocalizedText
    content: LocalizedText
    data: dict[str, Any] = Field(default_factory=dict)


class PushEventResponse(BaseModel):
    sent: bool
    reason: Optional[str] = None
    notification_id: Optional[str] = None
    recipients: int = 0


class PushQueueCreateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=1, max_length=2000)
    data: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=5, ge=0, le=10)


class PushQueueItemRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    processed: bool = False
    last_error: Optional[str] = None
    created_at_utc: datetime
    processed_at_utc: Optional[datetime] = None


class PushQueueRunResponse(BaseModel):
    processed: int
    sent: int
    failed: int


class BlasterCampaignCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    messages: list[str] = Field(default_factory=list)
    message_type: str = Field(default="text", pattern="^(text|image|audio|video|document)$")
    media_url: Optional[str] = None
    phone_numbers: list[str] = Field(min_length=1)
    assigned_instances: list[str] = Field(default_factory=list)
    flow_id: Optional[str] = None
    delay_min: int = Field(default=5, ge=0, le=3600)
    delay_max: int = Field(default=15, ge=0, le=3600)
    dispatches_per_instance: int = Field(default=1, ge=1, le=1000)

    @model_validator(mode="after")
    def validate_content(self) -> "BlasterCampaignCreateRequest":
        if self.delay_min > self.delay_max:
            raise ValueError("delay_min cannot be greater than delay_max")
        if not self.flow_id and not any(message.strip() for message in self.messages):
            raise ValueError("campaign needs at least one message or a flow")
        if self.message_type != "text" and not self.media_url:
            raise ValueError("media campaigns need media_url")
        return self


class BlasterCampaignRecord(BaseModel):
    id: str
    user_id: str
    name: str
    messages: list[str]
    message_type: str
    media_url: Optional[str] = None
    phone_numbers: list[str]
    assigned_instances: list[str]
    flow_id: Optional[str] = None
    delay_min: int
    delay_max: int
    dispatches_per_instance: int
    status: BlasterStatus = BlasterStatus.draft
    current_index: int = 0
    sent_count: int = 0
    failed_count: int = 0
    provider_folder_id: Optional[str] = None
    started_at_utc: Optional[datetime] = None
    completed_at_utc: Optional[datetime] = None
    created_at_utc: datetime


class BlasterLogRecord(BaseModel):
    id: str
    campaign_id: str
    phone: str
    instance_id: Optional[str] = None
    status: str
    message: Optional[str] = None
    error: Optional[str] = None
    created_at_utc: datetime


class BlasterBatchResponse(BaseModel):
    campaign_id: str
    status: BlasterStatus
    mode: str
    processed: int
    sent: int
    failed: int
    current_index: int
    has_more: bool


class AdMetricCreateRequest(BaseModel):
    day: date
    product_name: str = Field(min_length=1, max_length=120)
    invested: float = Field(default=0, ge=0)
    leads: int = Field(default=0, ge=0)
    pix_count: int = Field(default=0, ge=0)
    pix_total: float = Field(default=0, ge=0)


class AdMetricRecord(BaseModel):
    id: str
    user_id: str
    day: date
    product_name: str
    invested: float
    leads: int
    pix_count: int
    pix_total: float
    cpl: float
    conversion: float
    result: float
    roas: float
    created_at_utc: datetime
    updated_at_utc: datetime


class AdMetricSummaryResponse(BaseModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    entries: int
    invested: float
    leads: int
    pix_count: int
    pix_total: float
    cpl: float
    conversion: float
    result: float
    roas: float


class CampaignStatusRequest(BaseModel):
    status: BlasterStatus


class FlowActiveRequest(BaseModel):
    is_active: bool


class FlowTriggerRequest(BaseModel):
    contact_id: str = Field(min_length=1)


class SessionProcessRequest(BaseModel):
    user_input: Optional[str] = None
    resume_from_delay: bool = False
    resume_from_timeout: bool = False


class FlowRunResult(BaseModel):
    session_id: str
    success: bool = True
    skipped: bool = False
    reason: Optional[str] = None
    status: Optional[SessionStatus] = None
    current_node_id: Optional[str] = None
    waiting_for_input: bool = False
    scheduled_delay: bool = False
    error: Optional[str] = None
    nodes_executed: list[str] = Field(default_factory=list)


class FlowTriggerResponse(BaseModel):
    session_id: str
    run: FlowRunResult


class QueueRunResponse(BaseModel):
    processed: int
    failed: int
    total: int
    healed: int = 0
