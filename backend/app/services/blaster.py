from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional

from backend.app.models import (
    ApiProvider,
    BlasterBatchResponse,
    BlasterCampaignRecord,
    BlasterStatus,
    FlowRecord,
    InstanceRecord,
    InstanceStatus,
    utc_now,
)
from backend.app.services.flow_engine import FlowEngine
from backend.app.services.flow_triggers import base_variables, cancel_active_sessions, start_flow_for_contact
from backend.app.services.gateway import GatewayError, GatewayFactory, UazapiClient
from backend.app.settings import Settings
from backend.app.store import InMemoryStore

logger = logging.getLogger("zapdesk.blaster")

FINISHED_STATUSES = {BlasterStatus.completed, BlasterStatus.cancelled}


class BlasterError(Exception):
    pass


def instance_for_index(index: int, dispatches_per_instance: int, instances: list[InstanceRecord]) -> InstanceRecord:
    return instances[(index // max(dispatches_per_instance, 1)) % len(instances)]


def _native_message(campaign: BlasterCampaignRecord, index: int, phone: str) -> dict:
    text = campaign.messages[index % len(campaign.messages)] if campaign.messages else ""
    if campaign.message_type == "text":
        return {"number": phone, "type": "text", "text": text}
    message = {"number": phone, "type": campaign.message_type, "file": campaign.media_url, "text": text}
    if campaign.message_type == "document":
        message["docName"] = "document"
    return message


class BlasterRunner:
    def __init__(
        self,
        *,
        store: InMemoryStore,
        engine: FlowEngine,
        gateway_factory: GatewayFactory,
        settings: Settings,
        sleeper: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.gateway_factory = gateway_factory
        self.settings = settings
        self.sleeper = sleeper
        self.rng = rng or random.Random()

    def run_batch(self, campaign_id: str, *, user_id: Optional[str] = None) -> BlasterBatchResponse:
        campaign = self.store.get_campaign(campaign_id, user_id=user_id)
        if campaign.status in FINISHED_STATUSES:
            return self._response(campaign, mode="none", processed=0, sent=0, failed=0)
        if not campaign.assigned_instances:
            raise BlasterError("no instances assigned")
        instances = [
            instance
            for instance_id in campaign.assigned_instances
            if (instance := self.store.instances.get(instance_id)) is not None
            and instance.status == InstanceStatus.connected
        ]
        if not instances:
            raise BlasterError("no connected instances found")

        flow = self.store.get_flow(campaign.flow_id, user_id=campaign.user_id) if campaign.flow_id else None

        if instances[0].api_provider == ApiProvider.uazapi and flow is None:
            native = self._run_native(campaign, instances[0])
            if native is not None:
                return native

        if campaign.status != BlasterStatus.running:
            campaign = self.store.update_campaign(
                campaign.id,
                status=BlasterStatus.running,
                started_at_utc=campaign.started_at_utc or utc_now(),
            )
        return self._run_individual(campaign, instances, flow)

    def _run_native(self, campaign: BlasterCampaignRecord, instance: InstanceRecord) -> Optional[BlasterBatchResponse]:
        try:
            client = self.gateway_factory.for_instance(instance)
            if not isinstance(client, UazapiClient):
                return None
            result = client.create_advanced_campaign(
                delay_min=campaign.delay_min,
                delay_max=campaign.delay_max,
                info=campaign.name,
                messages=[
                    _native_message(campaign, index, phone)
                    for index, phone in enumerate(campaign.phone_numbers)
                ],
            )
        except GatewayError as exc:
            logger.warning("blaster_native_failed campaign_id=%s error=%s", campaign.id, exc)
            return None

        total = len(campaign.phone_numbers)
        for index, phone in enumerate(campaign.phone_numbers):
            self.store.add_blaster_log(
                campaign_id=campaign.id,
                phone=phone,
                instance_id=instance.id,
                status="sent",
                message=_native_message(campaign, index, phone).get("text") or f"[{campaign.message_type}]",
            )
        now = utc_now()
        campaign = self.store.update_campaign(
            campaign.id,
            status=BlasterStatus.completed,
            provider_folder_id=str(result.get("folder_id") or "") or None,
            current_index=total,
            sent_count=total,
            failed_count=0,
            started_at_utc=campaign.started_at_utc or now,
            completed_at_utc=now,
        )
        logger.info("blaster_native_queued campaign_id=%s folder_id=%s count=%s", campaign.id, campaign.provider_folder_id, total)
        return self._response(campaign, mode="uazapi_native", processed=total, sent=total, failed=0)

    def _run_individual(
        self,
        campaign: BlasterCampaignRecord,
        instances: list[InstanceRecord],
        flow: Optional[FlowRecord],
    ) -> BlasterBatchResponse:
        batch_size = self.settings.blaster_flow_batch_size if flow else self.settings.blaster_batch_size
        start = campaign.current_index
        end = min(start + batch_size, len(campaign.phone_numbers))
        sent = 0
        failed = 0
        for index in range(start, end):
            if self.store.get_campaign(campaign.id).status != BlasterStatus.running:
                logger.info("blaster_stopped campaign_id=%s index=%s", campaign.id, index)
                break
            phone = campaign.phone_numbers[index]
            instance = instance_for_index(index, campaign.dispatches_per_instance, instances)
            if flow is not None:
                error, message = self._send_flow(campaign, flow, instance, phone)
            else:
                error, message = self._send_message(campaign, instance, phone)
            if error is None:
                sent += 1
            else:
                failed += 1
            self.store.add_blaster_log(
                campaign_id=campaign.id,
                phone=phone,
                instance_id=instance.id,
                status="sent" if error is None else "failed",
                message=message,
                error=error,
            )
            current = self.store.get_campaign(campaign.id)
            self.store.update_campaign(
                campaign.id,
                current_index=index + 1,
                sent_count=current.sent_count + (error is None),
                failed_count=current.failed_count + (error is not None),
            )
            if index < end - 1:
                self.sleeper(self.rng.randint(campaign.delay_min, campaign.delay_max))

        campaign = self.store.get_campaign(campaign.id)
        if campaign.current_index >= len(campaign.phone_numbers):
            campaign = self.store.update_campaign(
                campaign.id, status=BlasterStatus.completed, completed_at_utc=utc_now()
            )
            logger.info(
                "blaster_completed campaign_id=%s sent=%s failed=%s",
                campaign.id,
                campaign.sent_count,
                campaign.failed_count,
            )
        return self._response(campaign, mode="individual", processed=sent + failed, sent=sent, failed=failed)

    def _send_message(
        self, campaign: BlasterCampaignRecord, instance: InstanceRecord, phone: str
    ) -> tuple[Optional[str], str]:
        text = self.rng.choice(campaign.messages) if campaign.messages else ""
        label = text or f"[{campaign.message_type}] {campaign.media_url}"
        try:
            client = self.gateway_factory.for_instance(instance)
            if campaign.message_type == "text":
                result = client.send_text(phone, text)
            else:
                result = client.send_media(
                    phone,
                    campaign.message_type,
                    campaign.media_url or "",
                    caption=text,
                    file_name="document",
                )
        except GatewayError as exc:
            return str(exc), label
        return (None if result.ok else result.error or "send failed"), label

    def _send_flow(
        self,
        campaign: BlasterCampaignRecord,
        flow: FlowRecord,
        instance: InstanceRecord,
        phone: str,
    ) -> tuple[Optional[str], str]:
        label = f"[Fluxo] {flow.name}"
        contact, _ = self.store.find_or_create_contact(
            user_id=campaign.user_id, phone=phone, instance_id=instance.id
        )
        cancel_active_sessions(self.store, contact.id)
        variables = base_variables(contact)
        variables["_triggered_by"] = "blaster"
        variables["_blaster_campaign_id"] = campaign.id
        _, result = start_flow_for_contact(
            self.store,
            self.engine,
            flow=flow,
            contact=contact,
            instance_id=instance.id,
            variables=variables,
        )
        return (None if result.success else result.error or "flow failed"), label

    def _response(
        self, campaign: BlasterCampaignRecord, *, mode: str, processed: int, sent: int, failed: int
    ) -> BlasterBatchResponse:
        return BlasterBatchResponse(
            campaign_id=campaign.id,
            status=campaign.status,
            mode=mode,
            processed=processed,
            sent=sent,
            failed=failed,
            current_index=campaign.current_index,
            has_more=campaign.status == BlasterStatus.running
            and campaign.current_index < len(campaign.phone_numbers),
        )


def run_blaster_batch(
    campaign_id: str,
    *,
    store: InMemoryStore,
    engine: FlowEngine,
    gateway_factory: GatewayFactory,
    settings: Settings,
    user_id: Optional[str] = None,
    sleeper: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
) -> BlasterBatchResponse:
    runner = BlasterRunner(
        store=store,
        engine=engine,
        gateway_factory=gateway_factory,
        settings=settings,
        sleeper=sleeper,
        rng=rng,
    )
    return runner.run_batch(campaign_id, user_id=user_id)
