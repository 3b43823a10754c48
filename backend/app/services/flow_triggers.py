from __future__ import annotations

import logging
from typing import Any, Optional

from backend.app.models import (
    ContactRecord,
    DelayJobStatus,
    FlowRecord,
    FlowRunResult,
    FlowTriggerResponse,
    FlowTriggerType,
    SessionRecord,
    SessionStatus,
    utc_now,
)
from backend.app.services.flow_engine import FlowEngine
from backend.app.store import InMemoryStore

logger = logging.getLogger("zapdesk.triggers")


class FlowTriggerError(Exception):
    pass


def assigned_to(flow: FlowRecord, instance_id: Optional[str]) -> bool:
    if not flow.assigned_instances:
        return True
    return instance_id is not None and instance_id in flow.assigned_instances


def base_variables(contact: ContactRecord, last_message: str = "") -> dict[str, Any]:
    variables: dict[str, Any] = {
        "nome": contact.name or "",
        "telefone": contact.phone,
        "lastMessage": last_message,
        "contactName": contact.name or contact.phone,
        "_sent_node_ids": [],
    }
    if last_message:
        variables["resposta"] = last_message
        variables["ultima_mensagem"] = last_message
    return variables


def match_keyword_flow(
    store: InMemoryStore, *, user_id: str, instance_id: Optional[str], text: str
) -> Optional[FlowRecord]:
    """First active keyword flow (highest priority) whose keyword appears in the text."""
    lowered = text.lower()
    if not lowered.strip():
        return None
    for flow in store.active_flows(user_id, FlowTriggerType.keyword):
        if not assigned_to(flow, instance_id):
            continue
        for keyword in flow.trigger_keywords:
            if keyword.strip() and keyword.strip().lower() in lowered:
                logger.info("flow_keyword_match flow_id=%s keyword=%s", flow.id, keyword)
                return flow
    return None


def cancel_active_sessions(store: InMemoryStore, contact_id: str) -> int:
    sessions = store.active_sessions_for_contact(contact_id)
    for session in sessions:
        close_session(store, session)
    return len(sessions)


def close_session(store: InMemoryStore, session: SessionRecord) -> None:
    store.update_session(
        session.id,
        status=SessionStatus.completed,
        completed_at_utc=utc_now(),
        timeout_at_utc=None,
        processing=False,
        processing_started_at_utc=None,
    )
    job = store.get_delay_job(session.id)
    if job and job.status == DelayJobStatus.scheduled:
        store.update_delay_job(session.id, status=DelayJobStatus.done)


def start_flow_for_contact(
    store: InMemoryStore,
    engine: FlowEngine,
    *,
    flow: FlowRecord,
    contact: ContactRecord,
    instance_id: Optional[str],
    variables: dict[str, Any],
) -> tuple[SessionRecord, FlowRunResult]:
    session = store.create_session(
        flow=flow, contact=contact, instance_id=instance_id, variables=variables
    )
    logger.info(
        "flow_session_started session_id=%s flow_id=%s contact_id=%s",
        session.id,
        flow.id,
        contact.id,
    )
    return session, engine.process_session(session.id)


def trigger_flow(
    store: InMemoryStore,
    engine: FlowEngine,
    *,
    user_id: str,
    contact_id: str,
    flow_id: str,
) -> FlowTriggerResponse:
    contact = store.get_contact(contact_id, user_id=user_id)
    flow = store.get_flow(flow_id, user_id=user_id)
    if not flow.is_active:
        raise FlowTriggerError("flow is not active")
    if flow.assigned_instances and not assigned_to(flow, contact.instance_id):
        raise FlowTriggerError("flow not assigned to this contact instance")

    variables = base_variables(contact)
    existing: Optional[SessionRecord] = None
    for session in store.active_sessions_for_contact(contact.id):
        if session.flow_id == flow.id and existing is None:
            existing = session
        else:
            close_session(store, session)

    if existing is not None:
        store.update_session(
            existing.id,
            current_node_id=flow.start_node_id(),
            variables=variables,
            instance_id=contact.instance_id,
            timeout_at_utc=None,
            last_interaction_utc=utc_now(),
            processing=False,
            processing_started_at_utc=None,
        )
        logger.info("flow_session_reset session_id=%s flow_id=%s", existing.id, flow.id)
        return FlowTriggerResponse(
            session_id=existing.id, run=engine.process_session(existing.id)
        )

    session, run = start_flow_for_contact(
        store,
        engine,
        flow=flow,
        contact=contact,
        instance_id=contact.instance_id,
        variables=variables,
    )
    return FlowTriggerResponse(session_id=session.id, run=run)
