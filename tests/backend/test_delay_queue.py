from __future__ import annotations

from datetime import timedelta

from backend.app.models import DelayJobStatus, SessionStatus, utc_now
from backend.app.services.delay_queue import run_delay_queue
from backend.app.services.flow_engine import to_epoch_ms
from backend.app.services.flow_triggers import base_variables


def _session(store, seed, flow, *, instance_id="auto"):
    instance = seed.instance()
    contact = seed.contact(instance_id=instance.id)
    return store.create_session(
        flow=flow,
        contact=contact,
        instance_id=instance.id if instance_id == "auto" else instance_id,
        variables=base_variables(contact),
    )


def _delay_flow(seed):
    return seed.flow(
        [
            {"id": "wait", "type": "delay", "data": {"delay": 5, "unit": "minutes"}},
            {"id": "after", "type": "text", "data": {"message": "Depois"}},
        ]
    )


def _input_flow(seed, **wait_data):
    return seed.flow(
        [
            {"id": "wait", "type": "waitInput", "data": {"variableName": "resposta_x", **wait_data}},
            {"id": "after", "type": "text", "data": {"message": "Sem resposta"}},
        ]
    )


def test_due_delay_job_resumes_session(store, seed, engine, transport) -> None:
    session = _session(store, seed, _delay_flow(seed))
    engine.process_session(session.id)

    later = utc_now() + timedelta(minutes=6)
    engine.clock = lambda: later
    result = run_delay_queue(store=store, engine=engine, now=later)

    assert result.total == 1
    assert result.processed == 1
    assert result.failed == 0
    assert transport.sent_texts() == ["Depois"]
    assert store.get_session(session.id).status == SessionStatus.completed
    assert store.get_delay_job(session.id).status == DelayJobStatus.done


def test_job_without_session_is_marked_done(store, engine) -> None:
    now = utc_now()
    store.schedule_delay_job(session_id="ses_missing", user_id="dev-local", run_at=now - timedelta(seconds=1))

    result = run_delay_queue(store=store, engine=engine, now=now)

    assert result.processed == 1
    assert store.get_delay_job("ses_missing").status == DelayJobStatus.done


def test_early_job_is_rescheduled_to_pending_resume(store, seed, engine, transport) -> None:
    session = _session(store, seed, _delay_flow(seed))
    engine.process_session(session.id)
    resume_at = store.get_delay_job(session.id).run_at_utc
    now = utc_now()
    store.schedule_delay_job(session_id=session.id, user_id=session.user_id, run_at=now - timedelta(seconds=1))

    result = run_delay_queue(store=store, engine=engine, now=now)

    job = store.get_delay_job(session.id)
    assert result.total == 1
    assert result.processed == 0
    assert job.status == DelayJobStatus.scheduled
    assert abs((job.run_at_utc - resume_at).total_seconds()) < 0.01
    assert transport.sent_texts() == []


def test_input_timeout_continues_flow(store, seed, engine, transport) -> None:
    flow = _input_flow(seed, timeoutEnabled=True, timeout=10, timeoutUnit="minutes")
    session = _session(store, seed, flow)
    first = engine.process_session(session.id)
    assert first.waiting_for_input is True
    assert store.get_session(session.id).timeout_at_utc is not None

    later = utc_now() + timedelta(minutes=11)
    engine.clock = lambda: later
    result = run_delay_queue(store=store, engine=engine, now=later)

    assert result.processed == 1
    assert transport.sent_texts() == ["Sem resposta"]
    current = store.get_session(session.id)
    assert current.status == SessionStatus.completed
    assert current.variables["resposta_x"] == ""


def test_locked_session_retries_fifteen_seconds_later(store, seed, engine, transport) -> None:
    session = _session(store, seed, _delay_flow(seed))
    engine.process_session(session.id)
    later = utc_now() + timedelta(minutes=6)
    engine.clock = lambda: later
    store.try_lock_session(session.id, now=later, lock_timeout_seconds=60)

    result = run_delay_queue(store=store, engine=engine, now=later)

    job = store.get_delay_job(session.id)
    assert result.processed == 0
    assert job.status == DelayJobStatus.scheduled
    assert job.run_at_utc == later + timedelta(seconds=15)
    assert transport.sent_texts() == []


def test_store_errors_fail_job_after_two_attempts(store, seed, engine) -> None:
    flow = _delay_flow(seed)
    session = _session(store, seed, flow)
    now = utc_now()
    store.update_session(
        session.id,
        current_node_id="wait",
        variables={"_pendingDelay": {"nodeId": "wait", "resumeAt": to_epoch_ms(now - timedelta(minutes=1))}},
    )
    store.schedule_delay_job(session_id=session.id, user_id=session.user_id, run_at=now - timedelta(seconds=5))
    del store.flows[flow.id]

    first = run_delay_queue(store=store, engine=engine, now=now)
    job = store.get_delay_job(session.id)
    assert first.failed == 1
    assert job.status == DelayJobStatus.scheduled
    assert job.attempts == 1
    assert "flow not found" in job.last_error

    second = run_delay_queue(store=store, engine=engine, now=now)
    assert second.failed == 1
    assert store.get_delay_job(session.id).status == DelayJobStatus.failed


def test_orphaned_timeout_sessions_are_failed(store, seed, engine) -> None:
    session = _session(store, seed, _input_flow(seed))
    now = utc_now()
    store.update_session(session.id, current_node_id="wait", timeout_at_utc=now - timedelta(hours=25))
    store.schedule_delay_job(session_id=session.id, user_id=session.user_id, run_at=now + timedelta(hours=1))

    result = run_delay_queue(store=store, engine=engine, now=now)

    assert result.healed == 1
    assert store.get_session(session.id).status == SessionStatus.failed
    assert store.get_delay_job(session.id).status == DelayJobStatus.failed


def test_expired_timeout_without_job_is_resumed(store, seed, engine, transport) -> None:
    session = _session(store, seed, _input_flow(seed))
    engine.process_session(session.id)
    now = utc_now()
    store.update_session(session.id, timeout_at_utc=now - timedelta(minutes=1))

    result = run_delay_queue(store=store, engine=engine, now=now)

    assert result.total == 0
    assert result.healed == 1
    assert transport.sent_texts() == ["Sem resposta"]


def test_expired_timeout_without_instance_fails_session(store, seed, engine) -> None:
    session = _session(store, seed, _input_flow(seed), instance_id=None)
    now = utc_now()
    store.update_session(session.id, current_node_id="wait", timeout_at_utc=now - timedelta(minutes=1))

    run_delay_queue(store=store, engine=engine, now=now)

    assert store.get_session(session.id).status == SessionStatus.failed


def test_stale_lock_is_released(store, seed, engine) -> None:
    session = _session(store, seed, _input_flow(seed))
    engine.process_session(session.id)
    now = utc_now()
    store.update_session(
        session.id, processing=True, processing_started_at_utc=now - timedelta(minutes=5)
    )

    result = run_delay_queue(store=store, engine=engine, now=now)

    current = store.get_session(session.id)
    assert result.healed == 1
    assert current.processing is False
    assert current.status == SessionStatus.active
    assert current.current_node_id == "wait"


def test_stuck_processing_job_is_rescheduled(store, seed, engine) -> None:
    session = _session(store, seed, _input_flow(seed))
    engine.process_session(session.id)
    store.schedule_delay_job(session_id=session.id, user_id=session.user_id, run_at=utc_now())
    store.update_delay_job(session.id, status=DelayJobStatus.processing)
    later = utc_now() + timedelta(minutes=10)

    result = run_delay_queue(store=store, engine=engine, now=later)

    job = store.get_delay_job(session.id)
    assert result.healed == 1
    assert job.status == DelayJobStatus.scheduled
    assert job.run_at_utc == later + timedelta(seconds=30)


def test_unexpected_error_in_one_job_does_not_stop_the_batch(store, seed, engine, transport) -> None:
    instance = seed.instance()
    hook_flow = seed.flow(
        [
            {"id": "wait", "type": "delay", "data": {"delay": 5, "unit": "minutes"}},
            {"id": "hook", "type": "webhook", "data": {"url": "https://hooks.test/lead"}},
        ],
        name="Com webhook",
    )
    text_flow = _delay_flow(seed)
    now = utc_now()
    sessions = []
    for index, flow in enumerate((hook_flow, text_flow)):
        contact = seed.contact(f"551199999000{index}", instance_id=instance.id)
        session = store.create_session(
            flow=flow, contact=contact, instance_id=instance.id, variables=base_variables(contact)
        )
        store.update_session(
            session.id,
            current_node_id="wait",
            variables={"_pendingDelay": {"nodeId": "wait", "resumeAt": to_epoch_ms(now - timedelta(minutes=1))}},
        )
        store.schedule_delay_job(
            session_id=session.id, user_id=session.user_id, run_at=now - timedelta(seconds=10 - index)
        )
        sessions.append(session)
    transport.queued.append(RuntimeError("socket closed"))

    result = run_delay_queue(store=store, engine=engine, now=now)

    broken = store.get_delay_job(sessions[0].id)
    assert result.total == 2
    assert result.failed == 1
    assert result.processed == 1
    assert broken.status == DelayJobStatus.scheduled
    assert broken.attempts == 1
    assert broken.last_error == "socket closed"
    assert store.get_session(sessions[0].id).processing is False
    assert store.get_delay_job(sessions[1].id).status == DelayJobStatus.done
    assert transport.sent_texts() == ["Depois"]
