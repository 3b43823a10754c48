from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from backend.app.models import (
    DelayJobRecord,
    DelayJobStatus,
    FlowRunResult,
    QueueRunResponse,
    SessionRecord,
    SessionStatus,
    utc_now,
)
from backend.app.services.flow_engine import (
    WAITING_NODE_TYPES,
    FlowEngine,
    from_epoch_ms,
)
from backend.app.services.gateway import GatewayError
from backend.app.store import InMemoryStore, StoreNotFoundError

logger = logging.getLogger("zapdesk.delay_queue")

LOCKED_RETRY_SECONDS = 15
MAX_JOB_ATTEMPTS = 2
ORPHAN_TIMEOUT_HOURS = 24
TIMEOUT_HEAL_LIMIT = 20
STALE_LOCK_SECONDS = 120
STALE_JOB_SECONDS = 300
STALE_JOB_RETRY_SECONDS = 30


def _pending_resume_at(session: SessionRecord) -> Optional[datetime]:
    pending = session.variables.get("_pendingDelay")
    if not isinstance(pending, dict) or not pending.get("resumeAt"):
        return None
    return from_epoch_ms(pending["resumeAt"])


def _current_node_type(engine: FlowEngine, session: SessionRecord) -> Optional[str]:
    flow = engine.store.flows.get(session.flow_id)
    node = flow.node(session.current_node_id) if flow else None
    return node.type if node else None


class DelayQueueWorker:
    """Resumes sessions whose delay or input timeout has come due, then heals stuck state."""

    def __init__(self, *, store: InMemoryStore, engine: FlowEngine, batch_size: int = 50) -> None:
        self.store = store
        self.engine = engine
        self.batch_size = batch_size

    def run(self, now: Optional[datetime] = None) -> QueueRunResponse:
        now = now or utc_now()
        jobs = self.store.due_delay_jobs(now=now, limit=self.batch_size)
        processed = 0
        failed = 0
        for job in jobs:
            outcome = self._process_job(job, now)
            if outcome == "processed":
                processed += 1
            elif outcome == "failed":
                failed += 1

        healed = (
            self._heal_expired_delays(now)
            + self._fail_orphan_sessions(now)
            + self._heal_expired_timeouts(now)
            + self._heal_stale_locks(now)
            + self._heal_stale_jobs(now)
        )
        logger.info(
            "delay_queue_run total=%s processed=%s failed=%s healed=%s",
            len(jobs),
            processed,
            failed,
            healed,
        )
        return QueueRunResponse(processed=processed, failed=failed, total=len(jobs), healed=healed)

    # due jobs

    def _process_job(self, job: DelayJobRecord, now: datetime) -> str:
        job = self.store.update_delay_job(
            job.session_id, status=DelayJobStatus.processing, attempts=job.attempts + 1
        )
        try:
            return self._dispatch(job, now)
        except (StoreNotFoundError, GatewayError) as exc:
            logger.warning("delay_job_failed session_id=%s error=%s", job.session_id, exc)
            return self._job_failed(job, exc)
        except Exception as exc:
            logger.exception("delay_job_crashed session_id=%s", job.session_id)
            return self._job_failed(job, exc)

    def _job_failed(self, job: DelayJobRecord, exc: Exception) -> str:
        self.store.update_delay_job(
            job.session_id,
            status=DelayJobStatus.failed if job.attempts >= MAX_JOB_ATTEMPTS else DelayJobStatus.scheduled,
            last_error=str(exc) or type(exc).__name__,
        )
        return "failed"

    def _dispatch(self, job: DelayJobRecord, now: datetime) -> str:
        session = self.store.sessions.get(job.session_id)
        if session is None:
            return self._done(job)

        resume_at = _pending_resume_at(session)
        if session.status != SessionStatus.active:
            if resume_at is None:
                return self._done(job)
            logger.info("delay_job_reactivating session_id=%s", session.id)
            session = self.store.update_session(
                session.id, status=SessionStatus.active, completed_at_utc=None
            )

        if resume_at is not None and resume_at > now:
            self.store.update_delay_job(job.session_id, status=DelayJobStatus.scheduled, run_at_utc=resume_at)
            return "rescheduled"

        node_type = _current_node_type(self.engine, session)
        timed_out = (
            session.timeout_at_utc is not None
            and session.timeout_at_utc <= now
            and node_type in WAITING_NODE_TYPES
        )
        if timed_out:
            result = self.engine.process_session(session.id, resume_from_timeout=True)
        elif resume_at is not None or node_type == "delay":
            result = self.engine.process_session(session.id, resume_from_delay=True)
        else:
            logger.info("delay_job_no_action session_id=%s node_type=%s", session.id, node_type)
            return self._done(job)

        if self._reschedule_if_locked(job, result, now):
            return "rescheduled"
        return self._done(job)

    def _reschedule_if_locked(self, job: DelayJobRecord, result: FlowRunResult, now: datetime) -> bool:
        if not (result.skipped and result.reason == "session_locked"):
            return False
        self.store.update_delay_job(
            job.session_id,
            status=DelayJobStatus.scheduled,
            run_at_utc=now + timedelta(seconds=LOCKED_RETRY_SECONDS),
        )
        return True

    def _done(self, job: DelayJobRecord) -> str:
        current = self.store.get_delay_job(job.session_id)
        # the run may have scheduled a fresh job for the next delay
        if current and current.status == DelayJobStatus.processing:
            self.store.update_delay_job(job.session_id, status=DelayJobStatus.done)
        return "processed"

    # healing passes

    def _heal_expired_delays(self, now: datetime) -> int:
        candidates = []
        for session in self.store.list_sessions(lambda s: s.status == SessionStatus.active):
            resume_at = _pending_resume_at(session)
            if resume_at is None or resume_at >= now:
                continue
            job = self.store.get_delay_job(session.id)
            if job and job.status == DelayJobStatus.scheduled:
                continue
            candidates.append(session)
        healed = 0
        for session in candidates[: self.batch_size]:
            logger.info("delay_heal_expired session_id=%s", session.id)
            result = self._heal_run(session.id, resume_from_delay=True)
            if result is not None and not result.skipped:
                healed += 1
        return healed

    def _fail_orphan_sessions(self, now: datetime) -> int:
        cutoff = now - timedelta(hours=ORPHAN_TIMEOUT_HOURS)
        orphans = self.store.list_sessions(
            lambda s: s.status == SessionStatus.active
            and s.timeout_at_utc is not None
            and s.timeout_at_utc < cutoff
        )
        for session in orphans:
            self._fail_session(session, reason="orphan_timeout")
        return len(orphans)

    def _heal_expired_timeouts(self, now: datetime) -> int:
        cutoff = now - timedelta(hours=ORPHAN_TIMEOUT_HOURS)
        expired = self.store.list_sessions(
            lambda s: s.status == SessionStatus.active
            and s.timeout_at_utc is not None
            and cutoff <= s.timeout_at_utc < now
        )
        healed = 0
        for session in expired[:TIMEOUT_HEAL_LIMIT]:
            if _current_node_type(self.engine, session) not in WAITING_NODE_TYPES:
                continue
            job = self.store.get_delay_job(session.id)
            if job and job.status == DelayJobStatus.scheduled:
                continue
            if not session.instance_id:
                self._fail_session(session, reason="no_instance")
                healed += 1
                continue
            logger.info("delay_heal_timeout session_id=%s", session.id)
            result = self._heal_run(session.id, resume_from_timeout=True)
            if result is not None and not result.skipped:
                healed += 1
        return healed

    def _heal_stale_locks(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=STALE_LOCK_SECONDS)
        stale = self.store.list_sessions(
            lambda s: s.status == SessionStatus.active
            and s.processing
            and s.processing_started_at_utc is not None
            and s.processing_started_at_utc < cutoff
        )
        for session in stale[:TIMEOUT_HEAL_LIMIT]:
            logger.warning(
                "delay_heal_stale_lock session_id=%s locked_since=%s",
                session.id,
                session.processing_started_at_utc.isoformat(),
            )
            self.store.release_session_lock(session.id)
            self._heal_run(session.id, resume_from_delay=True)
        return len(stale[:TIMEOUT_HEAL_LIMIT])

    def _heal_stale_jobs(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=STALE_JOB_SECONDS)
        stale = [
            job
            for job in self.store.list_delay_jobs(status=DelayJobStatus.processing)
            if job.updated_at_utc < cutoff
        ]
        for job in stale[:TIMEOUT_HEAL_LIMIT]:
            session = self.store.sessions.get(job.session_id)
            if session is None or session.status != SessionStatus.active:
                self.store.update_delay_job(job.session_id, status=DelayJobStatus.done)
                continue
            resume_at = _pending_resume_at(session)
            if resume_at is not None and resume_at < now:
                logger.warning("delay_heal_stale_job session_id=%s", session.id)
                self.store.release_session_lock(session.id)
                self._heal_run(session.id, resume_from_delay=True)
                current = self.store.get_delay_job(job.session_id)
                if current and current.status == DelayJobStatus.processing:
                    self.store.update_delay_job(job.session_id, status=DelayJobStatus.done)
                continue
            self.store.update_delay_job(
                job.session_id,
                status=DelayJobStatus.scheduled,
                run_at_utc=resume_at or now + timedelta(seconds=STALE_JOB_RETRY_SECONDS),
            )
        return len(stale[:TIMEOUT_HEAL_LIMIT])

    def _heal_run(self, session_id: str, **resume: bool) -> Optional[FlowRunResult]:
        try:
            return self.engine.process_session(session_id, **resume)
        except (StoreNotFoundError, GatewayError) as exc:
            logger.warning("delay_heal_failed session_id=%s error=%s", session_id, exc)
            return None
        except Exception:
            logger.exception("delay_heal_crashed session_id=%s", session_id)
            return None

    def _fail_session(self, session: SessionRecord, *, reason: str) -> None:
        logger.warning("delay_session_failed session_id=%s reason=%s", session.id, reason)
        self.store.update_session(
            session.id,
            status=SessionStatus.failed,
            timeout_at_utc=None,
            processing=False,
            processing_started_at_utc=None,
        )
        job = self.store.get_delay_job(session.id)
        if job and job.status != DelayJobStatus.done:
            self.store.update_delay_job(session.id, status=DelayJobStatus.failed)


def run_delay_queue(
    *, store: InMemoryStore, engine: FlowEngine, batch_size: int = 50, now: Optional[datetime] = None
) -> QueueRunResponse:
    return DelayQueueWorker(store=store, engine=engine, batch_size=batch_size).run(now)
