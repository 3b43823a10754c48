from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import (
    DelayJobRecord,
    DelayJobStatus,
    WebhookDeliveryRecord,
    WebhookProcessingStatus,
)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    Durable backing for the in-memory store.

    The full working set is written as one JSON snapshot. Webhook deliveries and delay
    jobs are also kept as rows so operators can query retries and scheduled work
    without decoding the snapshot. Works with SQLite and PostgreSQL URLs.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.webhook_deliveries = Table(
            "webhook_deliveries",
            self.metadata,
            Column("key", String(255), primary_key=True),
            Column("id", String(255), nullable=False),
            Column("channel", String(50), nullable=False),
            Column("event_id", String(255), nullable=False),
            Column("status", String(50), nullable=False),
            Column("attempts", Integer, nullable=False),
            Column("last_error", Text, nullable=True),
            Column("next_retry_utc", DateTime, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.delay_jobs = Table(
            "delay_jobs",
            self.metadata,
            Column("session_id", String(120), primary_key=True),
            Column("id", String(120), nullable=False),
            Column("user_id", String(120), nullable=False),
            Column("run_at_utc", DateTime, nullable=False),
            Column("status", String(30), nullable=False),
            Column("attempts", Integer, nullable=False),
            Column("last_error", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict) -> None:
        with self._lock:
            serialized = json.dumps(payload)
            now = datetime.utcnow()
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.state_snapshots.c.id).where(self.state_snapshots.c.id == "default")
                ).first()
                if existing:
                    conn.execute(
                        self.state_snapshots.update()
                        .where(self.state_snapshots.c.id == "default")
                        .values(payload_json=serialized, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        self.state_snapshots.insert().values(
                            id="default",
                            payload_json=serialized,
                            updated_at_utc=now,
                        )
                    )

    def load_snapshot(self) -> Optional[dict]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.state_snapshots.c.payload_json).where(
                        self.state_snapshots.c.id == "default"
                    )
                ).first()
            if not row:
                return None
            return json.loads(row[0])

    def _upsert(self, table: Table, key_column: str, key: str, values: dict) -> None:
        column = table.c[key_column]
        with self.engine.begin() as conn:
            existing = conn.execute(select(column).where(column == key)).first()
            if existing:
                conn.execute(table.update().where(column == key).values(**values))
            else:
                conn.execute(table.insert().values(**{key_column: key}, **values))

    def upsert_webhook_delivery(self, record: WebhookDeliveryRecord) -> None:
        with self._lock:
            self._upsert(
                self.webhook_deliveries,
                "key",
                record.key,
                {
                    "id": record.id,
                    "channel": record.channel,
                    "event_id": record.event_id,
                    "status": record.status.value,
                    "attempts": record.attempts,
                    "last_error": record.last_error,
                    "next_retry_utc": record.next_retry_utc,
                    "created_at_utc": record.created_at_utc,
                    "updated_at_utc": record.updated_at_utc,
                },
            )

    def list_webhook_deliveries(self) -> list[WebhookDeliveryRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.webhook_deliveries)).all()
        return [
            WebhookDeliveryRecord(
                key=row.key,
                id=row.id,
                channel=row.channel,
                event_id=row.event_id,
                status=WebhookProcessingStatus(row.status),
                attempts=row.attempts,
                last_error=row.last_error,
                next_retry_utc=row.next_retry_utc,
                created_at_utc=row.created_at_utc or datetime.utcnow(),
                updated_at_utc=row.updated_at_utc or datetime.utcnow(),
            )
            for row in rows
        ]

    def upsert_delay_job(self, record: DelayJobRecord) -> None:
        with self._lock:
            self._upsert(
                self.delay_jobs,
                "session_id",
                record.session_id,
                {
                    "id": record.id,
                    "user_id": record.user_id,
                    "run_at_utc": record.run_at_utc,
                    "status": record.status.value,
                    "attempts": record.attempts,
                    "last_error": record.last_error,
                    "created_at_utc": record.created_at_utc,
                    "updated_at_utc": record.updated_at_utc,
                },
            )

    def list_delay_jobs(self, *, status: Optional[DelayJobStatus] = None) -> list[DelayJobRecord]:
        query = select(self.delay_jobs).order_by(self.delay_jobs.c.run_at_utc)
        if status is not None:
            query = query.where(self.delay_jobs.c.status == status.value)
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        return [
            DelayJobRecord(
                id=row.id,
                session_id=row.session_id,
                user_id=row.user_id,
                run_at_utc=row.run_at_utc,
                status=DelayJobStatus(row.status),
                attempts=row.attempts,
                last_error=row.last_error,
                created_at_utc=row.created_at_utc or datetime.utcnow(),
                updated_at_utc=row.updated_at_utc or datetime.utcnow(),
            )
            for row in rows
        ]
