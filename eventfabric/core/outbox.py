"""Deferred redelivery of envelopes whose first publish failed.

Records keep the exact encoded bytes, so a retried publish carries the same
envelope id and the same serialization as the first attempt.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Protocol

from .backoff import Backoff
from .broker import BrokerClient
from .errors import PublishError
from .eventlog import EventLog, LoggingEventLog
from .postgres import PostgresConnection


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


@dataclass(frozen=True)
class OutboxRecord:
    event_id: str
    topic: str
    ordering_key: str
    data: bytes
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class OutboxStore(Protocol):
    def add(self, record: OutboxRecord) -> None:
        ...

    def get(self, event_id: str) -> Optional[OutboxRecord]:
        ...

    def due(self, now: float, *, limit: int) -> list[OutboxRecord]:
        """Pending records whose next attempt is at or before `now`, oldest first."""
        ...

    def update(self, record: OutboxRecord) -> None:
        ...


class InMemoryOutboxStore:
    """In-memory implementation for testing and dev mode."""

    def __init__(self) -> None:
        self._records: dict[str, OutboxRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: OutboxRecord) -> None:
        with self._lock:
            self._records.setdefault(record.event_id, record)

    def get(self, event_id: str) -> Optional[OutboxRecord]:
        with self._lock:
            return self._records.get(event_id)

    def due(self, now: float, *, limit: int) -> list[OutboxRecord]:
        with self._lock:
            out = [
                r for r in self._records.values()
                if r.status == OutboxStatus.PENDING and r.next_attempt_at <= now
            ]
        out.sort(key=lambda r: r.created_at)
        return out[:limit]

    def update(self, record: OutboxRecord) -> None:
        with self._lock:
            self._records[record.event_id] = record

    def by_status(self, status: OutboxStatus) -> list[OutboxRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.status == status]


class PostgresOutboxStore:
    """PostgreSQL implementation for production.

    Requires a table with the following schema:

    CREATE TABLE IF NOT EXISTS event_outbox (
        event_id VARCHAR(64) PRIMARY KEY,
        topic VARCHAR(128) NOT NULL,
        ordering_key VARCHAR(128) NOT NULL,
        data BYTEA NOT NULL,
        status VARCHAR(16) NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        next_attempt_at DOUBLE PRECISION NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS idx_event_outbox_due ON event_outbox(status, next_attempt_at);
    """

    _COLUMNS = "event_id, topic, ordering_key, data, status, attempts, next_attempt_at, last_error, created_at"

    def __init__(self, dsn: str) -> None:
        self._db = PostgresConnection(dsn)

    def add(self, record: OutboxRecord) -> None:
        import psycopg2  # type: ignore

        with self._db.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO event_outbox ({self._COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    record.event_id,
                    record.topic,
                    record.ordering_key,
                    psycopg2.Binary(record.data),
                    record.status.value,
                    record.attempts,
                    record.next_attempt_at,
                    record.last_error,
                    record.created_at,
                ),
            )

    def get(self, event_id: str) -> Optional[OutboxRecord]:
        with self._db.cursor() as cur:
            cur.execute(f"SELECT {self._COLUMNS} FROM event_outbox WHERE event_id = %s", (event_id,))
            row = cur.fetchone()
        return self._row_to_record(row) if row else None

    def due(self, now: float, *, limit: int) -> list[OutboxRecord]:
        with self._db.cursor() as cur:
            cur.execute(
                f"SELECT {self._COLUMNS} FROM event_outbox "
                "WHERE status = %s AND next_attempt_at <= %s ORDER BY created_at LIMIT %s",
                (OutboxStatus.PENDING.value, now, limit),
            )
            rows = cur.fetchall()
        return [self._row_to_record(r) for r in rows]

    def update(self, record: OutboxRecord) -> None:
        with self._db.cursor() as cur:
            cur.execute(
                """
                UPDATE event_outbox SET
                    status = %s, attempts = %s, next_attempt_at = %s, last_error = %s
                WHERE event_id = %s
                """,
                (
                    record.status.value,
                    record.attempts,
                    record.next_attempt_at,
                    record.last_error,
                    record.event_id,
                ),
            )

    def _row_to_record(self, row: tuple) -> OutboxRecord:
        event_id, topic, ordering_key, data, status, attempts, next_at, last_error, created_at = row
        return OutboxRecord(
            event_id=event_id,
            topic=topic,
            ordering_key=ordering_key,
            data=bytes(data),
            status=OutboxStatus(status),
            attempts=int(attempts),
            next_attempt_at=float(next_at),
            last_error=last_error,
            created_at=created_at,
        )


class OutboxRetrier:
    """Background resubmission of deferred envelopes.

    Each failed attempt pushes `next_attempt_at` out by the backoff; after
    `max_attempts` the record is marked FAILED and reported on the operator
    channel (ERROR log) instead of being retried forever.
    """

    def __init__(
        self,
        broker: BrokerClient,
        store: OutboxStore,
        *,
        max_attempts: int = 10,
        backoff: Optional[Backoff] = None,
        batch_size: int = 100,
        event_log: Optional[EventLog] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.broker = broker
        self.store = store
        self.max_attempts = max_attempts
        self.backoff = backoff or Backoff(initial_delay=1.0, max_delay=60.0)
        self.batch_size = batch_size
        self._event_log = event_log or LoggingEventLog(__name__)
        self._clock = clock
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def process_once(self) -> int:
        """Attempt every due record once. Returns how many were published."""
        published = 0
        for record in self.store.due(self._clock(), limit=self.batch_size):
            try:
                ack = self.broker.publish_bytes(record.topic, record.data, ordering_key=record.ordering_key)
            except PublishError as e:
                self._on_failure(record, e)
                continue
            self.store.update(replace(record, status=OutboxStatus.PUBLISHED, attempts=record.attempts + 1, last_error=None))
            self._event_log.log("outbox_published", event_id=record.event_id, stream=ack.stream, message_id=ack.message_id)
            published += 1
        return published

    def _on_failure(self, record: OutboxRecord, error: PublishError) -> None:
        attempts = record.attempts + 1
        if attempts >= self.max_attempts:
            self.store.update(replace(record, status=OutboxStatus.FAILED, attempts=attempts, last_error=str(error)))
            self._event_log.log(
                "outbox_dead_lettered",
                level=logging.ERROR,
                event_id=record.event_id,
                topic=record.topic,
                attempts=attempts,
                error=str(error),
            )
            return
        next_at = self._clock() + self.backoff.compute_delay(attempts - 1)
        self.store.update(replace(record, attempts=attempts, next_attempt_at=next_at, last_error=str(error)))
        self._event_log.log(
            "outbox_retry_scheduled",
            level=logging.WARNING,
            event_id=record.event_id,
            attempts=attempts,
            reason=error.reason,
        )

    def run(self, *, poll_interval_seconds: float = 1.0) -> None:
        while not self._stop.is_set():
            try:
                self.process_once()
            except Exception as e:
                self._event_log.log("outbox_poll_failed", level=logging.ERROR, error=str(e))
            self._stop.wait(poll_interval_seconds)

    def start(self, *, poll_interval_seconds: float = 1.0) -> threading.Thread:
        self._stop.clear()
        self._thread = threading.Thread(
            target=lambda: self.run(poll_interval_seconds=poll_interval_seconds),
            daemon=True,
            name="outbox-retrier",
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
