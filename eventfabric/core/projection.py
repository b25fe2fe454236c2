"""Idempotent projections.

A projection record is derived state keyed by entity id. It remembers the last
applied envelope id and entity version; an incoming envelope is

- a duplicate if its id equals `last_applied_event_id`,
- stale if its entity version is not newer than `last_applied_version`,
- applied otherwise, with the new id/version stored in the same write.

Applying the same envelope twice therefore yields the state of applying it
once, and out-of-order delivery converges to the highest version seen.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, Tuple

from .errors import HandlerError
from .eventlog import EventLog, LoggingEventLog
from .models import EventEnvelope
from .postgres import PostgresConnection


State = Dict[str, Any]
Applier = Callable[[Dict[str, Any], Optional[State]], State]


@dataclass(frozen=True)
class ProjectionRecord:
    entity_id: str
    state: State
    last_applied_event_id: str
    last_applied_version: int
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"


class ProjectionStore(Protocol):
    """Persistence owned by exactly one consuming service."""

    def get(self, entity_id: str) -> Optional[ProjectionRecord]:
        ...

    def save(self, record: ProjectionRecord, *, expected_version: Optional[int]) -> bool:
        """Write `record` only if the stored version still equals `expected_version`.

        `expected_version=None` means "no record yet". Returns False on conflict.
        """
        ...

    def records(self) -> Iterator[ProjectionRecord]:
        ...


class InMemoryProjectionStore:
    """In-memory implementation for testing and dev mode."""

    def __init__(self) -> None:
        self._records: dict[str, ProjectionRecord] = {}
        self._lock = threading.Lock()

    def get(self, entity_id: str) -> Optional[ProjectionRecord]:
        with self._lock:
            return self._records.get(entity_id)

    def save(self, record: ProjectionRecord, *, expected_version: Optional[int]) -> bool:
        with self._lock:
            current = self._records.get(record.entity_id)
            current_version = current.last_applied_version if current is not None else None
            if current_version != expected_version:
                return False
            self._records[record.entity_id] = record
            return True

    def records(self) -> Iterator[ProjectionRecord]:
        with self._lock:
            snapshot = list(self._records.values())
        return iter(snapshot)


class PostgresProjectionStore:
    """PostgreSQL implementation for production.

    Requires a table with the following schema:

    CREATE TABLE IF NOT EXISTS projection_records (
        projection VARCHAR(64) NOT NULL,
        entity_id VARCHAR(64) NOT NULL,
        state JSONB NOT NULL,
        last_applied_event_id VARCHAR(64) NOT NULL,
        last_applied_version INTEGER NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (projection, entity_id)
    );

    The version check and the mutation are one conditional statement, so
    concurrent consumer-group members cannot overwrite a newer version.
    """

    def __init__(self, dsn: str, *, projection: str) -> None:
        self._projection = projection
        self._db = PostgresConnection(dsn)

    def get(self, entity_id: str) -> Optional[ProjectionRecord]:
        with self._db.cursor() as cur:
            cur.execute(
                "SELECT entity_id, state, last_applied_event_id, last_applied_version, updated_at "
                "FROM projection_records WHERE projection = %s AND entity_id = %s",
                (self._projection, entity_id),
            )
            row = cur.fetchone()
        return self._row_to_record(row) if row else None

    def save(self, record: ProjectionRecord, *, expected_version: Optional[int]) -> bool:
        state = json.dumps(record.state, sort_keys=True)
        with self._db.cursor() as cur:
            if expected_version is None:
                cur.execute(
                    """
                    INSERT INTO projection_records (
                        projection, entity_id, state, last_applied_event_id,
                        last_applied_version, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (projection, entity_id) DO NOTHING
                    """,
                    (
                        self._projection,
                        record.entity_id,
                        state,
                        record.last_applied_event_id,
                        record.last_applied_version,
                        record.updated_at,
                    ),
                )
            else:
                cur.execute(
                    """
                    UPDATE projection_records SET
                        state = %s,
                        last_applied_event_id = %s,
                        last_applied_version = %s,
                        updated_at = %s
                    WHERE projection = %s AND entity_id = %s AND last_applied_version = %s
                    """,
                    (
                        state,
                        record.last_applied_event_id,
                        record.last_applied_version,
                        record.updated_at,
                        self._projection,
                        record.entity_id,
                        expected_version,
                    ),
                )
            written = cur.rowcount == 1
        return written

    def records(self) -> Iterator[ProjectionRecord]:
        with self._db.cursor() as cur:
            cur.execute(
                "SELECT entity_id, state, last_applied_event_id, last_applied_version, updated_at "
                "FROM projection_records WHERE projection = %s ORDER BY entity_id",
                (self._projection,),
            )
            rows = cur.fetchall()
        return iter([self._row_to_record(r) for r in rows])

    def _row_to_record(self, row: tuple) -> ProjectionRecord:
        entity_id, state, event_id, version, updated_at = row
        if isinstance(state, str):
            state = json.loads(state)
        return ProjectionRecord(
            entity_id=entity_id,
            state=state,
            last_applied_event_id=event_id,
            last_applied_version=int(version),
            updated_at=updated_at,
        )


class IdempotentProjection:
    """Base class: subclasses register one pure applier per event type.

    `apply(event_type, payload, prior_state)` is pure and may be called
    synchronously by a controller for read-your-own-write; `handle(envelope)`
    is the consumer-facing path that also persists.
    """

    name = "projection"
    max_conflict_retries = 5

    def __init__(self, store: ProjectionStore, *, event_log: Optional[EventLog] = None) -> None:
        self.store = store
        self._event_log = event_log or LoggingEventLog(__name__)
        self._appliers: dict[str, Applier] = {}
        self.register_appliers()

    def register_appliers(self) -> None:  # pragma: no cover
        raise NotImplementedError

    def on(self, event_type: str, fn: Applier) -> None:
        self._appliers[event_type] = fn

    @property
    def event_types(self) -> frozenset[str]:
        return frozenset(self._appliers)

    def apply(self, event_type: str, payload: Dict[str, Any], prior_state: Optional[State]) -> State:
        fn = self._appliers.get(event_type)
        if fn is None:
            raise HandlerError(f"{self.name} has no applier for {event_type}")
        return fn(payload, prior_state)

    def fold(self, record: Optional[ProjectionRecord], envelope: EventEnvelope) -> Tuple[Optional[ProjectionRecord], ApplyOutcome]:
        """Pure transition: (record, envelope) -> (record', outcome)."""
        if record is not None:
            if record.last_applied_event_id == envelope.event_id:
                return record, ApplyOutcome.DUPLICATE
            if envelope.entity_version <= record.last_applied_version:
                return record, ApplyOutcome.STALE
        prior = record.state if record is not None else None
        new_state = self.apply(envelope.event_type, envelope.payload, prior)
        return (
            ProjectionRecord(
                entity_id=envelope.entity_id,
                state=new_state,
                last_applied_event_id=envelope.event_id,
                last_applied_version=envelope.entity_version,
            ),
            ApplyOutcome.APPLIED,
        )

    def handle(self, envelope: EventEnvelope) -> ApplyOutcome:
        for _ in range(self.max_conflict_retries):
            record = self.store.get(envelope.entity_id)
            new_record, outcome = self.fold(record, envelope)
            if outcome is not ApplyOutcome.APPLIED:
                self._event_log.log(
                    "projection_skipped",
                    projection=self.name,
                    entity_id=envelope.entity_id,
                    event_id=envelope.event_id,
                    outcome=outcome.value,
                )
                return outcome
            expected = record.last_applied_version if record is not None else None
            if self.store.save(new_record, expected_version=expected):
                self._event_log.log(
                    "projection_applied",
                    projection=self.name,
                    entity_id=envelope.entity_id,
                    version=envelope.entity_version,
                )
                return outcome
            self._event_log.log("projection_conflict", level=logging.WARNING, projection=self.name, entity_id=envelope.entity_id)
        raise HandlerError(f"{self.name}: concurrent modification of {envelope.entity_id}")

    def __call__(self, envelope: EventEnvelope) -> None:
        self.handle(envelope)
