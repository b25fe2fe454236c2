"""Domain-event emission after committed writes.

`on_committed(result)` is the hook controllers call once a write is durable.
It builds exactly one envelope, encodes it once, and attempts one publish. A
failed publish never rolls back the write: the encoded bytes go to the outbox
and the retrier resubmits them.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from .backoff import Backoff
from .broker import BrokerClient
from .codec import SCHEMA_VERSION, encode
from .errors import PublishError
from .eventlog import EventLog, LoggingEventLog
from .models import Ack, EventEnvelope, new_correlation_id, new_event_id
from .outbox import OutboxRecord, OutboxStore


class WriteOperation(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class WriteResult:
    """What the persistence layer reports for a committed write."""
    entity_type: str
    entity_id: str
    operation: WriteOperation
    version: int
    snapshot: Dict[str, Any]
    correlation_id: Optional[str] = None
    committed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class WriteStore(Protocol):
    def commit(self, write: Any) -> WriteResult:
        """Durably apply `write`. Raises PersistError on failure."""
        ...


# Maps a committed write to (event type, payload).
EventMapper = Callable[[WriteResult], Tuple[str, Dict[str, Any]]]


@dataclass(frozen=True)
class PublishOutcome:
    envelope: EventEnvelope
    ack: Optional[Ack]

    @property
    def deferred(self) -> bool:
        return self.ack is None


class EventProducer:
    def __init__(
        self,
        broker: BrokerClient,
        outbox: OutboxStore,
        *,
        topic: str,
        source_service: str,
        mapper: EventMapper,
        retry_backoff: Optional[Backoff] = None,
        event_log: Optional[EventLog] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.broker = broker
        self.outbox = outbox
        self.topic = topic
        self.source_service = source_service
        self.mapper = mapper
        self.retry_backoff = retry_backoff or Backoff(initial_delay=1.0, max_delay=60.0)
        self._event_log = event_log or LoggingEventLog(__name__)
        self._clock = clock

    def build_envelope(self, result: WriteResult) -> EventEnvelope:
        event_type, payload = self.mapper(result)
        return EventEnvelope(
            event_id=new_event_id(),
            event_type=event_type,
            schema_version=SCHEMA_VERSION,
            occurred_at=result.committed_at,
            source_service=self.source_service,
            correlation_id=result.correlation_id or new_correlation_id(),
            payload=payload,
        )

    def on_committed(self, result: WriteResult) -> PublishOutcome:
        envelope = self.build_envelope(result)
        data = encode(envelope)
        try:
            ack = self.broker.publish_bytes(self.topic, data, ordering_key=envelope.ordering_key)
        except PublishError as e:
            self.outbox.add(
                OutboxRecord(
                    event_id=envelope.event_id,
                    topic=self.topic,
                    ordering_key=envelope.ordering_key,
                    data=data,
                    attempts=1,
                    next_attempt_at=self._clock() + self.retry_backoff.compute_delay(0),
                    last_error=str(e),
                )
            )
            self._event_log.log(
                "publish_deferred",
                level=logging.WARNING,
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                reason=e.reason,
            )
            return PublishOutcome(envelope=envelope, ack=None)

        self._event_log.log(
            "event_published",
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            stream=ack.stream,
            message_id=ack.message_id,
        )
        return PublishOutcome(envelope=envelope, ack=ack)

    def commit_and_publish(self, store: WriteStore, write: Any) -> Tuple[WriteResult, PublishOutcome]:
        """Commit first; a PersistError propagates and nothing is published."""
        result = store.commit(write)
        return result, self.on_committed(result)
