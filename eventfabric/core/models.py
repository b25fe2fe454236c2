from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional


def new_event_id() -> str:
    return str(uuid.uuid4())


def new_correlation_id() -> str:
    return uuid.uuid4().hex


class EventType(str, Enum):
    """Domain event kinds carried on `posts.events`."""
    POST_CREATED = "PostCreated"
    POST_UPDATED = "PostUpdated"
    POST_DELETED = "PostDeleted"


class DeliveryState(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead-lettered"


@dataclass(frozen=True)
class EventEnvelope:
    """Immutable unit of cross-service communication.

    `event_id` is the idempotency key. `payload` must not be mutated after the
    envelope is encoded; retries resend the encoded bytes, never a re-encoding.
    """
    event_id: str
    event_type: str
    schema_version: int
    occurred_at: datetime
    source_service: str
    correlation_id: str
    payload: Dict[str, Any]

    @property
    def entity_id(self) -> str:
        return str(self.payload["post_id"])

    @property
    def entity_version(self) -> int:
        return int(self.payload["version"])

    @property
    def ordering_key(self) -> str:
        return self.entity_id


@dataclass(frozen=True)
class Ack:
    """Broker confirmation that a message was persisted."""
    topic: str
    stream: str
    message_id: str


@dataclass(frozen=True)
class Delivery:
    """One delivery of a stored message to a consumer-group member."""
    topic: str
    stream: str
    group: str
    consumer: str
    message_id: str
    data: bytes
    redelivered: bool = False


@dataclass(frozen=True)
class Subscription:
    topic: str
    consumer_group: str
    consumer: str
    handler: Callable[[EventEnvelope], Any]
    event_types: Optional[FrozenSet[str]] = None

    def accepts(self, event_type: str) -> bool:
        return self.event_types is None or event_type in self.event_types


@dataclass(frozen=True)
class DeadLetter:
    topic: str
    data: bytes
    error: str
    failed_at: datetime
    attempts: int
    original_stream: str
    original_message_id: str
    message_id: str = ""
