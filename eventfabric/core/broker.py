from __future__ import annotations

import logging
import threading
import time
import zlib
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Sequence

import redis  # type: ignore
from redis.exceptions import ConnectionError as RedisConnectionError  # type: ignore
from redis.exceptions import ResponseError  # type: ignore
from redis.exceptions import TimeoutError as RedisTimeoutError  # type: ignore

from eventfabric.contracts.streams import dlq_stream, partition_stream

from .backoff import Backoff
from .codec import encode
from .errors import BrokerUnavailableError, BrokerUnhealthyError, PublishError
from .eventlog import EventLog, LoggingEventLog
from .models import Ack, DeadLetter, Delivery, EventEnvelope, Subscription


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


def partition_for(key: str, partitions: int) -> int:
    """Stable partition index for an ordering key."""
    return zlib.crc32(key.encode("utf-8")) % partitions


class BrokerClient:
    """Owns the broker connection; shared by every producer and consumer in a process.

    Topics are split into `partitions` streams. A message lands on the partition
    picked by its ordering key, so messages about one entity keep their order.
    """

    def __init__(self, *, partitions: int = 4, event_log: Optional[EventLog] = None) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self.partitions = partitions
        self._event_log = event_log or LoggingEventLog(__name__)
        self._subscriptions: list[Subscription] = []
        self._sub_lock = threading.Lock()

    # -- connection -------------------------------------------------------

    @property
    def state(self) -> ConnectionState:  # pragma: no cover
        raise NotImplementedError

    @property
    def healthy(self) -> bool:
        return self.state != ConnectionState.FAILED

    def connect(self) -> None:  # pragma: no cover
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover
        raise NotImplementedError

    def _require_available(self) -> None:
        state = self.state
        if state == ConnectionState.FAILED:
            raise BrokerUnhealthyError("broker reconnect ceiling exceeded")
        if state != ConnectionState.CONNECTED:
            raise BrokerUnavailableError(f"broker {state.value}")

    # -- publish ----------------------------------------------------------

    def stream_for(self, topic: str, ordering_key: str) -> str:
        return partition_stream(topic, partition_for(ordering_key, self.partitions))

    def streams_for(self, topic: str, partitions: Optional[Iterable[int]] = None) -> list[str]:
        owned = range(self.partitions) if partitions is None else partitions
        return [partition_stream(topic, p) for p in owned]

    def publish(self, topic: str, envelope: EventEnvelope) -> Ack:
        return self.publish_bytes(topic, encode(envelope), ordering_key=envelope.ordering_key)

    def publish_bytes(self, topic: str, data: bytes, *, ordering_key: str) -> Ack:  # pragma: no cover
        """Persist already-encoded bytes. Raises PublishError; never drops silently."""
        raise NotImplementedError

    # -- subscribe --------------------------------------------------------

    def subscribe(
        self,
        topic: str,
        consumer_group: str,
        handler: Callable[[EventEnvelope], Any],
        *,
        consumer: str,
        event_types: Optional[Iterable[str]] = None,
    ) -> Subscription:
        sub = Subscription(
            topic=topic,
            consumer_group=consumer_group,
            consumer=consumer,
            handler=handler,
            event_types=frozenset(event_types) if event_types is not None else None,
        )
        with self._sub_lock:
            self._subscriptions.append(sub)
        self._event_log.log("subscribed", topic=topic, group=consumer_group, consumer=consumer)
        return sub

    @property
    def subscriptions(self) -> list[Subscription]:
        with self._sub_lock:
            return list(self._subscriptions)

    # -- delivery primitives (driven by the consumer runtime) -------------

    def fetch(
        self,
        topic: str,
        group: str,
        consumer: str,
        *,
        partitions: Optional[Sequence[int]] = None,
        count: int = 10,
        block_ms: int = 0,
    ) -> list[Delivery]:  # pragma: no cover
        raise NotImplementedError

    def ack(self, delivery: Delivery) -> None:  # pragma: no cover
        raise NotImplementedError

    def nack(self, delivery: Delivery) -> None:  # pragma: no cover
        """Make the delivery eligible for redelivery without waiting for the visibility timeout."""
        raise NotImplementedError

    def dead_letter(self, delivery: Delivery, *, error: str, attempts: int) -> None:  # pragma: no cover
        """Move the raw bytes to the topic's dead-letter channel and settle the delivery."""
        raise NotImplementedError

    def record_attempt(self, group: str, topic: str, event_id: str) -> int:  # pragma: no cover
        raise NotImplementedError

    def clear_attempts(self, group: str, topic: str, event_id: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def was_processed(self, group: str, topic: str, event_id: str) -> bool:  # pragma: no cover
        """True if `group` already handled `event_id` within the marker TTL.

        Markers expire and are written after the handler returns, so a crash in
        between leaves none. Callers still rely on the projection's own
        id/version check; this only saves a dispatch on a known redelivery.
        """
        raise NotImplementedError

    def mark_processed(self, group: str, topic: str, event_id: str, *, ttl_seconds: int) -> None:  # pragma: no cover
        raise NotImplementedError

    def dead_letters(self, topic: str, *, count: int = 100) -> list[DeadLetter]:  # pragma: no cover
        raise NotImplementedError

    def requeue_dead_letter(self, dead: DeadLetter) -> None:  # pragma: no cover
        raise NotImplementedError


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


class RedisStreamBroker(BrokerClient):
    """Redis Streams implementation.

    One stream per topic partition, one Redis consumer group per subscription.
    XADD's returned id is the persistence acknowledgement. Unacknowledged
    deliveries are reclaimed with XAUTOCLAIM once idle for the visibility timeout.

    Blocking XREADGROUP calls go through a second client whose socket timeout
    is `publish_timeout_seconds` plus `max_block_ms`, so an idle read returns
    before the socket gives up. Longer blocks are capped at `max_block_ms`.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        partitions: int = 4,
        publish_timeout_seconds: float = 5.0,
        visibility_timeout_seconds: float = 30.0,
        reconnect_backoff: Optional[Backoff] = None,
        reconnect_ceiling_seconds: float = 300.0,
        attempt_ttl_seconds: int = 7 * 24 * 3600,
        max_block_ms: int = 30_000,
        client: Any = None,
        event_log: Optional[EventLog] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(partitions=partitions, event_log=event_log)
        self.redis_url = redis_url
        self.publish_timeout_seconds = publish_timeout_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.reconnect_backoff = reconnect_backoff or Backoff()
        self.reconnect_ceiling_seconds = reconnect_ceiling_seconds
        self.attempt_ttl_seconds = attempt_ttl_seconds
        self.max_block_ms = max_block_ms
        # An injected client serves both roles.
        self._client = client
        self._reader = client
        self._clock = clock
        self._sleep = sleep
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._groups: set[tuple[str, str]] = set()
        self._closed = threading.Event()
        self._reconnect_thread: Optional[threading.Thread] = None

    def _get_client(self):
        if self._client is None:
            self._client = redis.Redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.publish_timeout_seconds,
                socket_connect_timeout=self.publish_timeout_seconds,
            )
        return self._client

    def _get_reader(self):
        if self._reader is None:
            self._reader = redis.Redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.publish_timeout_seconds + self.max_block_ms / 1000.0,
                socket_connect_timeout=self.publish_timeout_seconds,
            )
        return self._reader

    # -- connection state machine ----------------------------------------

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            prev, self._state = self._state, state
        if prev != state:
            self._event_log.log("broker_state_changed", previous=prev.value, state=state.value)

    def connect(self) -> None:
        self._closed.clear()
        self._set_state(ConnectionState.CONNECTING)
        try:
            self._get_client().ping()
        except (RedisConnectionError, RedisTimeoutError) as e:
            self._connection_lost(e)
            return
        self._set_state(ConnectionState.CONNECTED)

    def close(self) -> None:
        self._closed.set()
        if self._client is not None:
            self._client.close()
        if self._reader is not None and self._reader is not self._client:
            self._reader.close()
        self._set_state(ConnectionState.DISCONNECTED)

    def _connection_lost(self, exc: Exception) -> None:
        with self._state_lock:
            if self._closed.is_set() or self._state in (ConnectionState.RECONNECTING, ConnectionState.FAILED):
                return
        self._event_log.log("broker_connection_lost", level=logging.WARNING, error=str(exc))
        self._set_state(ConnectionState.DISCONNECTED)
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_thread = threading.Thread(
            target=self.reconnect,
            daemon=True,
            name="broker-reconnect",
        )
        self._reconnect_thread.start()

    def reconnect(self) -> None:
        """Ping with capped, jittered backoff until connected or the ceiling is hit."""
        started = self._clock()
        attempt = 0
        while not self._closed.is_set():
            if self._clock() - started >= self.reconnect_ceiling_seconds:
                self._set_state(ConnectionState.FAILED)
                self._event_log.log(
                    "broker_reconnect_ceiling_exceeded",
                    level=logging.ERROR,
                    attempts=attempt,
                    ceiling_seconds=self.reconnect_ceiling_seconds,
                )
                return
            self._sleep(self.reconnect_backoff.compute_delay(attempt))
            attempt += 1
            try:
                self._get_client().ping()
            except (RedisConnectionError, RedisTimeoutError) as e:
                self._event_log.log("broker_reconnect_failed", level=logging.WARNING, attempt=attempt, error=str(e))
                continue
            self._set_state(ConnectionState.CONNECTED)
            self._event_log.log("broker_reconnected", attempts=attempt)
            return

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        self._require_available()
        try:
            return fn(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as e:
            self._connection_lost(e)
            raise BrokerUnavailableError(f"broker unavailable: {e}") from e

    # -- publish ----------------------------------------------------------

    def publish_bytes(self, topic: str, data: bytes, *, ordering_key: str) -> Ack:
        state = self.state
        if state != ConnectionState.CONNECTED:
            raise PublishError(PublishError.UNAVAILABLE, f"broker {state.value}")

        stream = self.stream_for(topic, ordering_key)
        client = self._get_client()
        try:
            message_id = client.xadd(stream, {"event": data.decode("utf-8")})
        except RedisTimeoutError as e:
            raise PublishError(PublishError.TIMEOUT, str(e)) from e
        except RedisConnectionError as e:
            self._connection_lost(e)
            raise PublishError(PublishError.UNAVAILABLE, str(e)) from e
        except ResponseError as e:
            raise PublishError(PublishError.REJECTED, str(e)) from e
        return Ack(topic=topic, stream=stream, message_id=str(message_id))

    # -- delivery ---------------------------------------------------------

    def _ensure_group(self, stream: str, group: str) -> None:
        if (stream, group) in self._groups:
            return
        client = self._get_client()
        try:
            client.xgroup_create(name=stream, groupname=group, id="0", mkstream=True)
        except ResponseError as e:
            # BUSYGROUP means it already exists.
            if "BUSYGROUP" not in str(e):
                raise
        self._groups.add((stream, group))

    def _delivery(self, topic: str, stream: str, group: str, consumer: str, msg_id: str, fields: dict, *, redelivered: bool) -> Delivery:
        body = (fields or {}).get("event") or ""
        return Delivery(
            topic=topic,
            stream=stream,
            group=group,
            consumer=consumer,
            message_id=str(msg_id),
            data=body.encode("utf-8"),
            redelivered=redelivered,
        )

    def fetch(
        self,
        topic: str,
        group: str,
        consumer: str,
        *,
        partitions: Optional[Sequence[int]] = None,
        count: int = 10,
        block_ms: int = 0,
    ) -> list[Delivery]:
        streams = self.streams_for(topic, partitions)
        client = self._get_client()
        for s in streams:
            self._call(self._ensure_group, s, group)

        out: list[Delivery] = []
        idle_ms = int(self.visibility_timeout_seconds * 1000)
        for s in streams:
            resp = self._call(client.xautoclaim, s, group, consumer, idle_ms, start_id="0-0", count=count)
            for msg_id, fields in resp[1]:
                if fields is None:
                    continue
                out.append(self._delivery(topic, s, group, consumer, msg_id, fields, redelivered=True))
        if out:
            return out

        self._require_available()
        try:
            resp = self._get_reader().xreadgroup(
                groupname=group,
                consumername=consumer,
                streams={s: ">" for s in streams},
                count=count,
                block=min(block_ms, self.max_block_ms) if block_ms > 0 else None,
            )
        except RedisTimeoutError:
            # The block ran out with nothing to read; the connection is fine.
            return out
        except RedisConnectionError as e:
            self._connection_lost(e)
            raise BrokerUnavailableError(f"broker unavailable: {e}") from e
        for sname, items in resp or []:
            for msg_id, fields in items:
                out.append(self._delivery(topic, sname, group, consumer, msg_id, fields, redelivered=False))
        return out

    def ack(self, delivery: Delivery) -> None:
        client = self._get_client()
        self._call(client.xack, delivery.stream, delivery.group, delivery.message_id)

    def nack(self, delivery: Delivery) -> None:
        client = self._get_client()
        idle_ms = int(self.visibility_timeout_seconds * 1000)
        # Claiming with IDLE >= visibility timeout makes the next XAUTOCLAIM pick it up.
        self._call(
            client.xclaim,
            delivery.stream,
            delivery.group,
            delivery.consumer,
            0,
            [delivery.message_id],
            idle=idle_ms,
        )

    def dead_letter(self, delivery: Delivery, *, error: str, attempts: int) -> None:
        client = self._get_client()
        pipe = client.pipeline(transaction=True)
        pipe.xadd(
            dlq_stream(delivery.topic),
            {
                "event": delivery.data.decode("utf-8", errors="replace"),
                "error": error,
                "failed_at": datetime.now(timezone.utc).isoformat(),
                "attempts": str(attempts),
                "original_stream": delivery.stream,
                "original_message_id": delivery.message_id,
            },
        )
        pipe.xack(delivery.stream, delivery.group, delivery.message_id)
        self._call(pipe.execute)

    def _attempt_key(self, *, group: str, topic: str, event_id: str) -> str:
        return f"attempt:{group}:{topic}:{event_id}"

    def record_attempt(self, group: str, topic: str, event_id: str) -> int:
        client = self._get_client()
        key = self._attempt_key(group=group, topic=topic, event_id=event_id)
        attempt = int(self._call(client.incr, key))
        # Avoid unbounded growth of retry counters.
        self._call(client.expire, key, self.attempt_ttl_seconds)
        return attempt

    def clear_attempts(self, group: str, topic: str, event_id: str) -> None:
        client = self._get_client()
        self._call(client.delete, self._attempt_key(group=group, topic=topic, event_id=event_id))

    def _processed_key(self, *, group: str, topic: str, event_id: str) -> str:
        return f"processed:{group}:{topic}:{event_id}"

    def was_processed(self, group: str, topic: str, event_id: str) -> bool:
        client = self._get_client()
        return bool(self._call(client.exists, self._processed_key(group=group, topic=topic, event_id=event_id)))

    def mark_processed(self, group: str, topic: str, event_id: str, *, ttl_seconds: int) -> None:
        client = self._get_client()
        key = self._processed_key(group=group, topic=topic, event_id=event_id)
        # SET NX keeps the first marker; group members racing here are harmless.
        self._call(client.set, key, "1", ex=ttl_seconds, nx=True)

    def dead_letters(self, topic: str, *, count: int = 100) -> list[DeadLetter]:
        client = self._get_client()
        out: list[DeadLetter] = []
        for msg_id, fields in self._call(client.xrange, dlq_stream(topic), count=count):
            out.append(
                DeadLetter(
                    topic=topic,
                    data=fields.get("event", "").encode("utf-8"),
                    error=fields.get("error", ""),
                    failed_at=_parse_dt(fields["failed_at"]),
                    attempts=int(fields.get("attempts", "0")),
                    original_stream=fields.get("original_stream", ""),
                    original_message_id=fields.get("original_message_id", ""),
                    message_id=str(msg_id),
                )
            )
        return out

    def requeue_dead_letter(self, dead: DeadLetter) -> None:
        client = self._get_client()
        pipe = client.pipeline(transaction=True)
        pipe.xadd(dead.original_stream, {"event": dead.data.decode("utf-8")})
        pipe.xdel(dlq_stream(dead.topic), dead.message_id)
        self._call(pipe.execute)


@dataclass
class _Pending:
    consumer: str
    delivered_at: float
    redeliver_now: bool = False


@dataclass
class _GroupCursor:
    next_index: int = 0
    pending: "OrderedDict[str, _Pending]" = field(default_factory=OrderedDict)


class InMemoryBroker(BrokerClient):
    """In-process broker with the same delivery semantics, for tests and dev mode.

    Failure injection: `drop_next_acks(n)` loses acknowledgements (forcing
    redelivery), `reject_next_publishes(n)` fails publishes, and
    `disconnect()` drops the connection.
    """

    def __init__(
        self,
        *,
        partitions: int = 4,
        visibility_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        event_log: Optional[EventLog] = None,
    ) -> None:
        super().__init__(partitions=partitions, event_log=event_log)
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._state = ConnectionState.DISCONNECTED
        self._streams: dict[str, list[tuple[str, bytes]]] = {}
        self._groups: dict[tuple[str, str], _GroupCursor] = {}
        self._attempts: dict[tuple[str, str, str], int] = {}
        self._processed: dict[tuple[str, str, str], float] = {}
        self._dead: dict[str, list[DeadLetter]] = {}
        self._seq = 0
        self._drop_acks = 0
        self._reject_publishes = 0

    @property
    def state(self) -> ConnectionState:
        with self._cond:
            return self._state

    def connect(self) -> None:
        with self._cond:
            self._state = ConnectionState.CONNECTED

    def close(self) -> None:
        with self._cond:
            self._state = ConnectionState.DISCONNECTED

    def disconnect(self, *, failed: bool = False) -> None:
        with self._cond:
            self._state = ConnectionState.FAILED if failed else ConnectionState.RECONNECTING

    def drop_next_acks(self, n: int) -> None:
        with self._cond:
            self._drop_acks = n

    def reject_next_publishes(self, n: int) -> None:
        with self._cond:
            self._reject_publishes = n

    def _next_id(self) -> str:
        self._seq += 1
        return f"{self._seq}-0"

    def publish_bytes(self, topic: str, data: bytes, *, ordering_key: str) -> Ack:
        stream = self.stream_for(topic, ordering_key)
        with self._cond:
            if self._state != ConnectionState.CONNECTED:
                raise PublishError(PublishError.UNAVAILABLE, f"broker {self._state.value}")
            if self._reject_publishes > 0:
                self._reject_publishes -= 1
                raise PublishError(PublishError.REJECTED, "rejected by broker")
            msg_id = self._next_id()
            self._streams.setdefault(stream, []).append((msg_id, bytes(data)))
            self._cond.notify_all()
        return Ack(topic=topic, stream=stream, message_id=msg_id)

    def _cursor(self, stream: str, group: str) -> _GroupCursor:
        return self._groups.setdefault((stream, group), _GroupCursor())

    def _entry(self, stream: str, msg_id: str) -> bytes:
        for mid, data in self._streams.get(stream, []):
            if mid == msg_id:
                return data
        raise KeyError(msg_id)

    def _reclaim(self, topic: str, streams: list[str], group: str, consumer: str, count: int) -> list[Delivery]:
        now = self._clock()
        out: list[Delivery] = []
        for s in streams:
            cursor = self._cursor(s, group)
            for msg_id, p in cursor.pending.items():
                if len(out) >= count:
                    return out
                if p.redeliver_now or now - p.delivered_at >= self.visibility_timeout_seconds:
                    p.consumer, p.delivered_at, p.redeliver_now = consumer, now, False
                    out.append(Delivery(topic, s, group, consumer, msg_id, self._entry(s, msg_id), redelivered=True))
        return out

    def _read_new(self, topic: str, streams: list[str], group: str, consumer: str, count: int) -> list[Delivery]:
        now = self._clock()
        out: list[Delivery] = []
        for s in streams:
            cursor = self._cursor(s, group)
            entries = self._streams.get(s, [])
            while cursor.next_index < len(entries) and len(out) < count:
                msg_id, data = entries[cursor.next_index]
                cursor.next_index += 1
                cursor.pending[msg_id] = _Pending(consumer=consumer, delivered_at=now)
                out.append(Delivery(topic, s, group, consumer, msg_id, data))
        return out

    def fetch(
        self,
        topic: str,
        group: str,
        consumer: str,
        *,
        partitions: Optional[Sequence[int]] = None,
        count: int = 10,
        block_ms: int = 0,
    ) -> list[Delivery]:
        streams = self.streams_for(topic, partitions)
        with self._cond:
            self._require_available()
            out = self._reclaim(topic, streams, group, consumer, count)
            if out:
                return out
            out = self._read_new(topic, streams, group, consumer, count)
            if not out and block_ms > 0:
                self._cond.wait(timeout=block_ms / 1000.0)
                out = self._read_new(topic, streams, group, consumer, count)
            return out

    def ack(self, delivery: Delivery) -> None:
        with self._cond:
            self._require_available()
            if self._drop_acks > 0:
                self._drop_acks -= 1
                self._event_log.log("ack_dropped", stream=delivery.stream, message_id=delivery.message_id)
                return
            self._cursor(delivery.stream, delivery.group).pending.pop(delivery.message_id, None)

    def nack(self, delivery: Delivery) -> None:
        with self._cond:
            self._require_available()
            p = self._cursor(delivery.stream, delivery.group).pending.get(delivery.message_id)
            if p is not None:
                p.redeliver_now = True

    def dead_letter(self, delivery: Delivery, *, error: str, attempts: int) -> None:
        with self._cond:
            self._require_available()
            self._dead.setdefault(delivery.topic, []).append(
                DeadLetter(
                    topic=delivery.topic,
                    data=delivery.data,
                    error=error,
                    failed_at=datetime.now(timezone.utc),
                    attempts=attempts,
                    original_stream=delivery.stream,
                    original_message_id=delivery.message_id,
                    message_id=self._next_id(),
                )
            )
            self._cursor(delivery.stream, delivery.group).pending.pop(delivery.message_id, None)

    def record_attempt(self, group: str, topic: str, event_id: str) -> int:
        with self._cond:
            key = (group, topic, event_id)
            self._attempts[key] = self._attempts.get(key, 0) + 1
            return self._attempts[key]

    def clear_attempts(self, group: str, topic: str, event_id: str) -> None:
        with self._cond:
            self._attempts.pop((group, topic, event_id), None)

    def was_processed(self, group: str, topic: str, event_id: str) -> bool:
        with self._cond:
            expires_at = self._processed.get((group, topic, event_id))
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._processed[(group, topic, event_id)]
                return False
            return True

    def mark_processed(self, group: str, topic: str, event_id: str, *, ttl_seconds: int) -> None:
        key, now = (group, topic, event_id), self._clock()
        with self._cond:
            # Like SET NX: a live marker is left alone.
            if self._processed.get(key, now) <= now:
                self._processed[key] = now + ttl_seconds

    def dead_letters(self, topic: str, *, count: int = 100) -> list[DeadLetter]:
        with self._cond:
            return list(self._dead.get(topic, []))[:count]

    def requeue_dead_letter(self, dead: DeadLetter) -> None:
        with self._cond:
            self._streams.setdefault(dead.original_stream, []).append((self._next_id(), dead.data))
            self._dead[dead.topic] = [d for d in self._dead.get(dead.topic, []) if d.message_id != dead.message_id]
            self._cond.notify_all()

    # -- inspection helpers ----------------------------------------------

    def messages(self, topic: str) -> list[bytes]:
        with self._cond:
            return [data for s in self.streams_for(topic) for _, data in self._streams.get(s, [])]

    def pending_count(self, topic: str, group: str) -> int:
        with self._cond:
            return sum(len(self._cursor(s, group).pending) for s in self.streams_for(topic))
