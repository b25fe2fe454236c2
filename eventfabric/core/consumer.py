"""Per-subscription message loop.

Each delivery goes Received -> Decoding -> (DecodeError -> dead letter) or
Decoded -> Handling -> (success -> ack) or (HandlerError -> retry, up to
`max_attempts` handler invocations in total -> dead letter).

A runtime handles its partitions sequentially and retries in place, so
messages sharing an ordering key are handled in publish order (redeliveries
after a lost ack excepted; handlers are idempotent for that reason).
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from .backoff import Backoff
from .broker import BrokerClient
from .codec import decode
from .errors import BrokerUnavailableError, BrokerUnhealthyError, DecodeError, HandlerError
from .eventlog import EventLog, LoggingEventLog
from .models import Delivery, DeliveryState, EventEnvelope, Subscription


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff: Backoff = field(default_factory=Backoff)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


@dataclass
class ConsumerStats:
    received: int = 0
    acknowledged: int = 0
    duplicates: int = 0
    ignored: int = 0
    retried: int = 0
    dead_lettered: int = 0


class ConsumerRuntime:
    def __init__(
        self,
        broker: BrokerClient,
        subscription: Subscription,
        *,
        policy: Optional[RetryPolicy] = None,
        handler_timeout_seconds: Optional[float] = 10.0,
        skip_processed: bool = False,
        processed_ttl_seconds: int = 7 * 24 * 3600,
        partitions: Optional[Sequence[int]] = None,
        read_count: int = 10,
        block_ms: int = 5000,
        event_log: Optional[EventLog] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.broker = broker
        self.subscription = subscription
        self.policy = policy or RetryPolicy()
        self.handler_timeout_seconds = handler_timeout_seconds
        self.partitions = list(partitions) if partitions is not None else None
        self.read_count = read_count
        self.block_ms = block_ms
        self.stats = ConsumerStats()
        self.skip_processed = skip_processed
        self._processed_ttl_seconds = processed_ttl_seconds
        self._event_log = event_log or LoggingEventLog(__name__)
        self._sleep = sleep
        self._executor: Optional[ThreadPoolExecutor] = None
        if handler_timeout_seconds is not None:
            # Spare workers so one stuck handler does not stall the next dispatch.
            self._executor = ThreadPoolExecutor(
                max_workers=2,
                thread_name_prefix=f"{subscription.consumer_group}-handler",
            )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    # -- single delivery --------------------------------------------------

    def _fields(self, delivery: Delivery, **extra) -> dict:
        return {
            "topic": delivery.topic,
            "group": delivery.group,
            "stream": delivery.stream,
            "message_id": delivery.message_id,
            **extra,
        }

    def _invoke(self, envelope: EventEnvelope) -> None:
        handler = self.subscription.handler
        try:
            if self._executor is None:
                handler(envelope)
                return
            future = self._executor.submit(handler, envelope)
            future.result(timeout=self.handler_timeout_seconds)
        except FutureTimeoutError as e:
            raise HandlerError(f"handler timed out after {self.handler_timeout_seconds}s") from e
        except HandlerError:
            raise
        except Exception as e:
            raise HandlerError(f"{type(e).__name__}: {e}") from e

    def _dead_letter(self, delivery: Delivery, *, error: str, attempts: int) -> DeliveryState:
        self.broker.dead_letter(delivery, error=error, attempts=attempts)
        self.stats.dead_lettered += 1
        self._event_log.log(
            "message_dead_lettered",
            level=logging.ERROR,
            **self._fields(delivery, attempts=attempts, error=error),
        )
        return DeliveryState.DEAD_LETTERED

    def _acknowledge(self, delivery: Delivery) -> DeliveryState:
        self.broker.ack(delivery)
        self.stats.acknowledged += 1
        return DeliveryState.ACKNOWLEDGED

    def process(self, delivery: Delivery) -> DeliveryState:
        """Drive one delivery to a terminal state (acknowledged or dead-lettered)."""
        self.stats.received += 1
        try:
            envelope = decode(delivery.data)
        except DecodeError as e:
            # Retrying cannot fix a malformed payload.
            return self._dead_letter(delivery, error=f"decode_failed: {e}", attempts=0)

        if not self.subscription.accepts(envelope.event_type):
            self.stats.ignored += 1
            return self._acknowledge(delivery)

        group, topic = self.subscription.consumer_group, self.subscription.topic
        if self.skip_processed and self.broker.was_processed(group, topic, envelope.event_id):
            self.stats.duplicates += 1
            self._event_log.log("duplicate_skipped", **self._fields(delivery, event_id=envelope.event_id))
            return self._acknowledge(delivery)

        while True:
            # Persisted counter: a crash mid-retry resumes the count on redelivery.
            attempt = self.broker.record_attempt(group, topic, envelope.event_id)
            try:
                self._invoke(envelope)
            except HandlerError as e:
                if attempt >= self.policy.max_attempts:
                    self.broker.clear_attempts(group, topic, envelope.event_id)
                    return self._dead_letter(
                        delivery,
                        error=f"handler_failed_after_{attempt}: {e}",
                        attempts=attempt,
                    )
                self.stats.retried += 1
                self._event_log.log(
                    "message_retrying",
                    level=logging.WARNING,
                    **self._fields(
                        delivery,
                        event_id=envelope.event_id,
                        attempt=attempt,
                        state=DeliveryState.RETRYING.value,
                        error=str(e),
                    ),
                )
                self._sleep(self.policy.backoff.compute_delay(attempt - 1))
                continue
            break

        if self.skip_processed:
            self.broker.mark_processed(group, topic, envelope.event_id, ttl_seconds=self._processed_ttl_seconds)
        self.broker.clear_attempts(group, topic, envelope.event_id)
        return self._acknowledge(delivery)

    # -- loops ------------------------------------------------------------

    def _fetch(self, block_ms: int) -> list[Delivery]:
        return self.broker.fetch(
            self.subscription.topic,
            self.subscription.consumer_group,
            self.subscription.consumer,
            partitions=self.partitions,
            count=self.read_count,
            block_ms=block_ms,
        )

    def drain(self, *, max_batches: int = 1000) -> int:
        """Process until a fetch comes back empty. Returns deliveries processed."""
        processed = 0
        for _ in range(max_batches):
            batch = self._fetch(0)
            if not batch:
                break
            for delivery in batch:
                self.process(delivery)
                processed += 1
        return processed

    def run(self, *, stop: Optional[threading.Event] = None, stop_after_messages: int | None = None) -> None:
        """Run the at-least-once loop until `stop` is set.

        Transient broker outages back off and retry; an unhealthy broker
        (reconnect ceiling exceeded) propagates so the process reports it.
        """
        processed = 0
        idle_attempt = 0
        while stop is None or not stop.is_set():
            try:
                batch = self._fetch(self.block_ms)
            except BrokerUnhealthyError:
                self._event_log.log("consumer_stopped_broker_unhealthy", level=logging.ERROR, group=self.subscription.consumer_group)
                raise
            except BrokerUnavailableError as e:
                self._event_log.log("consumer_waiting_for_broker", level=logging.WARNING, error=str(e))
                self._sleep(self.policy.backoff.compute_delay(idle_attempt))
                idle_attempt += 1
                continue
            idle_attempt = 0

            for delivery in batch:
                try:
                    self.process(delivery)
                except BrokerUnhealthyError:
                    raise
                except BrokerUnavailableError as e:
                    # Unsettled deliveries are redelivered after the visibility timeout.
                    self._event_log.log("consumer_settle_failed", level=logging.WARNING, **self._fields(delivery, error=str(e)))
                    break
                processed += 1
                if stop_after_messages is not None and processed >= stop_after_messages:
                    return

    def start(self, stop: threading.Event) -> threading.Thread:
        t = threading.Thread(
            target=lambda: self.run(stop=stop),
            daemon=True,
            name=f"{self.subscription.consumer_group}-{self.subscription.consumer}",
        )
        t.start()
        return t


def runtimes_for(broker: BrokerClient, **kwargs) -> list[ConsumerRuntime]:
    """One runtime per subscription registered on `broker`."""
    return [ConsumerRuntime(broker, sub, **kwargs) for sub in broker.subscriptions]
