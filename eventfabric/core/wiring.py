"""Construct shared collaborators from settings for the service entry points."""

from __future__ import annotations

import logging

from .broker import RedisStreamBroker
from .consumer import ConsumerRuntime, RetryPolicy
from .models import Subscription
from .outbox import InMemoryOutboxStore, PostgresOutboxStore
from .projection import InMemoryProjectionStore, PostgresProjectionStore
from .settings import Settings

logger = logging.getLogger(__name__)


def create_broker(s: Settings) -> RedisStreamBroker:
    broker = RedisStreamBroker(
        s.broker.redis_url,
        partitions=s.broker.partitions,
        publish_timeout_seconds=s.broker.publish_timeout_seconds,
        visibility_timeout_seconds=s.broker.visibility_timeout_seconds,
        reconnect_backoff=s.broker.reconnect_backoff,
        reconnect_ceiling_seconds=s.broker.reconnect_ceiling_seconds,
        max_block_ms=s.broker.max_block_ms,
    )
    broker.connect()
    return broker


def create_outbox_store(s: Settings):
    """Create the appropriate outbox store based on environment."""
    if s.postgres_dsn:
        logger.info("Using PostgreSQL outbox")
        return PostgresOutboxStore(s.postgres_dsn)
    logger.info("Using in-memory outbox (dev mode)")
    return InMemoryOutboxStore()


def create_projection_store(s: Settings, projection: str):
    """Create the appropriate projection store based on environment."""
    if s.postgres_dsn:
        logger.info(f"Using PostgreSQL projection store: {projection}")
        return PostgresProjectionStore(s.postgres_dsn, projection=projection)
    logger.info(f"Using in-memory projection store (dev mode): {projection}")
    return InMemoryProjectionStore()


def create_runtime(s: Settings, broker, subscription: Subscription) -> ConsumerRuntime:
    partitions = s.consumer.owned_partitions(broker.partitions)
    return ConsumerRuntime(
        broker,
        subscription,
        policy=RetryPolicy(max_attempts=s.consumer.max_attempts, backoff=s.consumer.retry_backoff),
        handler_timeout_seconds=s.consumer.handler_timeout_seconds,
        skip_processed=True,
        processed_ttl_seconds=s.consumer.processed_ttl_seconds,
        partitions=partitions,
        read_count=s.consumer.read_count,
        block_ms=s.consumer.block_ms,
    )
