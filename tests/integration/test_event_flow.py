"""End-to-end event flow over the in-memory broker.

Key scenarios:
1. Gateway -> posts-service write -> posts.events -> search and media projections
2. Lost acknowledgements: redelivery converges to a single application
3. Out-of-order delivery: newer version first, older one ignored
4. Poison message: dead-lettered per group, the rest of the partition flows
5. Broker outage during a write: outbox retrier publishes after reconnect
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from eventfabric.api.main import create_app as create_read_app
from eventfabric.contracts import streams
from eventfabric.core.backoff import Backoff
from eventfabric.core.broker import InMemoryBroker
from eventfabric.core.codec import encode
from eventfabric.core.consumer import ConsumerRuntime, RetryPolicy
from eventfabric.core.models import EventEnvelope
from eventfabric.core.outbox import InMemoryOutboxStore, OutboxRetrier, OutboxStatus
from eventfabric.core.producer import EventProducer
from eventfabric.core.projection import InMemoryProjectionStore
from eventfabric.gateway.app import create_app as create_gateway_app
from eventfabric.gateway.auth import JwtVerifier
from eventfabric.gateway.pipeline import GatewayPipeline
from eventfabric.gateway.routes import RouteTable
from eventfabric.media.projection import MediaMetadataProjection
from eventfabric.posts.events import post_event_from_write
from eventfabric.posts.service import create_app as create_posts_app
from eventfabric.posts.store import InMemoryPostStore
from eventfabric.search.projection import SearchIndexProjection


SECRET = "integration-secret-of-at-least-32-bytes"


@dataclass
class Fabric:
    broker: InMemoryBroker
    outbox: InMemoryOutboxStore
    posts: TestClient
    gateway: TestClient
    search: SearchIndexProjection
    media: MediaMetadataProjection
    search_runtime: ConsumerRuntime
    media_runtime: ConsumerRuntime

    def drain(self) -> None:
        self.search_runtime.drain()
        self.media_runtime.drain()


def _runtime(broker: InMemoryBroker, group: str, projection) -> ConsumerRuntime:
    sub = broker.subscribe(
        streams.POSTS_EVENTS,
        group,
        projection,
        consumer=f"{group}-1",
        event_types=projection.event_types,
    )
    return ConsumerRuntime(
        broker,
        sub,
        policy=RetryPolicy(max_attempts=3, backoff=Backoff(jitter=False)),
        handler_timeout_seconds=None,
        sleep=lambda s: None,
    )


@pytest.fixture
def fabric() -> Fabric:
    broker = InMemoryBroker(partitions=4, visibility_timeout_seconds=0)
    broker.connect()
    outbox = InMemoryOutboxStore()
    producer = EventProducer(
        broker,
        outbox,
        topic=streams.POSTS_EVENTS,
        source_service=streams.POSTS_SERVICE,
        mapper=post_event_from_write,
        retry_backoff=Backoff(initial_delay=0.0, jitter=False),
    )
    posts_app = create_posts_app(InMemoryPostStore(), producer)

    routes = RouteTable.from_dicts([
        {"method": "*", "path": "/api/posts", "service": "posts-service", "targets": ["http://posts"], "auth": "required"},
        {"method": "*", "path": "/api/posts/{post_id}", "service": "posts-service", "targets": ["http://posts"], "auth": "required"},
    ])
    pipeline = GatewayPipeline(
        routes,
        JwtVerifier(SECRET),
        httpx.AsyncClient(transport=httpx.ASGITransport(app=posts_app)),
    )

    search = SearchIndexProjection(InMemoryProjectionStore())
    media = MediaMetadataProjection(InMemoryProjectionStore())
    return Fabric(
        broker=broker,
        outbox=outbox,
        posts=TestClient(posts_app),
        gateway=TestClient(create_gateway_app(pipeline)),
        search=search,
        media=media,
        search_runtime=_runtime(broker, streams.SEARCH_SERVICE_GROUP, search),
        media_runtime=_runtime(broker, streams.MEDIA_SERVICE_GROUP, media),
    )


def _auth(sub: str = "user-7") -> dict:
    token = jwt.encode({"sub": sub, "exp": int(time.time()) + 300}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def _envelope(event_id: str, event_type: str, version: int, content: str) -> EventEnvelope:
    return EventEnvelope(
        event_id=event_id,
        event_type=event_type,
        schema_version=2,
        occurred_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        source_service=streams.POSTS_SERVICE,
        correlation_id="corr",
        payload={"post_id": "42", "author_id": "user-7", "version": version, "content": content, "media": []},
    )


def test_post_written_through_gateway_reaches_both_projections(fabric: Fabric) -> None:
    resp = fabric.gateway.post(
        "/api/posts",
        json={"content": "hello", "media": [{"media_id": "m-1", "url": "https://cdn/m-1.jpg", "mime_type": "image/jpeg"}]},
        headers={**_auth(), "X-Correlation-ID": "corr-e2e"},
    )
    assert resp.status_code == 201
    assert resp.headers["x-correlation-id"] == "corr-e2e"
    post_id = resp.json()["post"]["post_id"]

    fabric.drain()

    hit = fabric.search.lookup(post_id)
    assert hit["content"] == "hello"
    assert hit["author_id"] == "user-7"
    assert [m["media_id"] for m in fabric.media.media_for_post(post_id)] == ["m-1"]

    read = TestClient(create_read_app(fabric.broker, search=fabric.search, media=fabric.media))
    assert read.get(f"/api/search/posts/{post_id}").json()["version"] == 1
    assert read.get("/api/media/items/m-1").json() == {"media_id": "m-1", "post_id": post_id}


def test_full_lifecycle_through_gateway(fabric: Fabric) -> None:
    post_id = fabric.gateway.post("/api/posts", json={"content": "hello"}, headers=_auth()).json()["post"]["post_id"]
    fabric.gateway.put(f"/api/posts/{post_id}", json={"content": "hello again"}, headers=_auth())
    fabric.drain()
    assert fabric.search.lookup(post_id)["content"] == "hello again"

    assert fabric.gateway.delete(f"/api/posts/{post_id}", headers=_auth()).status_code == 200
    fabric.drain()
    assert fabric.search.lookup(post_id) is None
    assert fabric.media.media_for_post(post_id) is None


def test_unauthenticated_write_never_reaches_broker(fabric: Fabric) -> None:
    resp = fabric.gateway.post("/api/posts", json={"content": "hello"})
    assert resp.status_code == 401
    assert fabric.broker.messages(streams.POSTS_EVENTS) == []


def test_lost_acks_apply_each_event_once(fabric: Fabric) -> None:
    fabric.posts.post("/api/posts", json={"content": "hello"}, headers={"X-Authenticated-Subject": "user-7"})
    fabric.broker.drop_next_acks(3)

    fabric.drain()

    records = list(fabric.search.store.records())
    assert len(records) == 1
    assert records[0].last_applied_version == 1
    assert fabric.broker.pending_count(streams.POSTS_EVENTS, streams.SEARCH_SERVICE_GROUP) == 0
    assert fabric.broker.pending_count(streams.POSTS_EVENTS, streams.MEDIA_SERVICE_GROUP) == 0


def test_out_of_order_versions_converge(fabric: Fabric) -> None:
    fabric.broker.publish(streams.POSTS_EVENTS, _envelope("evt-2", "PostUpdated", 2, "hello again"))
    fabric.broker.publish(streams.POSTS_EVENTS, _envelope("evt-1", "PostCreated", 1, "hello"))

    fabric.drain()

    record = fabric.search.store.get("42")
    assert record.last_applied_version == 2
    assert record.state["content"] == "hello again"


def test_poison_message_is_isolated_per_group(fabric: Fabric) -> None:
    fabric.broker.publish_bytes(streams.POSTS_EVENTS, b'{"id": "broken"', ordering_key="42")
    fabric.broker.publish_bytes(streams.POSTS_EVENTS, encode(_envelope("evt-1", "PostCreated", 1, "hello")), ordering_key="42")

    fabric.drain()

    dead = fabric.broker.dead_letters(streams.POSTS_EVENTS)
    assert len(dead) == 2  # one per consumer group
    assert all(d.attempts == 0 for d in dead)
    assert fabric.search.lookup("42")["content"] == "hello"
    assert fabric.media.media_for_post("42") == []


def test_outbox_delivers_after_broker_recovers(fabric: Fabric) -> None:
    fabric.broker.disconnect()
    resp = fabric.posts.post("/api/posts", json={"content": "written offline"}, headers={"X-Authenticated-Subject": "user-7"})
    assert resp.status_code == 201
    assert resp.json()["publish_deferred"] is True

    retrier = OutboxRetrier(fabric.broker, fabric.outbox, backoff=Backoff(initial_delay=0.0, jitter=False))
    assert retrier.process_once() == 0

    fabric.broker.connect()
    assert retrier.process_once() == 1
    assert fabric.outbox.get(resp.json()["event_id"]).status == OutboxStatus.PUBLISHED

    fabric.drain()
    assert fabric.search.lookup(resp.json()["post"]["post_id"])["content"] == "written offline"
