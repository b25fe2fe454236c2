"""Posts service - owns post writes and emits post events.

This service:
1. Commits post writes (create/update/delete) to its store
2. Calls the producer's on_committed hook after each successful commit
3. Leaves failed publishes to the outbox retrier

Topic: posts.events
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from eventfabric.contracts import streams
from eventfabric.core.errors import FabricError, ValidationError
from eventfabric.core.outbox import OutboxRetrier
from eventfabric.core.producer import EventProducer, WriteOperation
from eventfabric.core.settings import load_settings
from eventfabric.core.wiring import create_broker, create_outbox_store
from eventfabric.posts.events import post_event_from_write
from eventfabric.posts.store import InMemoryPostStore, PostWrite

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
SUBJECT_HEADER = "X-Authenticated-Subject"


class MediaIn(BaseModel):
    media_id: str = Field(min_length=1)
    url: str = Field(min_length=1)
    mime_type: str = Field(min_length=1)


class PostIn(BaseModel):
    content: str
    media: list[MediaIn] = Field(default_factory=list)


def _author(subject: Optional[str]) -> str:
    if not subject:
        raise ValidationError(f"{SUBJECT_HEADER} header is required")
    return subject


def _media(body: PostIn) -> tuple:
    return tuple(m.model_dump() for m in body.media)


def create_app(store: InMemoryPostStore, producer: EventProducer) -> FastAPI:
    app = FastAPI(title="eventfabric posts-service")

    @app.exception_handler(FabricError)
    async def _fabric_error(request: Request, exc: FabricError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"kind": exc.kind, "message": exc.message})

    def _write(write: PostWrite) -> dict:
        result, outcome = producer.commit_and_publish(store, write)
        return {
            "post": {k: v for k, v in result.snapshot.items() if k != "deleted"},
            "event_id": outcome.envelope.event_id,
            "publish_deferred": outcome.deferred,
        }

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "broker": producer.broker.state.value}

    @app.get("/api/posts/{post_id}")
    def get_post(post_id: str) -> dict:
        post = store.get(post_id)
        if post is None:
            raise HTTPException(status_code=404, detail="post not found")
        return post

    @app.post("/api/posts", status_code=201)
    def create_post(
        body: PostIn,
        subject: Optional[str] = Header(default=None, alias=SUBJECT_HEADER),
        correlation_id: Optional[str] = Header(default=None, alias=CORRELATION_HEADER),
    ) -> dict:
        return _write(PostWrite(
            operation=WriteOperation.CREATED,
            author_id=_author(subject),
            content=body.content,
            media=_media(body),
            correlation_id=correlation_id,
        ))

    @app.put("/api/posts/{post_id}")
    def update_post(
        post_id: str,
        body: PostIn,
        subject: Optional[str] = Header(default=None, alias=SUBJECT_HEADER),
        correlation_id: Optional[str] = Header(default=None, alias=CORRELATION_HEADER),
    ) -> dict:
        return _write(PostWrite(
            operation=WriteOperation.UPDATED,
            author_id=_author(subject),
            post_id=post_id,
            content=body.content,
            media=_media(body),
            correlation_id=correlation_id,
        ))

    @app.delete("/api/posts/{post_id}")
    def delete_post(
        post_id: str,
        subject: Optional[str] = Header(default=None, alias=SUBJECT_HEADER),
        correlation_id: Optional[str] = Header(default=None, alias=CORRELATION_HEADER),
    ) -> dict:
        return _write(PostWrite(
            operation=WriteOperation.DELETED,
            author_id=_author(subject),
            post_id=post_id,
            correlation_id=correlation_id,
        ))

    return app


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    s = load_settings()

    logger.info("Starting posts service...")
    logger.info(f"Redis URL: {s.broker.redis_url}")

    broker = create_broker(s)
    outbox = create_outbox_store(s)
    producer = EventProducer(
        broker,
        outbox,
        topic=streams.POSTS_EVENTS,
        source_service=streams.POSTS_SERVICE,
        mapper=post_event_from_write,
        retry_backoff=s.outbox.retry_backoff,
    )
    retrier = OutboxRetrier(
        broker,
        outbox,
        max_attempts=s.outbox.max_attempts,
        backoff=s.outbox.retry_backoff,
        batch_size=s.outbox.batch_size,
    )
    retrier.start(poll_interval_seconds=s.outbox.poll_interval_seconds)

    app = create_app(InMemoryPostStore(), producer)
    try:
        uvicorn.run(app, host="0.0.0.0", port=s.port_for(streams.POSTS_SERVICE, 8001))
    finally:
        retrier.stop()
        broker.close()


if __name__ == "__main__":
    main()
