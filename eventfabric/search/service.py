"""Search service - subscribes to post events and maintains the search index.

This service:
1. Subscribes to posts.events as consumer group search-service
2. Applies each envelope through the idempotent SearchIndexProjection
3. Serves index lookups over HTTP

Consumer Group: search-service
"""

from __future__ import annotations

import logging
import os
import threading

import uvicorn

from eventfabric.api.main import create_app
from eventfabric.contracts import streams
from eventfabric.core.settings import load_settings
from eventfabric.core.wiring import create_broker, create_projection_store, create_runtime
from eventfabric.search.projection import SearchIndexProjection

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    s = load_settings()
    consumer = os.getenv("HOSTNAME", "search-1")

    logger.info("Starting search service...")
    logger.info(f"Redis URL: {s.broker.redis_url}")

    broker = create_broker(s)
    projection = SearchIndexProjection(create_projection_store(s, SearchIndexProjection.name))
    sub = broker.subscribe(
        streams.POSTS_EVENTS,
        streams.SEARCH_SERVICE_GROUP,
        projection,
        consumer=consumer,
        event_types=projection.event_types,
    )
    runtime = create_runtime(s, broker, sub)

    stop = threading.Event()
    runtime.start(stop)
    logger.info(f"Subscribed to {streams.POSTS_EVENTS} as {streams.SEARCH_SERVICE_GROUP}/{consumer}")

    app = create_app(broker, search=projection, title="eventfabric search-service")
    try:
        uvicorn.run(app, host="0.0.0.0", port=s.port_for(streams.SEARCH_SERVICE_GROUP, 8002))
    finally:
        logger.info("Shutting down search service...")
        stop.set()
        runtime.close()
        broker.close()


if __name__ == "__main__":
    main()
