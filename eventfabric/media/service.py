"""Media service - keeps media metadata in sync with post events.

Consumer Group: media-service
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
from eventfabric.media.projection import MediaMetadataProjection

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    s = load_settings()
    consumer = os.getenv("HOSTNAME", "media-1")

    logger.info("Starting media service...")

    broker = create_broker(s)
    projection = MediaMetadataProjection(create_projection_store(s, MediaMetadataProjection.name))
    sub = broker.subscribe(
        streams.POSTS_EVENTS,
        streams.MEDIA_SERVICE_GROUP,
        projection,
        consumer=consumer,
        event_types=projection.event_types,
    )
    runtime = create_runtime(s, broker, sub)

    stop = threading.Event()
    runtime.start(stop)

    app = create_app(broker, media=projection, title="eventfabric media-service")
    try:
        uvicorn.run(app, host="0.0.0.0", port=s.port_for(streams.MEDIA_SERVICE_GROUP, 8003))
    finally:
        logger.info("Shutting down media service...")
        stop.set()
        runtime.close()
        broker.close()


if __name__ == "__main__":
    main()
