from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from eventfabric.core.broker import BrokerClient
from eventfabric.media.projection import MediaMetadataProjection
from eventfabric.search.projection import SearchIndexProjection


def create_app(
    broker: BrokerClient,
    *,
    search: Optional[SearchIndexProjection] = None,
    media: Optional[MediaMetadataProjection] = None,
    title: str = "eventfabric read API",
) -> FastAPI:
    """Read-only HTTP surface over the projections a service owns."""
    app = FastAPI(title=title)

    @app.get("/health")
    def health():
        state = broker.state.value
        if not broker.healthy:
            return JSONResponse(status_code=503, content={"status": "unhealthy", "broker": state})
        return {"status": "ok", "broker": state}

    if search is not None:

        @app.get("/api/search/posts/{post_id}")
        def search_lookup(post_id: str) -> dict:
            entry = search.lookup(post_id)
            if entry is None:
                raise HTTPException(status_code=404, detail="post not indexed")
            return entry

        @app.get("/api/search/posts")
        def search_posts(q: str = Query(min_length=1), limit: int = Query(default=20, ge=1, le=100)) -> dict:
            return {"query": q, "results": search.search(q, limit=limit)}

    if media is not None:

        @app.get("/api/media/posts/{post_id}")
        def media_for_post(post_id: str) -> dict:
            items = media.media_for_post(post_id)
            if items is None:
                raise HTTPException(status_code=404, detail="post has no media record")
            return {"post_id": post_id, "media": items}

        @app.get("/api/media/items/{media_id}")
        def post_for_media(media_id: str) -> dict:
            post_id = media.post_for_media(media_id)
            if post_id is None:
                raise HTTPException(status_code=404, detail="media not attached")
            return {"media_id": media_id, "post_id": post_id}

    return app
