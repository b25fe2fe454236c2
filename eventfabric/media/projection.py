"""Media metadata projection - owned by media-service.

Tracks which media items are attached to which post. Binary storage and CDN
delivery live elsewhere; this only keeps the metadata in sync with posts.

A record is built from the winning event's payload alone, so any delivery
order ends in the same state.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from eventfabric.core.models import EventType
from eventfabric.core.projection import IdempotentProjection, State


def attach_media(payload: Dict[str, Any], prior_state: Optional[State]) -> State:
    return {
        "post_id": payload["post_id"],
        "author_id": payload["author_id"],
        "media": sorted((dict(m) for m in payload["media"]), key=lambda m: m["media_id"]),
        "deleted": False,
    }


def detach_all(payload: Dict[str, Any], prior_state: Optional[State]) -> State:
    return {
        "post_id": payload["post_id"],
        "author_id": payload["author_id"],
        "media": [],
        "deleted": True,
    }


class MediaMetadataProjection(IdempotentProjection):
    name = "media_metadata"

    def register_appliers(self) -> None:
        self.on(EventType.POST_CREATED.value, attach_media)
        self.on(EventType.POST_UPDATED.value, attach_media)
        self.on(EventType.POST_DELETED.value, detach_all)

    def media_for_post(self, post_id: str) -> Optional[list[Dict[str, Any]]]:
        record = self.store.get(post_id)
        if record is None or record.state.get("deleted"):
            return None
        return list(record.state["media"])

    def post_for_media(self, media_id: str) -> Optional[str]:
        for record in self.store.records():
            if record.state.get("deleted"):
                continue
            if any(m["media_id"] == media_id for m in record.state.get("media", [])):
                return record.entity_id
        return None
