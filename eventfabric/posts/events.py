from __future__ import annotations

from typing import Any, Dict, Tuple

from eventfabric.core.models import EventType
from eventfabric.core.producer import WriteOperation, WriteResult


def post_event_from_write(result: WriteResult) -> Tuple[str, Dict[str, Any]]:
    """Map a committed post write to its domain event (type, payload)."""
    snap = result.snapshot
    if result.operation == WriteOperation.DELETED:
        return EventType.POST_DELETED.value, {
            "post_id": result.entity_id,
            "author_id": snap["author_id"],
            "version": result.version,
        }

    event_type = EventType.POST_CREATED if result.operation == WriteOperation.CREATED else EventType.POST_UPDATED
    return event_type.value, {
        "post_id": result.entity_id,
        "author_id": snap["author_id"],
        "version": result.version,
        "content": snap["content"],
        "media": [
            {"media_id": m["media_id"], "url": m["url"], "mime_type": m["mime_type"]}
            for m in snap.get("media", [])
        ],
    }
