from __future__ import annotations

from datetime import datetime
from typing import Any

from eventfabric.core.models import EventType


ENVELOPE_REQUIRED_KEYS = {
    "id",
    "type",
    "schemaVersion",
    "occurredAt",
    "sourceService",
    "correlationId",
    "payload",
}

MEDIA_ITEM_KEYS = {"media_id", "url", "mime_type"}


def _require_exact_keys(obj: dict[str, Any], *, required: set[str], optional: set[str] | None = None) -> None:
    optional = optional or set()
    keys = set(obj.keys())
    missing = required - keys
    extra = keys - required - optional
    if missing:
        raise ValueError(f"missing keys: {sorted(missing)}")
    if extra:
        raise ValueError(f"extra keys not allowed: {sorted(extra)}")


def _require_str(d: dict[str, Any], k: str) -> str:
    v = d.get(k)
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{k} must be non-empty string")
    return v


def _require_text(d: dict[str, Any], k: str) -> str:
    # Content may legitimately be empty, but must be a string.
    v = d.get(k)
    if not isinstance(v, str):
        raise ValueError(f"{k} must be string")
    return v


def _require_int(d: dict[str, Any], k: str) -> int:
    v = d.get(k)
    if not isinstance(v, int) or isinstance(v, bool):
        raise ValueError(f"{k} must be int")
    return v


def _parse_iso8601(s: str) -> datetime:
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"invalid ISO8601 timestamp: {s}") from e
    if dt.tzinfo is None:
        raise ValueError("timestamp must include timezone")
    return dt


def validate_envelope_dict(event: dict[str, Any], *, schema_version: int) -> None:
    """Strict validation of a wire envelope at the current schema version.

    - no extra fields (schema evolution bumps `schemaVersion`)
    - payload must match type-specific rules
    """

    _require_exact_keys(event, required=ENVELOPE_REQUIRED_KEYS)
    _require_str(event, "id")
    _require_str(event, "sourceService")
    _require_str(event, "correlationId")
    _parse_iso8601(_require_str(event, "occurredAt"))

    version = _require_int(event, "schemaVersion")
    if version != schema_version:
        raise ValueError(f"schemaVersion must be {schema_version}")

    event_type = _require_str(event, "type")
    payload = event.get("payload")
    if not isinstance(payload, dict):
        raise ValueError("payload must be object")
    validate_payload(event_type, payload)


def _validate_media(payload: dict[str, Any]) -> None:
    media = payload.get("media")
    if not isinstance(media, list):
        raise ValueError("media must be array")
    for item in media:
        if not isinstance(item, dict):
            raise ValueError("media items must be objects")
        _require_exact_keys(item, required=MEDIA_ITEM_KEYS)
        for k in sorted(MEDIA_ITEM_KEYS):
            _require_str(item, k)


def validate_payload(event_type: str, payload: dict[str, Any]) -> None:
    if event_type in (EventType.POST_CREATED.value, EventType.POST_UPDATED.value):
        _require_exact_keys(payload, required={"post_id", "author_id", "version", "content", "media"})
        _require_str(payload, "post_id")
        _require_str(payload, "author_id")
        if _require_int(payload, "version") < 1:
            raise ValueError("version must be >= 1")
        _require_text(payload, "content")
        _validate_media(payload)
        return

    if event_type == EventType.POST_DELETED.value:
        _require_exact_keys(payload, required={"post_id", "author_id", "version"})
        _require_str(payload, "post_id")
        _require_str(payload, "author_id")
        if _require_int(payload, "version") < 1:
            raise ValueError("version must be >= 1")
        return

    # For new event kinds: add the type to EventType, then update this mapping.
    raise ValueError(f"unknown event type: {event_type}")
