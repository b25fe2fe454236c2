"""Envelope codec.

Wire format is UTF-8 JSON with sorted keys and compact separators, so the same
envelope value always encodes to the same bytes. Envelopes older than
`SCHEMA_VERSION` are upgraded step by step through registered upgraders;
anything newer, or older without an upgrader, is a `DecodeError`.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Tuple

from eventfabric.contracts.validation import validate_envelope_dict
from eventfabric.core.errors import DecodeError, ValidationError
from eventfabric.core.models import EventEnvelope, EventType


SCHEMA_VERSION = 2

Upgrader = Callable[[Dict[str, Any]], Dict[str, Any]]

# (event type, from version) -> payload upgrader producing version + 1
_UPGRADERS: Dict[Tuple[str, int], Upgrader] = {}


def register_upgrader(event_type: str, from_version: int) -> Callable[[Upgrader], Upgrader]:
    def deco(fn: Upgrader) -> Upgrader:
        _UPGRADERS[(event_type, from_version)] = fn
        return fn

    return deco


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def envelope_to_wire_dict(envelope: EventEnvelope) -> dict:
    return {
        "id": envelope.event_id,
        "type": envelope.event_type,
        "schemaVersion": envelope.schema_version,
        "occurredAt": _iso(envelope.occurred_at),
        "sourceService": envelope.source_service,
        "correlationId": envelope.correlation_id,
        "payload": envelope.payload,
    }


def wire_dict_to_envelope(d: dict) -> EventEnvelope:
    return EventEnvelope(
        event_id=d["id"],
        event_type=d["type"],
        schema_version=int(d["schemaVersion"]),
        occurred_at=datetime.fromisoformat(str(d["occurredAt"]).replace("Z", "+00:00")),
        source_service=d["sourceService"],
        correlation_id=d["correlationId"],
        payload=d["payload"],
    )


def encode(envelope: EventEnvelope) -> bytes:
    """Serialize an envelope. Raises ValidationError for envelopes that would not decode."""
    wire = envelope_to_wire_dict(envelope)
    try:
        validate_envelope_dict(wire, schema_version=SCHEMA_VERSION)
    except ValueError as e:
        raise ValidationError(f"invalid envelope: {e}") from e
    return json.dumps(wire, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode("utf-8")


def upgrade(wire: dict) -> dict:
    version = wire.get("schemaVersion")
    if not isinstance(version, int) or isinstance(version, bool):
        raise DecodeError("schemaVersion must be int")
    if version > SCHEMA_VERSION:
        raise DecodeError(f"unsupported schemaVersion {version} (max {SCHEMA_VERSION})")

    event_type = wire.get("type")
    while version < SCHEMA_VERSION:
        fn = _UPGRADERS.get((str(event_type), version))
        if fn is None:
            raise DecodeError(f"no upgrader for {event_type} v{version}")
        payload = wire.get("payload")
        if not isinstance(payload, dict):
            raise DecodeError("payload must be object")
        try:
            payload = fn(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"upgrade of {event_type} v{version} failed: {e}") from e
        version += 1
        wire = {**wire, "payload": payload, "schemaVersion": version}
    return wire


def decode(data: bytes | str) -> EventEnvelope:
    try:
        wire = json.loads(data)
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"malformed envelope: {e}") from e
    if not isinstance(wire, dict):
        raise DecodeError("envelope must be object")

    wire = upgrade(wire)
    try:
        validate_envelope_dict(wire, schema_version=SCHEMA_VERSION)
    except ValueError as e:
        raise DecodeError(f"contract_invalid: {e}") from e
    return wire_dict_to_envelope(wire)


# v1 -> v2: camelCase payload fields renamed, `body` became `content`.

def _upgrade_media_v1(items: list) -> list:
    return [
        {"media_id": m["mediaId"], "url": m["url"], "mime_type": m["mimeType"]}
        for m in items
    ]


@register_upgrader(EventType.POST_CREATED.value, 1)
@register_upgrader(EventType.POST_UPDATED.value, 1)
def _upgrade_post_written_v1(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "post_id": payload["postId"],
        "author_id": payload["authorId"],
        "version": payload["version"],
        "content": payload["body"],
        "media": _upgrade_media_v1(payload.get("media", [])),
    }


@register_upgrader(EventType.POST_DELETED.value, 1)
def _upgrade_post_deleted_v1(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "post_id": payload["postId"],
        "author_id": payload["authorId"],
        "version": payload["version"],
    }
