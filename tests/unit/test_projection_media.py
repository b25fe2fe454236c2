from __future__ import annotations

from datetime import datetime, timezone
from itertools import permutations

import pytest

from eventfabric.core.models import EventEnvelope
from eventfabric.core.projection import ApplyOutcome, InMemoryProjectionStore
from eventfabric.media.projection import MediaMetadataProjection, attach_media


def _media(*ids: str) -> list[dict]:
    return [{"media_id": i, "url": f"https://cdn.example.com/{i}.jpg", "mime_type": "image/jpeg"} for i in ids]


def _env(event_type: str, version: int, media_ids=(), *, post_id: str = "42") -> EventEnvelope:
    payload = {"post_id": post_id, "author_id": "user-7", "version": version}
    if event_type != "PostDeleted":
        payload.update(content="x", media=_media(*media_ids))
    return EventEnvelope(
        event_id=f"evt-{post_id}-{version}",
        event_type=event_type,
        schema_version=2,
        occurred_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        source_service="posts-service",
        correlation_id="corr",
        payload=payload,
    )


def _projection() -> MediaMetadataProjection:
    return MediaMetadataProjection(InMemoryProjectionStore())


def test_attach_media_sorts_by_id_and_ignores_prior_state() -> None:
    payload = {"post_id": "1", "author_id": "u", "media": _media("b", "a")}
    state = attach_media(payload, {"media": _media("a", "c")})
    assert [m["media_id"] for m in state["media"]] == ["a", "b"]
    assert state == attach_media(payload, None)


def test_created_post_attaches_media() -> None:
    p = _projection()
    p.handle(_env("PostCreated", 1, ["m-1", "m-2"]))

    assert [m["media_id"] for m in p.media_for_post("42")] == ["m-1", "m-2"]
    assert p.post_for_media("m-2") == "42"


def test_update_detaches_removed_media() -> None:
    p = _projection()
    p.handle(_env("PostCreated", 1, ["m-1", "m-2"]))
    p.handle(_env("PostUpdated", 2, ["m-2"]))

    assert [m["media_id"] for m in p.media_for_post("42")] == ["m-2"]
    assert p.post_for_media("m-1") is None


def test_media_moved_to_another_post() -> None:
    p = _projection()
    p.handle(_env("PostCreated", 1, ["m-1"], post_id="1"))
    p.handle(_env("PostUpdated", 2, [], post_id="1"))
    p.handle(_env("PostCreated", 1, ["m-1"], post_id="2"))

    assert p.post_for_media("m-1") == "2"
    assert p.media_for_post("1") == []


def test_delete_detaches_everything() -> None:
    p = _projection()
    p.handle(_env("PostCreated", 1, ["m-1", "m-2"]))
    p.handle(_env("PostDeleted", 2))

    assert p.media_for_post("42") is None
    assert p.post_for_media("m-1") is None


def test_newer_version_first_then_older_is_ignored() -> None:
    p = _projection()
    assert p.handle(_env("PostUpdated", 2, ["m-2"])) == ApplyOutcome.APPLIED
    assert p.handle(_env("PostCreated", 1, ["m-1"])) == ApplyOutcome.STALE

    record = p.store.get("42")
    assert record.last_applied_version == 2
    assert [m["media_id"] for m in record.state["media"]] == ["m-2"]


@pytest.mark.parametrize(
    "events",
    [
        [("PostCreated", 1, ["a", "b"]), ("PostUpdated", 2, ["a"])],
        [("PostCreated", 1, ["a"]), ("PostUpdated", 2, ["b"]), ("PostUpdated", 3, ["b", "c"])],
        [("PostCreated", 1, ["a", "b"]), ("PostUpdated", 2, ["a"]), ("PostDeleted", 3, [])],
    ],
    ids=["shrink", "replace-then-grow", "delete"],
)
def test_any_delivery_order_converges_to_the_same_record(events) -> None:
    envelopes = [_env(t, v, ids) for t, v, ids in events]
    records = []
    for order in permutations(envelopes):
        p = _projection()
        for env in order:
            p.handle(env)
        records.append(p.store.get("42"))

    assert all(r == records[0] for r in records)
    assert records[0].last_applied_version == len(events)


def test_redelivery_is_a_no_op() -> None:
    p = _projection()
    env = _env("PostCreated", 1, ["m-1"])
    p.handle(env)
    before = p.store.get("42")
    assert p.handle(env) == ApplyOutcome.DUPLICATE
    assert p.store.get("42") == before
