"""Search index projection - owned by search-service.

Input: PostCreated / PostUpdated / PostDeleted on posts.events
State per post: author, content snapshot, normalized terms, tombstone flag.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from eventfabric.core.models import EventType
from eventfabric.core.projection import IdempotentProjection, State


_TOKEN_RE = re.compile(r"[\w#@]+", re.UNICODE)


def tokenize(text: str) -> list[str]:
    return sorted({t.lower() for t in _TOKEN_RE.findall(text)})


def index_post(payload: Dict[str, Any], prior_state: Optional[State]) -> State:
    return {
        "post_id": payload["post_id"],
        "author_id": payload["author_id"],
        "content": payload["content"],
        "terms": tokenize(payload["content"]),
        "deleted": False,
    }


def remove_post(payload: Dict[str, Any], prior_state: Optional[State]) -> State:
    # Tombstone keeps the version so an older create cannot resurrect the entry.
    return {
        "post_id": payload["post_id"],
        "author_id": payload["author_id"],
        "content": "",
        "terms": [],
        "deleted": True,
    }


class SearchIndexProjection(IdempotentProjection):
    name = "search_index"

    def register_appliers(self) -> None:
        self.on(EventType.POST_CREATED.value, index_post)
        self.on(EventType.POST_UPDATED.value, index_post)
        self.on(EventType.POST_DELETED.value, remove_post)

    def lookup(self, post_id: str) -> Optional[Dict[str, Any]]:
        record = self.store.get(post_id)
        if record is None or record.state.get("deleted"):
            return None
        return {**record.state, "version": record.last_applied_version}

    def search(self, query: str, *, limit: int = 20) -> list[Dict[str, Any]]:
        """Posts containing every query term, ordered by post id."""
        wanted = tokenize(query)
        if not wanted:
            return []
        hits = []
        for record in self.store.records():
            state = record.state
            if state.get("deleted"):
                continue
            terms = set(state.get("terms", []))
            if all(w in terms for w in wanted):
                hits.append({**state, "version": record.last_applied_version})
        hits.sort(key=lambda h: h["post_id"])
        return hits[:limit]
