from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from eventfabric.core.errors import PersistError, ValidationError
from eventfabric.core.producer import WriteOperation, WriteResult


@dataclass(frozen=True)
class PostWrite:
    operation: WriteOperation
    author_id: str
    post_id: Optional[str] = None
    content: str = ""
    media: tuple = field(default_factory=tuple)
    correlation_id: Optional[str] = None


class InMemoryPostStore:
    """Dev-mode post persistence. Each committed write bumps the post version."""

    def __init__(self) -> None:
        self._posts: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, post_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            post = self._posts.get(post_id)
            if post is None or post["deleted"]:
                return None
            return copy.deepcopy(post)

    def commit(self, write: PostWrite) -> WriteResult:
        if write.operation != WriteOperation.DELETED and not isinstance(write.content, str):
            raise ValidationError("content must be string")

        with self._lock:
            if write.operation == WriteOperation.CREATED:
                post_id = write.post_id or str(uuid.uuid4())
                if post_id in self._posts:
                    raise PersistError(f"post {post_id} already exists", status_code=409)
                post = {"post_id": post_id, "version": 0, "deleted": False}
            else:
                post = self._posts.get(write.post_id or "")
                if post is None or post["deleted"]:
                    raise PersistError(f"post {write.post_id} not found", status_code=404)
                if post["author_id"] != write.author_id:
                    raise PersistError(f"post {write.post_id} belongs to another author", status_code=403)
                post = copy.deepcopy(post)

            post["author_id"] = write.author_id
            post["version"] += 1
            if write.operation == WriteOperation.DELETED:
                post["deleted"] = True
            else:
                post["content"] = write.content
                post["media"] = [dict(m) for m in write.media]
            self._posts[post["post_id"]] = post

            return WriteResult(
                entity_type="post",
                entity_id=post["post_id"],
                operation=write.operation,
                version=post["version"],
                snapshot=copy.deepcopy(post),
                correlation_id=write.correlation_id,
            )
