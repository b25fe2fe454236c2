from __future__ import annotations

# Topic names (one topic per domain event family).

POSTS_EVENTS = "posts.events"

# Consumer groups, named per owning service.

SEARCH_SERVICE_GROUP = "search-service"
MEDIA_SERVICE_GROUP = "media-service"

POSTS_SERVICE = "posts-service"


def partition_stream(topic: str, partition: int) -> str:
    return f"{topic}.p{partition}"


def dlq_stream(topic: str) -> str:
    return f"dlq.{topic}"
