"""Gateway route table.

Loaded once at startup from static configuration and never mutated; a
restart rebuilds it wholesale.
"""

from __future__ import annotations

import itertools
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Pattern

import yaml  # type: ignore


class AuthRequirement(str, Enum):
    REQUIRED = "required"
    NONE = "none"


_PARAM_RE = re.compile(r"^\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::(?P<kind>path))?\}$")


def compile_pattern(pattern: str) -> Pattern[str]:
    """`/api/posts/{post_id}` style patterns; `{name:path}` only as the last segment."""
    if not pattern.startswith("/"):
        raise ValueError(f"route pattern must start with '/': {pattern}")
    segments = pattern.strip("/").split("/") if pattern != "/" else []
    parts: list[str] = []
    for i, seg in enumerate(segments):
        m = _PARAM_RE.match(seg)
        if m is None:
            parts.append(re.escape(seg))
        elif m.group("kind") == "path":
            if i != len(segments) - 1:
                raise ValueError(f"path parameter must be last: {pattern}")
            parts.append(f"(?P<{m.group('name')}>.*)")
        else:
            parts.append(f"(?P<{m.group('name')}>[^/]+)")
    return re.compile("^/" + "/".join(parts) + "/?$")


@dataclass(frozen=True)
class RouteTableEntry:
    method: str
    pattern: str
    service: str
    targets: tuple
    auth: AuthRequirement = AuthRequirement.REQUIRED
    regex: Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.targets:
            raise ValueError(f"route {self.method} {self.pattern} has no targets")
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "regex", compile_pattern(self.pattern))

    def matches_method(self, method: str) -> bool:
        return self.method == "*" or self.method == method.upper()


@dataclass(frozen=True)
class RouteMatch:
    entry: RouteTableEntry
    params: Dict[str, str]


class RouteTable:
    def __init__(self, entries: Iterable[RouteTableEntry]) -> None:
        self._entries = tuple(entries)

    @property
    def entries(self) -> tuple:
        return self._entries

    @classmethod
    def from_dicts(cls, routes: Iterable[Dict[str, Any]]) -> "RouteTable":
        entries = []
        for r in routes:
            targets = r.get("targets") or []
            if isinstance(targets, str):
                targets = [targets]
            entries.append(
                RouteTableEntry(
                    method=str(r.get("method", "*")),
                    pattern=str(r["path"]),
                    service=str(r["service"]),
                    targets=tuple(str(t).rstrip("/") for t in targets),
                    auth=AuthRequirement(str(r.get("auth", AuthRequirement.REQUIRED.value))),
                )
            )
        return cls(entries)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RouteTable":
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        return cls.from_dicts(data.get("routes") or [])

    def match(self, method: str, path: str) -> Optional[RouteMatch]:
        """First entry (in declaration order) matching method and path."""
        for entry in self._entries:
            if not entry.matches_method(method):
                continue
            m = entry.regex.match(path)
            if m is not None:
                return RouteMatch(entry=entry, params=m.groupdict())
        return None


class TargetHealth:
    """Passive health: a target that failed at transport level sits out a cooldown."""

    def __init__(self, *, cooldown_seconds: float = 15.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._unhealthy_until: dict[str, float] = {}
        self._cursors: dict[str, Any] = {}
        self._lock = threading.Lock()

    def mark_unhealthy(self, target: str) -> None:
        with self._lock:
            self._unhealthy_until[target] = self._clock() + self.cooldown_seconds

    def mark_healthy(self, target: str) -> None:
        with self._lock:
            self._unhealthy_until.pop(target, None)

    def is_healthy(self, target: str) -> bool:
        with self._lock:
            until = self._unhealthy_until.get(target)
            return until is None or until <= self._clock()

    def pick(self, entry: RouteTableEntry) -> Optional[str]:
        """Round-robin over the entry's healthy targets; None when all are down."""
        healthy = [t for t in entry.targets if self.is_healthy(t)]
        if not healthy:
            return None
        with self._lock:
            cursor = self._cursors.setdefault(entry.service, itertools.count())
            return healthy[next(cursor) % len(healthy)]
