from __future__ import annotations

import logging
from typing import Any, Protocol


class EventLog(Protocol):
    """Narrow logging collaborator injected into core components."""

    def log(self, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
        ...


class LoggingEventLog:
    """Forwards events to stdlib logging as `event k=v ...`."""

    def __init__(self, name: str = "eventfabric") -> None:
        self._logger = logging.getLogger(name)

    def log(self, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        rendered = " ".join(f"{k}={v}" for k, v in fields.items())
        msg = f"{event} {rendered}" if rendered else event
        # Nested under one key: LogRecord rejects extras named like its own attributes.
        self._logger.log(level, msg, extra={"event": event, "event_fields": fields})
