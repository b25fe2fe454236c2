from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict

from eventfabric.core.errors import FabricError


@dataclass(frozen=True)
class ErrorEnvelope:
    """The only error shape a gateway client ever sees."""
    kind: str
    message: str
    correlation_id: str
    status_code: int

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "correlationId": self.correlation_id}

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False).encode("utf-8")


def normalize_error(error: BaseException, correlation_id: str) -> ErrorEnvelope:
    if isinstance(error, FabricError):
        return ErrorEnvelope(
            kind=error.kind,
            message=error.message or error.kind,
            correlation_id=correlation_id,
            status_code=error.status_code,
        )
    # Unknown failures never leak their message.
    return ErrorEnvelope(
        kind="InternalError",
        message="internal gateway error",
        correlation_id=correlation_id,
        status_code=500,
    )
