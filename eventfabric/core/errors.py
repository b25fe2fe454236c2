"""Error taxonomy shared by the broker, consumers and the gateway.

Every error carries a `kind` (rendered verbatim in gateway error envelopes)
and an HTTP-class `status_code`.
"""

from __future__ import annotations

from typing import Optional


class FabricError(Exception):
    kind = "FabricError"
    status_code = 500

    def __init__(self, message: str = "", *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(FabricError):
    """Malformed input. Reported to the caller, never retried."""
    kind = "ValidationError"
    status_code = 400


class AuthError(FabricError):
    kind = "AuthError"
    status_code = 401

    MISSING = "missing"
    INVALID = "invalid"
    EXPIRED = "expired"

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or f"credential {reason}")
        self.reason = reason


class RouteError(FabricError):
    kind = "RouteError"

    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"

    def __init__(self, reason: str, message: str = "") -> None:
        status = 404 if reason == self.NOT_FOUND else 503
        super().__init__(message or reason.replace("_", " "), status_code=status)
        self.reason = reason


class ForwardError(FabricError):
    """Downstream could not be reached (502) or did not answer in time (504)."""
    kind = "ForwardError"
    status_code = 502


class DownstreamError(FabricError):
    """Downstream answered with an error status; its body is never passed through."""
    kind = "DownstreamError"


class PublishError(FabricError):
    kind = "PublishError"
    status_code = 503

    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    REJECTED = "rejected"

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or f"publish {reason}")
        self.reason = reason


class DecodeError(FabricError):
    """Malformed or unsupported envelope. Dead-lettered, never retried."""
    kind = "DecodeError"
    status_code = 400


class HandlerError(FabricError):
    """Projection application failed. Retried with backoff, then dead-lettered."""
    kind = "HandlerError"


class PersistError(FabricError):
    kind = "PersistError"


class BrokerUnavailableError(FabricError):
    kind = "BrokerUnavailable"
    status_code = 503


class BrokerUnhealthyError(BrokerUnavailableError):
    """Reconnection exceeded the configured ceiling."""
    kind = "BrokerUnhealthy"
