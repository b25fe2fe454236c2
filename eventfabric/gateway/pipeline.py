"""Gateway dispatch pipeline.

Every inbound request runs, in order:

1. authenticate      - verify the bearer credential, if any (pure)
2. authorize_route   - match the route table, enforce the route's auth
                       requirement, pick a healthy target (pure)
3. forward           - proxy to the target with a correlation id (async I/O)
4. normalize         - any failure from 1-3 or from downstream becomes one
                       uniform error envelope

Stages return a tagged StageResult instead of raising, so each can be
exercised on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Optional, TypeVar

import httpx

from eventfabric.core.errors import AuthError, DownstreamError, FabricError, ForwardError, RouteError
from eventfabric.core.eventlog import EventLog, LoggingEventLog
from eventfabric.core.models import new_correlation_id

from .auth import Claims, CredentialVerifier, bearer_token
from .errors import ErrorEnvelope, normalize_error
from .routes import AuthRequirement, RouteMatch, RouteTable, TargetHealth


CORRELATION_HEADER = "x-correlation-id"
SUBJECT_HEADER = "x-authenticated-subject"

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})

T = TypeVar("T")


@dataclass(frozen=True)
class GatewayRequest:
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    query: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "headers", {k.lower(): v for k, v in self.headers.items()})


@dataclass(frozen=True)
class GatewayResponse:
    status_code: int
    headers: Dict[str, str]
    body: bytes


@dataclass(frozen=True)
class StageResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[FabricError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "StageResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: FabricError) -> "StageResult[T]":
        return cls(error=error)


@dataclass(frozen=True)
class Dispatch:
    match: RouteMatch
    target: str
    claims: Optional[Claims]


def authenticate(request: GatewayRequest, verifier: CredentialVerifier) -> StageResult[Claims]:
    try:
        token = bearer_token(request.headers)
        if token is None:
            return StageResult.failure(AuthError(AuthError.MISSING, "credential missing"))
        return StageResult.success(verifier.verify(token))
    except AuthError as e:
        return StageResult.failure(e)


def authorize_route(
    routes: RouteTable,
    health: TargetHealth,
    request: GatewayRequest,
    auth: StageResult[Claims],
) -> StageResult[Dispatch]:
    match = routes.match(request.method, request.path)
    if match is None:
        return StageResult.failure(RouteError(RouteError.NOT_FOUND, f"no route for {request.method} {request.path}"))

    claims: Optional[Claims] = None
    if match.entry.auth == AuthRequirement.REQUIRED:
        if not auth.ok:
            return StageResult.failure(auth.error)
        claims = auth.value

    target = health.pick(match.entry)
    if target is None:
        return StageResult.failure(RouteError(RouteError.UNAVAILABLE, f"{match.entry.service} has no healthy target"))
    return StageResult.success(Dispatch(match=match, target=target, claims=claims))


def outbound_headers(request: GatewayRequest, dispatch: Dispatch, correlation_id: str) -> Dict[str, str]:
    headers = {k: v for k, v in request.headers.items() if k not in HOP_BY_HOP_HEADERS}
    # Only the gateway vouches for the subject.
    headers.pop(SUBJECT_HEADER, None)
    if dispatch.match.entry.auth == AuthRequirement.NONE:
        headers.pop("authorization", None)
    elif dispatch.claims is not None:
        headers[SUBJECT_HEADER] = dispatch.claims.subject
    headers[CORRELATION_HEADER] = correlation_id
    return headers


async def forward(
    client: httpx.AsyncClient,
    health: TargetHealth,
    request: GatewayRequest,
    dispatch: Dispatch,
    correlation_id: str,
    *,
    timeout_seconds: float,
) -> StageResult[GatewayResponse]:
    service = dispatch.match.entry.service
    url = dispatch.target + request.path + (f"?{request.query}" if request.query else "")
    try:
        resp = await client.request(
            request.method,
            url,
            headers=outbound_headers(request, dispatch, correlation_id),
            content=request.body or None,
            timeout=timeout_seconds,
        )
    except httpx.TimeoutException:
        return StageResult.failure(ForwardError(f"{service} did not respond in time", status_code=504))
    except httpx.TransportError:
        health.mark_unhealthy(dispatch.target)
        return StageResult.failure(ForwardError(f"{service} unreachable", status_code=502))

    health.mark_healthy(dispatch.target)
    if resp.status_code >= 400:
        # The downstream body is dropped; clients only see the uniform envelope.
        return StageResult.failure(
            DownstreamError(f"{service} responded with status {resp.status_code}", status_code=resp.status_code)
        )

    headers = {
        k.lower(): v
        for k, v in resp.headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "content-encoding"
    }
    headers[CORRELATION_HEADER] = correlation_id
    return StageResult.success(GatewayResponse(status_code=resp.status_code, headers=headers, body=resp.content))


class GatewayPipeline:
    """Composes the stages; the only code path from client to services."""

    def __init__(
        self,
        routes: RouteTable,
        verifier: CredentialVerifier,
        client: httpx.AsyncClient,
        *,
        health: Optional[TargetHealth] = None,
        normalize: Callable[[BaseException, str], ErrorEnvelope] = normalize_error,
        forward_timeout_seconds: float = 10.0,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self.routes = routes
        self.verifier = verifier
        self.client = client
        self.health = health or TargetHealth()
        self.forward_timeout_seconds = forward_timeout_seconds
        self._normalize = normalize
        self._event_log = event_log or LoggingEventLog(__name__)

    async def dispatch(self, request: GatewayRequest) -> GatewayResponse:
        correlation_id = request.headers.get(CORRELATION_HEADER) or new_correlation_id()
        try:
            auth = authenticate(request, self.verifier)
            routed = authorize_route(self.routes, self.health, request, auth)
            if not routed.ok:
                return self._fail(routed.error, request, correlation_id)
            forwarded = await forward(
                self.client,
                self.health,
                request,
                routed.value,
                correlation_id,
                timeout_seconds=self.forward_timeout_seconds,
            )
            if not forwarded.ok:
                return self._fail(forwarded.error, request, correlation_id)
        except Exception as e:
            self._event_log.log("gateway_unexpected_error", level=logging.ERROR, correlation_id=correlation_id, error=repr(e))
            return self._fail(e, request, correlation_id)

        self._event_log.log(
            "gateway_forwarded",
            method=request.method,
            path=request.path,
            service=routed.value.match.entry.service,
            status=forwarded.value.status_code,
            correlation_id=correlation_id,
        )
        return forwarded.value

    def _fail(self, error: BaseException, request: GatewayRequest, correlation_id: str) -> GatewayResponse:
        envelope = self._normalize(error, correlation_id)
        self._event_log.log(
            "gateway_request_failed",
            level=logging.ERROR if envelope.status_code >= 500 else logging.WARNING,
            method=request.method,
            path=request.path,
            kind=envelope.kind,
            status=envelope.status_code,
            correlation_id=correlation_id,
        )
        headers = {"content-type": "application/json", CORRELATION_HEADER: correlation_id}
        if envelope.status_code == 401:
            headers["www-authenticate"] = "Bearer"
        return GatewayResponse(status_code=envelope.status_code, headers=headers, body=envelope.to_bytes())
