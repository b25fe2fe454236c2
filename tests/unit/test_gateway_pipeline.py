from __future__ import annotations

import asyncio
import json
import time

import httpx
import jwt
import pytest

from eventfabric.core.errors import AuthError, ForwardError, RouteError
from eventfabric.gateway.auth import JwtVerifier
from eventfabric.gateway.errors import normalize_error
from eventfabric.gateway.pipeline import (
    CORRELATION_HEADER,
    SUBJECT_HEADER,
    GatewayPipeline,
    GatewayRequest,
    StageResult,
    authenticate,
    authorize_route,
)
from eventfabric.gateway.routes import RouteTable, TargetHealth


SECRET = "unit-test-secret-of-at-least-32-bytes"

ROUTES = RouteTable.from_dicts([
    {"method": "GET", "path": "/api/posts/{post_id}", "service": "posts-service", "targets": ["http://posts"], "auth": "none"},
    {"method": "POST", "path": "/api/posts", "service": "posts-service", "targets": ["http://posts"], "auth": "required"},
    {"method": "GET", "path": "/api/media/{rest:path}", "service": "media-service", "targets": ["http://media"], "auth": "required"},
])


def _token(exp_offset: int = 300) -> str:
    return jwt.encode({"sub": "user-7", "exp": int(time.time()) + exp_offset}, SECRET, algorithm="HS256")


class Downstream:
    """httpx.MockTransport handler that records requests."""

    def __init__(self, respond=None) -> None:
        self.requests: list[httpx.Request] = []
        self._respond = respond or (lambda req: httpx.Response(200, json={"ok": True}))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._respond(request)


def _pipeline(downstream: Downstream, health: TargetHealth | None = None) -> GatewayPipeline:
    client = httpx.AsyncClient(transport=httpx.MockTransport(downstream))
    return GatewayPipeline(ROUTES, JwtVerifier(SECRET), client, health=health)


def _dispatch(pipeline: GatewayPipeline, request: GatewayRequest):
    return asyncio.run(pipeline.dispatch(request))


def _body(resp) -> dict:
    return json.loads(resp.body)


def test_authenticated_request_is_forwarded_with_subject_and_correlation() -> None:
    downstream = Downstream(lambda req: httpx.Response(201, json={"post_id": "42"}))
    resp = _dispatch(
        _pipeline(downstream),
        GatewayRequest(
            "POST",
            "/api/posts",
            headers={"Authorization": f"Bearer {_token()}", "X-Correlation-ID": "corr-1", "Content-Type": "application/json"},
            body=b'{"content":"hello"}',
        ),
    )

    assert resp.status_code == 201
    assert _body(resp) == {"post_id": "42"}
    assert resp.headers[CORRELATION_HEADER] == "corr-1"
    sent = downstream.requests[0]
    assert str(sent.url) == "http://posts/api/posts"
    assert sent.headers[SUBJECT_HEADER] == "user-7"
    assert sent.headers[CORRELATION_HEADER] == "corr-1"
    assert sent.content == b'{"content":"hello"}'


def test_expired_credential_is_rejected_with_original_correlation_id() -> None:
    downstream = Downstream()
    resp = _dispatch(
        _pipeline(downstream),
        GatewayRequest("POST", "/api/posts", headers={"authorization": f"Bearer {_token(-60)}", "x-correlation-id": "corr-exp"}),
    )

    assert resp.status_code == 401
    assert _body(resp) == {"kind": "AuthError", "message": "credential expired", "correlationId": "corr-exp"}
    assert resp.headers["www-authenticate"] == "Bearer"
    assert downstream.requests == []


def test_missing_credential_on_protected_route_is_401() -> None:
    resp = _dispatch(_pipeline(Downstream()), GatewayRequest("GET", "/api/media/posts/42"))
    assert resp.status_code == 401
    assert _body(resp)["kind"] == "AuthError"
    assert _body(resp)["correlationId"] == resp.headers[CORRELATION_HEADER]


def test_public_route_forwards_without_credential() -> None:
    downstream = Downstream()
    resp = _dispatch(
        _pipeline(downstream),
        GatewayRequest("GET", "/api/posts/42", headers={"x-authenticated-subject": "spoofed"}, query="fields=all"),
    )

    assert resp.status_code == 200
    sent = downstream.requests[0]
    assert str(sent.url) == "http://posts/api/posts/42?fields=all"
    assert SUBJECT_HEADER not in sent.headers
    assert sent.headers[CORRELATION_HEADER]


def test_public_route_ignores_bad_credential_and_strips_it() -> None:
    downstream = Downstream()
    resp = _dispatch(
        _pipeline(downstream),
        GatewayRequest("GET", "/api/posts/42", headers={"authorization": "Bearer garbage"}),
    )
    assert resp.status_code == 200
    assert "authorization" not in downstream.requests[0].headers


def test_unknown_route_is_404_even_without_credential() -> None:
    resp = _dispatch(_pipeline(Downstream()), GatewayRequest("GET", "/api/nope"))
    assert resp.status_code == 404
    assert _body(resp)["kind"] == "RouteError"


def test_no_healthy_target_is_503() -> None:
    health = TargetHealth(cooldown_seconds=60)
    health.mark_unhealthy("http://posts")
    resp = _dispatch(_pipeline(Downstream(), health), GatewayRequest("GET", "/api/posts/42"))
    assert resp.status_code == 503
    assert _body(resp)["kind"] == "RouteError"


def test_downstream_error_is_normalized_and_body_dropped() -> None:
    downstream = Downstream(lambda req: httpx.Response(404, json={"detail": "post not found", "stack": "secret"}))
    resp = _dispatch(_pipeline(downstream), GatewayRequest("GET", "/api/posts/42", headers={"x-correlation-id": "c"}))

    assert resp.status_code == 404
    body = _body(resp)
    assert body["kind"] == "DownstreamError"
    assert body["correlationId"] == "c"
    assert "secret" not in resp.body.decode()


def test_downstream_timeout_is_504() -> None:
    def respond(req):
        raise httpx.ReadTimeout("timed out", request=req)

    resp = _dispatch(_pipeline(Downstream(respond)), GatewayRequest("GET", "/api/posts/42"))
    assert resp.status_code == 504
    assert _body(resp)["kind"] == "ForwardError"


def test_unreachable_target_is_502_and_marked_unhealthy() -> None:
    def respond(req):
        raise httpx.ConnectError("connection refused", request=req)

    health = TargetHealth(cooldown_seconds=60)
    pipeline = _pipeline(Downstream(respond), health)

    first = _dispatch(pipeline, GatewayRequest("GET", "/api/posts/42"))
    second = _dispatch(pipeline, GatewayRequest("GET", "/api/posts/42"))

    assert first.status_code == 502
    assert second.status_code == 503


def test_unexpected_exception_becomes_internal_error() -> None:
    def respond(req):
        raise RuntimeError("database password is hunter2")

    resp = _dispatch(_pipeline(Downstream(respond)), GatewayRequest("GET", "/api/posts/42"))
    assert resp.status_code == 500
    body = _body(resp)
    assert body["kind"] == "InternalError"
    assert "hunter2" not in body["message"]


# -- individual stages ------------------------------------------------------


def test_authenticate_reports_missing_credential() -> None:
    result = authenticate(GatewayRequest("GET", "/"), JwtVerifier(SECRET))
    assert not result.ok
    assert result.error.reason == AuthError.MISSING


def test_authorize_route_passes_claims_on_protected_route() -> None:
    auth = authenticate(GatewayRequest("GET", "/", headers={"authorization": f"Bearer {_token()}"}), JwtVerifier(SECRET))
    routed = authorize_route(ROUTES, TargetHealth(), GatewayRequest("GET", "/api/media/items/m-1"), auth)
    assert routed.ok
    assert routed.value.claims.subject == "user-7"
    assert routed.value.match.params == {"rest": "items/m-1"}
    assert routed.value.target == "http://media"


def test_authorize_route_drops_claims_on_public_route() -> None:
    routed = authorize_route(ROUTES, TargetHealth(), GatewayRequest("GET", "/api/posts/1"), StageResult.failure(AuthError(AuthError.MISSING)))
    assert routed.ok
    assert routed.value.claims is None


@pytest.mark.parametrize(
    "error, status, kind",
    [
        (AuthError(AuthError.INVALID), 401, "AuthError"),
        (RouteError(RouteError.NOT_FOUND), 404, "RouteError"),
        (RouteError(RouteError.UNAVAILABLE), 503, "RouteError"),
        (ForwardError("slow", status_code=504), 504, "ForwardError"),
        (KeyError("x"), 500, "InternalError"),
    ],
)
def test_normalize_error_maps_kinds_and_statuses(error, status, kind) -> None:
    env = normalize_error(error, "corr")
    assert (env.status_code, env.kind, env.correlation_id) == (status, kind, "corr")
    assert set(env.to_dict()) == {"kind", "message", "correlationId"}
