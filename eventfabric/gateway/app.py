from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response

from eventfabric.core.settings import Settings, load_settings

from .auth import JwtVerifier
from .pipeline import GatewayPipeline, GatewayRequest
from .routes import RouteTable, TargetHealth

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def build_pipeline(s: Settings, client: httpx.AsyncClient) -> GatewayPipeline:
    routes = RouteTable.from_yaml(s.gateway.routes_path)
    logger.info(f"Loaded {len(routes.entries)} routes from {s.gateway.routes_path}")
    return GatewayPipeline(
        routes,
        JwtVerifier(s.gateway.jwt_secret, algorithms=s.gateway.jwt_algorithms),
        client,
        health=TargetHealth(cooldown_seconds=s.gateway.unhealthy_cooldown_seconds),
        forward_timeout_seconds=s.gateway.forward_timeout_seconds,
    )


def create_app(pipeline: GatewayPipeline, *, close_client: bool = False) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if close_client:
            await pipeline.client.aclose()

    app = FastAPI(title="eventfabric gateway", lifespan=lifespan)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "routes": len(pipeline.routes.entries)}

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def dispatch(request: Request, path: str) -> Response:
        gw_request = GatewayRequest(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            body=await request.body(),
            query=request.url.query,
        )
        resp = await pipeline.dispatch(gw_request)
        return Response(content=resp.body, status_code=resp.status_code, headers=resp.headers)

    return app


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    s = load_settings()
    logger.info("Starting gateway...")
    client = httpx.AsyncClient(timeout=s.gateway.forward_timeout_seconds)
    app = create_app(build_pipeline(s, client), close_client=True)
    uvicorn.run(app, host="0.0.0.0", port=s.port_for("gateway", 8000))


if __name__ == "__main__":
    main()
