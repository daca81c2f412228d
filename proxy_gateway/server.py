import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from proxy_gateway.config import Settings
from proxy_gateway.errors import (
    INTERNAL_ERROR_MESSAGE,
    error_response,
    log_exception_with_details,
)
from proxy_gateway.forwarder import Forwarder
from proxy_gateway.gates import RateLimiter, build_gate_chain
from proxy_gateway.lifecycle import InFlightMiddleware, Lifecycle
from proxy_gateway.metrics import GatewayMetrics
from proxy_gateway.models import HealthResponse, ReadyResponse
from proxy_gateway.pipeline import ProxyPipeline
from proxy_gateway.router import build_router
from proxy_gateway.tracing import configure_tracing
from proxy_gateway.vars import (
    DRAIN_GRACE_SECONDS,
    METRICS_PATH,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
)

logger = logging.getLogger("uvicorn.error")


def drain_deadline(settings: Settings) -> float:
    return settings.forward_timeout + DRAIN_GRACE_SECONDS


def create_app(
    settings: Settings,
    *,
    lifecycle: Optional[Lifecycle] = None,
    rate_limiter: Optional[RateLimiter] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    metrics_path: str = METRICS_PATH,
) -> FastAPI:
    """
    Build the gateway application for validated ``settings``.

    ``rate_limiter`` and ``transport`` are injection points for tests; in
    production both are created from ``settings``.
    """
    lifecycle = lifecycle or Lifecycle()
    forwarder = Forwarder(
        settings.forward_timeout,
        trust_proxy_headers=settings.trust_proxy_headers,
        strip_headers=(settings.api_key_header,) if settings.api_key else (),
        transport=transport,
    )
    metrics = GatewayMetrics(SERVICE_NAME)
    pipeline = ProxyPipeline(
        build_gate_chain(settings, rate_limiter),
        build_router(settings),
        forwarder,
        trust_proxy_headers=settings.trust_proxy_headers,
        metrics=metrics,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        lifecycle.mark_listening(
            port=settings.port,
            mode=settings.mode.value,
            target=settings.target_description,
        )
        try:
            yield
        finally:
            await lifecycle.stop(drain_deadline(settings))
            await forwarder.aclose()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.lifecycle = lifecycle
    app.state.pipeline = pipeline
    app.state.metrics = metrics

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        InFlightMiddleware,
        lifecycle=lifecycle,
        exempt_paths=[p for p in ("/health", "/ready", metrics_path) if p],
    )

    if metrics_path:
        Instrumentator(registry=metrics.registry).instrument(app).expose(
            app, endpoint=metrics_path, include_in_schema=False
        )

    configure_tracing(app, SERVICE_NAME, OTLP_ENDPOINT, OTLP_HEADERS)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """Last resort: no stack trace or exception text ever reaches the client."""
        log_exception_with_details(
            logger, "[Server]", exc, method=request.method, path=request.url.path
        )
        return error_response(500, INTERNAL_ERROR_MESSAGE)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="ok", mode=settings.mode.value, uptime=round(lifecycle.uptime, 3)
        )

    @app.get("/ready", response_model=ReadyResponse)
    async def ready():
        body = ReadyResponse(ready=lifecycle.accepting, state=lifecycle.state.value)
        return JSONResponse(
            status_code=200 if body.ready else 503, content=body.model_dump()
        )

    async def proxy_all(request: Request):
        """Catch-all route that sends every other request through the pipeline."""
        return await pipeline.handle(request)

    # plain Starlette route: methods=None matches any method, WebDAV verbs included
    app.add_route("/{path:path}", proxy_all, methods=None, include_in_schema=False)

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        await pipeline.handle_websocket(websocket)

    return app
