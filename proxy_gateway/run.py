"""
Process entry point.

Usage:
    python -m proxy_gateway
    proxy-gateway

Configuration is validated before anything binds a socket; an invalid
configuration exits with status 1. A server that never starts (the socket
cannot be bound, or the lifespan startup fails) exits with status 3.
"""

import logging
import sys

import uvicorn

from proxy_gateway.config import ConfigurationError, Settings
from proxy_gateway.lifecycle import GatewayServer, Lifecycle
from proxy_gateway.logging_config import configure_logging, log_fields
from proxy_gateway.server import create_app, drain_deadline

logger = logging.getLogger("uvicorn.error")

# Uvicorn hardening: bounded backlog and a short keep-alive window
UVICORN_BACKLOG = 2048
UVICORN_TIMEOUT_KEEP_ALIVE = 5

STARTUP_FAILURE = 3


def build_server(settings: Settings) -> GatewayServer:
    lifecycle = Lifecycle()
    app = create_app(settings, lifecycle=lifecycle)
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        proxy_headers=False,
        server_header=False,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
        timeout_graceful_shutdown=int(drain_deadline(settings)) + 1,
    )
    return GatewayServer(config, lifecycle)


def main() -> None:
    configure_logging()
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        logger.critical(
            f"[Startup] Invalid configuration: {e}",
            extra=log_fields(error=str(e)),
        )
        sys.exit(1)

    logger.info(
        f"[Startup] Starting gateway in {settings.mode.value} mode on port {settings.port}",
        extra=log_fields(
            port=settings.port,
            mode=settings.mode.value,
            target=settings.target_description,
        ),
    )
    server = build_server(settings)
    try:
        server.run()
    except SystemExit:
        # uvicorn exits with 1 itself when the socket cannot be bound
        if server.started:
            raise
    if not server.started:
        logger.critical(
            "[Startup] Gateway failed to start",
            extra=log_fields(host=settings.host, port=settings.port),
        )
        sys.exit(STARTUP_FAILURE)


if __name__ == "__main__":
    main()
