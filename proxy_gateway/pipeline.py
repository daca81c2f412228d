"""
Request admission and forwarding pipeline.

    gate chain (fail-fast) -> router -> forwarder

Every per-request failure is converted here into a JSON error response;
nothing raised by a request is allowed to escape to the server.
"""

import logging
from typing import Mapping, Optional

from fastapi import Request, WebSocket
from fastapi.responses import Response
from starlette.websockets import WebSocketState

from proxy_gateway.errors import (
    INTERNAL_ERROR_MESSAGE,
    GatewayError,
    error_response,
    log_exception_with_details,
)
from proxy_gateway.forwarder import (
    WS_CLOSE_INTERNAL_ERROR,
    WS_CLOSE_POLICY_VIOLATION,
    Forwarder,
)
from proxy_gateway.gates import GateChain, Reject, RequestContext, resolve_client_ip
from proxy_gateway.logging_config import log_fields
from proxy_gateway.metrics import GatewayMetrics
from proxy_gateway.router import Router, to_websocket_url

logger = logging.getLogger("uvicorn.error")


def apply_cors_headers(response: Response, headers: Mapping[str, str]) -> None:
    """
    Set the gateway's CORS headers on ``response``.

    They replace any CORS headers from the upstream, except ``Vary``, which
    is merged so upstream values such as ``Accept-Encoding`` survive.
    """
    for name, value in headers.items():
        if name.lower() != "vary":
            response.headers[name] = value
            continue
        existing = response.headers.get("vary")
        tokens = {token.strip().lower() for token in (existing or "").split(",")}
        if value.lower() not in tokens and "*" not in tokens:
            response.headers.add_vary_header(value)


class ProxyPipeline:
    def __init__(
        self,
        gates: GateChain,
        router: Router,
        forwarder: Forwarder,
        trust_proxy_headers: bool = False,
        metrics: Optional[GatewayMetrics] = None,
    ):
        self.gates = gates
        self.router = router
        self.forwarder = forwarder
        self.trust_proxy_headers = trust_proxy_headers
        self.metrics = metrics

    def _record(self, outcome: str, status_code: int) -> None:
        if self.metrics is not None:
            self.metrics.record_outcome(outcome, status_code)

    async def handle(self, request: Request) -> Response:
        context = RequestContext(
            connection=request,
            client_ip=resolve_client_ip(request, self.trust_proxy_headers),
        )
        response = await self._run(context)
        apply_cors_headers(response, context.response_headers)
        return response

    async def _run(self, context: RequestContext) -> Response:
        try:
            result = await self.gates.run(context)
            if isinstance(result, Reject):
                self._record("rejected", result.status_code)
                return self._rejection_response(result)

            target_url = self.router.resolve(context.connection)
            response = await self.forwarder.forward(context, target_url)
            self._record("forwarded", response.status_code)
            logger.info(
                f"[Pipeline] {context.method} {context.path} -> {target_url} [{response.status_code}]",
                extra=log_fields(
                    client_ip=context.client_ip,
                    method=context.method,
                    path=context.path,
                    target=target_url,
                    status=response.status_code,
                ),
            )
            return response
        except GatewayError as e:
            self._record(e.outcome, e.status_code)
            level = logging.ERROR if e.status_code >= 500 else logging.WARNING
            logger.log(
                level,
                f"[Pipeline] {e.outcome}: {e.detail or e.message}",
                extra=log_fields(
                    client_ip=context.client_ip,
                    method=context.method,
                    path=context.path,
                    status=e.status_code,
                ),
            )
            return error_response(e.status_code, e.message)
        except Exception as e:
            self._record("internal_error", 500)
            log_exception_with_details(
                logger,
                "[Pipeline]",
                e,
                client_ip=context.client_ip,
                method=context.method,
                path=context.path,
            )
            return error_response(500, INTERNAL_ERROR_MESSAGE)

    @staticmethod
    def _rejection_response(result: Reject) -> Response:
        headers: Mapping[str, str] = result.headers
        if result.status_code < 400:
            return Response(status_code=result.status_code, headers=dict(headers))
        return error_response(result.status_code, result.reason, headers)

    async def handle_websocket(self, websocket: WebSocket) -> None:
        context = RequestContext(
            connection=websocket,
            client_ip=resolve_client_ip(websocket, self.trust_proxy_headers),
        )
        try:
            result = await self.gates.run(context)
            if isinstance(result, Reject):
                self._record("rejected", result.status_code)
                await websocket.close(code=WS_CLOSE_POLICY_VIOLATION, reason=result.reason)
                return
            if not self.router.supports_websocket:
                logger.warning(
                    "[Pipeline] WebSocket refused: not supported in forward mode",
                    extra=log_fields(client_ip=context.client_ip, path=context.path),
                )
                await websocket.close(
                    code=WS_CLOSE_POLICY_VIOLATION, reason="WebSocket not supported"
                )
                return
            target_url = to_websocket_url(self.router.resolve(websocket))
            self._record("forwarded", 101)
            await self.forwarder.relay_websocket(websocket, context, target_url)
        except Exception as e:
            self._record("internal_error", 500)
            log_exception_with_details(
                logger, "[Pipeline] WebSocket", e, client_ip=context.client_ip, path=context.path
            )
            if websocket.client_state != WebSocketState.DISCONNECTED:
                await websocket.close(code=WS_CLOSE_INTERNAL_ERROR)
