import asyncio
import logging
from typing import AsyncIterator, Iterable, List, Optional, Tuple

import httpx
import websockets
from fastapi.responses import StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from websockets.exceptions import ConnectionClosed, WebSocketException

from proxy_gateway.errors import (
    ForwardingTimeout,
    ForwardingTransportError,
    ModeResolutionError,
)
from proxy_gateway.gates.base import RequestContext
from proxy_gateway.logging_config import log_fields

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 7230 section 6.1)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# The handshake is redone by the websocket client for the upstream leg
WEBSOCKET_HANDSHAKE_HEADERS = {
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
}

WS_CLOSE_POLICY_VIOLATION = 1008
WS_CLOSE_INTERNAL_ERROR = 1011
# observable in a close event but never valid to send
RESERVED_CLOSE_CODES = {1005, 1006, 1015}


def prepare_headers(
    context: RequestContext,
    trust_proxy_headers: bool = False,
    strip: Iterable[str] = (),
) -> List[Tuple[str, str]]:
    """
    Prepare headers for forwarding to the target.

    Drops hop-by-hop headers and ``host`` (the client sets it from the target
    URL) and adds the X-Forwarded-* family.
    """
    connection = context.connection
    excluded = HOP_BY_HOP_HEADERS | {"host"} | {h.lower() for h in strip}
    forwarded_names = {"x-forwarded-for", "x-forwarded-host", "x-forwarded-proto", "x-real-ip"}

    # connection-specific headers named in the Connection header are hop-by-hop too
    for token in connection.headers.get("connection", "").split(","):
        if token.strip():
            excluded.add(token.strip().lower())

    headers = [
        (name, value)
        for name, value in connection.headers.items()
        if name.lower() not in excluded and name.lower() not in forwarded_names
    ]

    peer = connection.client.host if connection.client else context.client_ip
    existing_xff = connection.headers.get("x-forwarded-for", "")
    if trust_proxy_headers and existing_xff:
        forwarded_for = f"{existing_xff}, {peer}"
    else:
        forwarded_for = context.client_ip

    scheme = connection.url.scheme
    if scheme in ("ws", "wss"):
        scheme = "https" if scheme == "wss" else "http"
    headers.append(("x-forwarded-for", forwarded_for))
    headers.append(("x-forwarded-host", connection.headers.get("host", "")))
    headers.append(("x-forwarded-proto", scheme))
    headers.append(("x-real-ip", context.client_ip))
    return headers


def filter_response_headers(headers: httpx.Headers) -> List[Tuple[str, str]]:
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]


class Forwarder:
    """
    Relays admitted requests to their resolved target.

    Holds one ``httpx.AsyncClient`` for the lifetime of the app. Tests inject
    a transport (e.g. ``httpx.MockTransport``) instead of a network.
    """

    def __init__(
        self,
        timeout: float,
        trust_proxy_headers: bool = False,
        strip_headers: Iterable[str] = (),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.trust_proxy_headers = trust_proxy_headers
        self.strip_headers = tuple(strip_headers)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def forward(self, context: RequestContext, target_url: str) -> StreamingResponse:
        """
        Send the request to ``target_url`` and stream the response back.

        Raises ``ForwardingTimeout`` when the target does not produce response
        headers within the timeout and ``ForwardingTransportError`` for any
        other transport failure. Nothing is retried.
        """
        with tracer.start_as_current_span("proxy_request") as span:
            span.set_attribute("proxy.target_url", target_url)
            span.set_attribute("proxy.method", context.method)

            logger.debug(f"[Forwarder] Proxying {context.method} {context.path} -> {target_url}")

            headers = prepare_headers(context, self.trust_proxy_headers, self.strip_headers)
            if context.body is not None:
                content = context.body
            else:
                content = context.connection.stream()

            try:
                request = self.client.build_request(
                    context.method, target_url, headers=headers, content=content
                )
            except httpx.InvalidURL as e:
                span.set_attribute("proxy.error", "invalid_url")
                raise ModeResolutionError("Invalid target URL", detail=str(e)) from e

            try:
                upstream = await asyncio.wait_for(
                    self.client.send(request, stream=True), timeout=self.timeout
                )
            except (httpx.TimeoutException, asyncio.TimeoutError) as e:
                span.set_attribute("proxy.error", "timeout")
                raise ForwardingTimeout(
                    detail=f"no response from {target_url} within {self.timeout}s"
                ) from e
            except httpx.TransportError as e:
                span.set_attribute("proxy.error", "transport")
                raise ForwardingTransportError(
                    detail=f"{type(e).__name__} for {target_url}: {e}"
                ) from e

            span.set_attribute("proxy.status_code", upstream.status_code)

            response = StreamingResponse(
                self._relay_body(upstream, target_url),
                status_code=upstream.status_code,
                background=BackgroundTask(upstream.aclose),
            )
            # raw_headers keeps repeated headers such as Set-Cookie intact
            response.raw_headers = [
                (name.encode("latin-1"), value.encode("latin-1"))
                for name, value in filter_response_headers(upstream.headers)
            ]
            return response

    async def _relay_body(self, upstream: httpx.Response, target_url: str) -> AsyncIterator[bytes]:
        """Relay the raw (still encoded) body so upstream headers stay truthful."""
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.TransportError as e:
            # headers are already on the wire, so the client just sees a truncated body
            logger.error(
                f"[Forwarder] Upstream stream from {target_url} failed: {type(e).__name__}: {e}",
                extra=log_fields(target=target_url, error=type(e).__name__),
            )
        finally:
            await upstream.aclose()

    async def relay_websocket(
        self, websocket: WebSocket, context: RequestContext, target_url: str
    ) -> None:
        """Open the upstream WebSocket and pump frames both ways until either side closes."""
        headers = prepare_headers(
            context,
            self.trust_proxy_headers,
            tuple(self.strip_headers) + tuple(WEBSOCKET_HANDSHAKE_HEADERS),
        )
        subprotocols = websocket.scope.get("subprotocols") or None

        with tracer.start_as_current_span("proxy_websocket") as span:
            span.set_attribute("proxy.target_url", target_url)
            try:
                async with websockets.connect(
                    target_url,
                    additional_headers=headers,
                    subprotocols=subprotocols,
                    open_timeout=self.timeout,
                ) as upstream:
                    await websocket.accept(subprotocol=upstream.subprotocol)
                    await self._pump_websocket(websocket, upstream)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                span.set_attribute("proxy.error", type(e).__name__)
                logger.error(
                    f"[Forwarder] WebSocket proxy to {target_url} failed: {type(e).__name__}: {e}",
                    extra=log_fields(
                        target=target_url, client_ip=context.client_ip, error=type(e).__name__
                    ),
                )
                if websocket.client_state != WebSocketState.DISCONNECTED:
                    await websocket.close(code=WS_CLOSE_INTERNAL_ERROR)

    async def _pump_websocket(self, websocket: WebSocket, upstream) -> None:
        async def client_to_upstream():
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])

        async def upstream_to_client():
            try:
                async for message in upstream:
                    if isinstance(message, str):
                        await websocket.send_text(message)
                    else:
                        await websocket.send_bytes(message)
            except ConnectionClosed:
                pass

        tasks = [
            asyncio.create_task(client_to_upstream()),
            asyncio.create_task(upstream_to_client()),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, (ConnectionClosed, WebSocketDisconnect)):
                raise error

        if websocket.client_state == WebSocketState.CONNECTED:
            code = upstream.close_code
            if code is None or code in RESERVED_CLOSE_CODES:
                code = 1000
            await websocket.close(code=code)
