"""
Process lifecycle: STARTING -> LISTENING -> DRAINING -> STOPPED.

Transitions only move forward. Draining begins when the server receives a
termination signal: the listener stops accepting connections, requests that
are already in the pipeline are allowed to finish, and the drain is bounded
by a deadline derived from the forward timeout.
"""

import asyncio
import enum
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Iterable, Optional

import uvicorn
from starlette.types import ASGIApp, Receive, Scope, Send

from proxy_gateway.errors import ServiceDraining, error_response
from proxy_gateway.logging_config import log_fields

logger = logging.getLogger("uvicorn.error")


class LifecycleState(str, enum.Enum):
    STARTING = "starting"
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


_ORDER = [
    LifecycleState.STARTING,
    LifecycleState.LISTENING,
    LifecycleState.DRAINING,
    LifecycleState.STOPPED,
]


class InvalidTransition(RuntimeError):
    pass


class Lifecycle:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.state = LifecycleState.STARTING
        self.started_at = clock()
        self._in_flight = 0
        self._idle: Optional[asyncio.Event] = None

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def uptime(self) -> float:
        return self._clock() - self.started_at

    @property
    def accepting(self) -> bool:
        return self.state is LifecycleState.LISTENING

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            if self._in_flight == 0:
                self._idle.set()
        return self._idle

    def _transition(self, target: LifecycleState) -> bool:
        current = _ORDER.index(self.state)
        wanted = _ORDER.index(target)
        if wanted == current:
            return False
        if wanted < current:
            raise InvalidTransition(f"Cannot move from {self.state.value} to {target.value}")
        self.state = target
        return True

    def mark_listening(self, **fields) -> None:
        if self._transition(LifecycleState.LISTENING):
            logger.info("[Lifecycle] Gateway listening", extra=log_fields(**fields))

    def begin_drain(self) -> None:
        """Stop admitting new requests. Idempotent."""
        if self.state is LifecycleState.STOPPED:
            return
        if self._transition(LifecycleState.DRAINING):
            logger.info(
                f"[Lifecycle] Draining, waiting for {self._in_flight} in-flight request(s)",
                extra=log_fields(in_flight=self._in_flight),
            )

    @asynccontextmanager
    async def track(self) -> AsyncIterator[None]:
        """
        Count a request as in flight for the duration of the block.

        Raises ``ServiceDraining`` when the gateway no longer admits work.
        """
        if not self.accepting:
            raise ServiceDraining()
        self._in_flight += 1
        self._idle_event().clear()
        try:
            yield
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle_event().set()

    async def wait_drained(self, deadline: float) -> int:
        """
        Wait up to ``deadline`` seconds for in-flight requests to finish.

        Returns the number of requests still in flight when the wait ended.
        """
        try:
            await asyncio.wait_for(self._idle_event().wait(), timeout=deadline)
        except asyncio.TimeoutError:
            pass
        return self._in_flight

    async def stop(self, deadline: float) -> int:
        self.begin_drain()
        abandoned = await self.wait_drained(deadline)
        if self._transition(LifecycleState.STOPPED):
            logger.info(
                "[Lifecycle] Gateway stopped",
                extra=log_fields(abandoned=abandoned, uptime=round(self.uptime, 3)),
            )
        return abandoned


class GatewayServer(uvicorn.Server):
    """uvicorn server that reports termination signals to the lifecycle."""

    def __init__(self, config: uvicorn.Config, lifecycle: Lifecycle):
        super().__init__(config)
        self.lifecycle = lifecycle

    def handle_exit(self, sig, frame) -> None:
        self.lifecycle.begin_drain()
        super().handle_exit(sig, frame)


class InFlightMiddleware:
    """
    ASGI middleware that counts every request, body streaming included, as in
    flight and turns work away once the gateway is draining.

    Health and readiness paths are exempt so orchestrators can still observe the drain.
    """

    def __init__(self, app: ASGIApp, lifecycle: Lifecycle, exempt_paths: Iterable[str] = ()):
        self.app = app
        self.lifecycle = lifecycle
        self.exempt_paths = frozenset(exempt_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket") or scope["path"] in self.exempt_paths:
            await self.app(scope, receive, send)
            return
        try:
            async with self.lifecycle.track():
                await self.app(scope, receive, send)
        except ServiceDraining as e:
            if scope["type"] == "websocket":
                await send({"type": "websocket.close", "code": 1001, "reason": e.message})
                return
            response = error_response(e.status_code, e.message, {"Connection": "close"})
            await response(scope, receive, send)
