import asyncio
import signal
from unittest.mock import patch

import pytest
import uvicorn

from proxy_gateway.errors import ServiceDraining
from proxy_gateway.lifecycle import (
    GatewayServer,
    InFlightMiddleware,
    InvalidTransition,
    Lifecycle,
    LifecycleState,
)


@pytest.fixture
def lifecycle(clock):
    return Lifecycle(clock=clock)


class TestTransitions:
    def test_starts_in_starting(self, lifecycle):
        assert lifecycle.state is LifecycleState.STARTING
        assert not lifecycle.accepting

    def test_forward_only(self, lifecycle):
        lifecycle.mark_listening()
        assert lifecycle.accepting

        lifecycle.begin_drain()
        assert lifecycle.state is LifecycleState.DRAINING
        assert not lifecycle.accepting

        with pytest.raises(InvalidTransition):
            lifecycle.mark_listening()

    def test_begin_drain_is_idempotent(self, lifecycle):
        lifecycle.mark_listening()
        lifecycle.begin_drain()
        lifecycle.begin_drain()
        assert lifecycle.state is LifecycleState.DRAINING

    @pytest.mark.asyncio
    async def test_drain_after_stop_is_ignored(self, lifecycle):
        lifecycle.mark_listening()
        await lifecycle.stop(deadline=0.1)
        lifecycle.begin_drain()
        assert lifecycle.state is LifecycleState.STOPPED

    def test_uptime(self, lifecycle, clock):
        clock.advance(12.5)
        assert lifecycle.uptime == 12.5


class TestTracking:
    @pytest.mark.asyncio
    async def test_rejects_before_listening(self, lifecycle):
        with pytest.raises(ServiceDraining):
            async with lifecycle.track():
                pass

    @pytest.mark.asyncio
    async def test_counts_in_flight(self, lifecycle):
        lifecycle.mark_listening()
        async with lifecycle.track():
            async with lifecycle.track():
                assert lifecycle.in_flight == 2
            assert lifecycle.in_flight == 1
        assert lifecycle.in_flight == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self, lifecycle):
        lifecycle.mark_listening()
        with pytest.raises(ValueError):
            async with lifecycle.track():
                raise ValueError("handler failed")
        assert lifecycle.in_flight == 0

    @pytest.mark.asyncio
    async def test_drain_refuses_new_and_waits_for_in_flight(self, lifecycle):
        lifecycle.mark_listening()
        release = asyncio.Event()
        entered = asyncio.Event()

        async def in_flight_request():
            async with lifecycle.track():
                entered.set()
                await release.wait()

        task = asyncio.create_task(in_flight_request())
        await entered.wait()

        lifecycle.begin_drain()
        with pytest.raises(ServiceDraining):
            async with lifecycle.track():
                pass

        stop = asyncio.create_task(lifecycle.stop(deadline=5))
        await asyncio.sleep(0)
        assert lifecycle.state is LifecycleState.DRAINING

        release.set()
        abandoned = await stop
        await task

        assert abandoned == 0
        assert lifecycle.state is LifecycleState.STOPPED

    @pytest.mark.asyncio
    async def test_deadline_abandons_stuck_requests(self, lifecycle):
        lifecycle.mark_listening()
        stuck = asyncio.Event()
        entered = asyncio.Event()

        async def stuck_request():
            async with lifecycle.track():
                entered.set()
                await stuck.wait()

        task = asyncio.create_task(stuck_request())
        await entered.wait()

        abandoned = await lifecycle.stop(deadline=0.05)

        assert abandoned == 1
        assert lifecycle.state is LifecycleState.STOPPED
        task.cancel()


class TestInFlightMiddleware:
    @staticmethod
    async def _call(middleware, scope):
        sent = []

        async def receive():
            return {"type": "http.request", "body": b"", "more_body": False}

        async def send(message):
            sent.append(message)

        await middleware(scope, receive, send)
        return sent

    @pytest.mark.asyncio
    async def test_passes_through_while_listening(self, lifecycle):
        lifecycle.mark_listening()
        seen = []

        async def app(scope, receive, send):
            seen.append(lifecycle.in_flight)

        await self._call(InFlightMiddleware(app, lifecycle), {"type": "http", "path": "/x"})

        assert seen == [1]
        assert lifecycle.in_flight == 0

    @pytest.mark.asyncio
    async def test_draining_http_gets_503(self, lifecycle):
        lifecycle.mark_listening()
        lifecycle.begin_drain()

        async def app(scope, receive, send):
            raise AssertionError("app must not be called")

        sent = await self._call(
            InFlightMiddleware(app, lifecycle),
            {"type": "http", "path": "/x", "method": "GET", "headers": []},
        )

        assert sent[0]["status"] == 503
        assert (b"connection", b"close") in sent[0]["headers"]
        assert b"shutting down" in sent[1]["body"]

    @pytest.mark.asyncio
    async def test_draining_websocket_is_closed(self, lifecycle):
        lifecycle.mark_listening()
        lifecycle.begin_drain()

        async def app(scope, receive, send):
            raise AssertionError("app must not be called")

        sent = await self._call(
            InFlightMiddleware(app, lifecycle), {"type": "websocket", "path": "/ws"}
        )

        assert sent == [
            {"type": "websocket.close", "code": 1001, "reason": "Server is shutting down"}
        ]

    @pytest.mark.asyncio
    async def test_exempt_paths_are_not_tracked(self, lifecycle):
        lifecycle.mark_listening()
        lifecycle.begin_drain()
        called = []

        async def app(scope, receive, send):
            called.append(scope["path"])

        middleware = InFlightMiddleware(app, lifecycle, exempt_paths=["/ready"])
        await self._call(middleware, {"type": "http", "path": "/ready"})

        assert called == ["/ready"]

    @pytest.mark.asyncio
    async def test_lifespan_scope_passes_through(self, lifecycle):
        called = []

        async def app(scope, receive, send):
            called.append(scope["type"])

        await self._call(InFlightMiddleware(app, lifecycle), {"type": "lifespan"})

        assert called == ["lifespan"]


def test_server_exit_signal_begins_drain(lifecycle):
    async def app(scope, receive, send):
        pass

    lifecycle.mark_listening()
    server = GatewayServer(uvicorn.Config(app, log_config=None), lifecycle)

    with patch.object(uvicorn.Server, "handle_exit") as parent_handle_exit:
        server.handle_exit(signal.SIGTERM, None)

    assert lifecycle.state is LifecycleState.DRAINING
    parent_handle_exit.assert_called_once_with(signal.SIGTERM, None)
