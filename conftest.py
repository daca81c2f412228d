# Make `import proxy_gateway` work without installing the package.
import os
import sys

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

import httpx  # noqa: E402
import pytest  # noqa: E402

from proxy_gateway.config import ProxyMode, Settings  # noqa: E402

UPSTREAM = "http://upstream.internal:8080"


class FakeClock:
    """Manually advanced clock for rate limiter and lifecycle tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        values = {"mode": ProxyMode.REVERSE, "upstream_url": UPSTREAM}
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def upstream_calls():
    return []


@pytest.fixture
def echo_transport(upstream_calls):
    """MockTransport that records every upstream request and echoes it back as JSON."""

    def handler(request: httpx.Request) -> httpx.Response:
        upstream_calls.append(request)
        return httpx.Response(
            200,
            json={
                "method": request.method,
                "url": str(request.url),
                "body": request.content.decode("utf-8", "replace"),
            },
        )

    return httpx.MockTransport(handler)


@pytest.fixture
def request_factory():
    """Build a Starlette Request with an in-memory body stream."""
    from starlette.requests import Request

    def _make(
        method="GET",
        path="/",
        query_string=b"",
        headers=None,
        body_chunks=(b"",),
        client=("203.0.113.7", 50000),
    ) -> Request:
        raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in (headers or {}).items()
        ]
        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "scheme": "http",
            "path": path,
            "raw_path": path.encode("latin-1"),
            "query_string": query_string,
            "root_path": "",
            "headers": raw_headers,
            "client": client,
            "server": ("gateway.local", 8080),
        }
        chunks = list(body_chunks)

        async def receive():
            if chunks:
                chunk = chunks.pop(0)
                return {"type": "http.request", "body": chunk, "more_body": bool(chunks)}
            return {"type": "http.disconnect"}

        return Request(scope, receive)

    return _make
