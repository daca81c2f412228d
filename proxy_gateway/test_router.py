import pytest

from proxy_gateway.config import ProxyMode
from proxy_gateway.errors import ModeResolutionError
from proxy_gateway.router import (
    DynamicRouter,
    StaticRouter,
    build_router,
    to_websocket_url,
)

UPSTREAM = "http://internal-app:8080"


class TestStaticRouter:
    def test_basic_path(self, request_factory):
        router = StaticRouter(UPSTREAM)
        assert router.resolve(request_factory(path="/api/users")) == f"{UPSTREAM}/api/users"

    def test_with_query_parameters(self, request_factory):
        request = request_factory(path="/api/search", query_string=b"q=test&limit=10")
        assert StaticRouter(UPSTREAM).resolve(request) == f"{UPSTREAM}/api/search?q=test&limit=10"

    def test_root_path(self, request_factory):
        assert StaticRouter(UPSTREAM + "/").resolve(request_factory(path="/")) == f"{UPSTREAM}/"

    def test_upstream_with_base_path(self, request_factory):
        router = StaticRouter("http://solr:8983/solr")
        request = request_factory(path="/core/select", query_string=b"q=*:*")
        assert router.resolve(request) == "http://solr:8983/solr/core/select?q=*:*"

    def test_percent_encoding_preserved(self, request_factory):
        request = request_factory(path="/files/a%2Fb%20c")
        assert StaticRouter(UPSTREAM).resolve(request) == f"{UPSTREAM}/files/a%2Fb%20c"

    def test_supports_websocket(self):
        assert StaticRouter(UPSTREAM).supports_websocket


class TestDynamicRouter:
    def test_reads_url_parameter(self, request_factory):
        request = request_factory(query_string=b"url=http%3A%2F%2Fexample.com%2Fx%3Fa%3D1")
        assert DynamicRouter().resolve(request) == "http://example.com/x?a=1"

    def test_custom_parameter(self, request_factory):
        request = request_factory(query_string=b"target=https://example.com/")
        assert DynamicRouter("target").resolve(request) == "https://example.com/"

    def test_missing_parameter(self, request_factory):
        with pytest.raises(ModeResolutionError) as exc_info:
            DynamicRouter().resolve(request_factory())
        assert exc_info.value.status_code == 400
        assert "url" in exc_info.value.message

    @pytest.mark.parametrize(
        "value", [b"url=", b"url=example.com/x", b"url=/relative", b"url=ftp://example.com/f"]
    )
    def test_invalid_parameter(self, request_factory, value):
        with pytest.raises(ModeResolutionError):
            DynamicRouter().resolve(request_factory(query_string=value))

    def test_no_websocket_support(self):
        assert not DynamicRouter().supports_websocket


def test_build_router(make_settings):
    assert isinstance(build_router(make_settings()), StaticRouter)
    forward = build_router(make_settings(mode=ProxyMode.FORWARD, upstream_url=""))
    assert isinstance(forward, DynamicRouter)


def test_to_websocket_url():
    assert to_websocket_url("http://app:80/ws?x=1") == "ws://app:80/ws?x=1"
    assert to_websocket_url("https://app/ws") == "wss://app/ws"
