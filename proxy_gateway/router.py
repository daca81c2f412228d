"""
Forwarding target resolution.

Reverse and forward mode are two implementations of the same ``Router``
interface. The pipeline never branches on the mode itself.
"""

from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from starlette.requests import HTTPConnection

from proxy_gateway.config import ProxyMode, Settings, is_absolute_http_url
from proxy_gateway.errors import ModeResolutionError

_WS_SCHEMES = {"http": "ws", "https": "wss"}


def to_websocket_url(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit(parts._replace(scheme=_WS_SCHEMES.get(parts.scheme, parts.scheme)))


class Router:
    supports_websocket = False

    def resolve(self, connection: HTTPConnection) -> str:
        raise NotImplementedError


class StaticRouter(Router):
    """Reverse mode: the configured upstream plus the original path and query."""

    supports_websocket = True

    def __init__(self, upstream_url: str):
        self.upstream_url = upstream_url.rstrip("/")

    def resolve(self, connection: HTTPConnection) -> str:
        # raw_path keeps percent-encoding intact (e.g. %2F stays encoded)
        raw_path = connection.scope.get("raw_path")
        path = raw_path.decode("latin-1") if raw_path else connection.url.path
        if not path.startswith("/"):
            path = "/" + path
        query = connection.url.query
        target = f"{self.upstream_url}{path}"
        if query:
            target = f"{target}?{query}"
        return target


class DynamicRouter(Router):
    """
    Forward mode: the destination comes from a query parameter of the request.

    No allowlist is applied to the destination, so this mode can reach any
    address visible from the gateway's network position.
    """

    def __init__(self, param: str = "url"):
        self.param = param

    def resolve(self, connection: HTTPConnection) -> str:
        target: Optional[str] = connection.query_params.get(self.param)
        if not target:
            raise ModeResolutionError(
                f"Missing '{self.param}' query parameter",
                detail="no target parameter on request",
            )
        target = target.strip()
        if not is_absolute_http_url(target):
            raise ModeResolutionError(
                f"Invalid '{self.param}' query parameter: an absolute http(s) URL is required",
                detail=f"rejected target {target!r}",
            )
        return target


def build_router(settings: Settings) -> Router:
    if settings.mode is ProxyMode.REVERSE:
        return StaticRouter(settings.upstream_url)
    return DynamicRouter(settings.forward_url_param)
