import logging

from proxy_gateway.gates.base import ADMIT, Gate, GateResult, Reject, RequestContext

BASE_ALLOWED_HEADERS = ("Origin", "X-Requested-With", "Content-Type", "Accept")
ALLOWED_METHODS = "GET, POST, PUT, PATCH, DELETE, HEAD, OPTIONS"


class CorsGate(Gate):
    """
    Attach CORS headers to every pipeline response and answer preflights.

    The configured origin is mirrored as-is (including ``*``); the origin of
    the request is never grounds for rejection.
    """

    name = "cors"

    def __init__(self, allowed_origin: str, api_key_header: str = ""):
        headers = list(BASE_ALLOWED_HEADERS)
        if api_key_header:
            headers.append(api_key_header)
        self.headers = {
            "Access-Control-Allow-Origin": allowed_origin,
            "Access-Control-Allow-Headers": ", ".join(headers),
            "Access-Control-Allow-Methods": ALLOWED_METHODS,
        }
        if allowed_origin != "*":
            self.headers["Vary"] = "Origin"

    async def check(self, context: RequestContext) -> GateResult:
        if context.is_websocket:
            return ADMIT
        context.response_headers.update(self.headers)
        if (
            context.method == "OPTIONS"
            and "access-control-request-method" in context.connection.headers
        ):
            return Reject(204, "CORS preflight", level=logging.DEBUG)
        return ADMIT
