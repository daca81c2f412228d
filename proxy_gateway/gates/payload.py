from starlette.requests import ClientDisconnect

from proxy_gateway.gates.base import ADMIT, Gate, GateResult, Reject, RequestContext

TOO_LARGE = "Request entity too large"


class PayloadSizeGate(Gate):
    """
    Enforce the request body size cap.

    A declared ``Content-Length`` is checked without touching the body, which
    is then streamed to the upstream unbuffered. Bodies without a declared
    length are read up to the limit and kept on the context; reading stops as
    soon as the limit is crossed.
    """

    name = "payload_size"

    def __init__(self, limit: int):
        self.limit = limit

    async def check(self, context: RequestContext) -> GateResult:
        if context.is_websocket:
            return ADMIT

        declared = context.connection.headers.get("content-length")
        if declared is not None:
            try:
                length = int(declared)
            except ValueError:
                return Reject(400, "Invalid Content-Length header")
            if length < 0:
                return Reject(400, "Invalid Content-Length header")
            if length > self.limit:
                return Reject(413, TOO_LARGE)
            return ADMIT

        chunks = []
        received = 0
        try:
            async for chunk in context.connection.stream():
                received += len(chunk)
                if received > self.limit:
                    return Reject(413, TOO_LARGE)
                chunks.append(chunk)
        except ClientDisconnect:
            return Reject(400, "Client disconnected while sending body")
        context.body = b"".join(chunks)
        return ADMIT
