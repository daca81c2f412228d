import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence, Union

from starlette.requests import HTTPConnection
from starlette.websockets import WebSocket

from proxy_gateway.logging_config import log_fields

logger = logging.getLogger("uvicorn.error")

UNKNOWN_CLIENT = "unknown"


def resolve_client_ip(connection: HTTPConnection, trust_proxy_headers: bool) -> str:
    """
    Determine the client IP for a connection.

    Forwarded headers are only honoured when ``trust_proxy_headers`` is set.
    """
    if trust_proxy_headers:
        forwarded_for = connection.headers.get("x-forwarded-for", "")
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
        real_ip = connection.headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip
    if connection.client and connection.client.host:
        return connection.client.host
    return UNKNOWN_CLIENT


@dataclass
class RequestContext:
    connection: HTTPConnection
    client_ip: str
    # Set by the payload gate when the body had to be read to be measured
    body: Optional[bytes] = None
    response_headers: Dict[str, str] = field(default_factory=dict)

    @property
    def is_websocket(self) -> bool:
        return isinstance(self.connection, WebSocket)

    @property
    def method(self) -> str:
        return self.connection.scope.get("method", "GET")

    @property
    def path(self) -> str:
        return self.connection.url.path


@dataclass(frozen=True)
class Admit:
    pass


@dataclass(frozen=True)
class Reject:
    status_code: int
    reason: str
    headers: Mapping[str, str] = field(default_factory=dict)
    level: int = logging.WARNING


GateResult = Union[Admit, Reject]

ADMIT = Admit()


class Gate:
    """A single admission check. Subclasses return ``ADMIT`` or a ``Reject``."""

    name = "gate"

    async def check(self, context: RequestContext) -> GateResult:
        raise NotImplementedError


class GateChain:
    """Runs gates in order and stops at the first rejection."""

    def __init__(self, gates: Sequence[Gate]):
        self.gates = list(gates)

    async def run(self, context: RequestContext) -> GateResult:
        for gate in self.gates:
            result = await gate.check(context)
            if isinstance(result, Reject):
                logger.log(
                    result.level,
                    f"[Gate] Request rejected by {gate.name}: {result.reason}",
                    extra=log_fields(
                        gate=gate.name,
                        reason=result.reason,
                        status=result.status_code,
                        client_ip=context.client_ip,
                        method=context.method,
                        path=context.path,
                    ),
                )
                return result
        return ADMIT
