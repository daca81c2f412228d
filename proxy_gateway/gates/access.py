import hashlib
import hmac
import ipaddress
from typing import Iterable

from proxy_gateway.gates.base import ADMIT, Gate, GateResult, Reject, RequestContext


def keys_match(provided: str, expected: str) -> bool:
    """
    Compare two secrets in constant time.

    Both sides are hashed first so the comparison always runs over equal
    length inputs and leaks nothing about the expected key's length.
    """
    provided_digest = hashlib.sha256(provided.encode("utf-8")).digest()
    expected_digest = hashlib.sha256(expected.encode("utf-8")).digest()
    return hmac.compare_digest(provided_digest, expected_digest)


def normalize_ip(value: str) -> str:
    """Canonical text form of an IP literal; IPv4-mapped IPv6 becomes plain IPv4."""
    try:
        address = ipaddress.ip_address(value.strip())
    except ValueError:
        return value.strip()
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    return str(address)


class ApiKeyGate(Gate):
    name = "api_key"

    def __init__(self, api_key: str, header: str = "x-api-key"):
        self.api_key = api_key
        self.header = header

    async def check(self, context: RequestContext) -> GateResult:
        provided = context.connection.headers.get(self.header)
        if provided is None:
            return Reject(401, "Missing API key")
        if not keys_match(provided, self.api_key):
            return Reject(401, "Invalid API key")
        return ADMIT


class IpAllowlistGate(Gate):
    name = "ip_allowlist"

    def __init__(self, allowlist: Iterable[str]):
        self.allowlist = frozenset(normalize_ip(ip) for ip in allowlist)

    async def check(self, context: RequestContext) -> GateResult:
        if normalize_ip(context.client_ip) in self.allowlist:
            return ADMIT
        return Reject(403, "Forbidden")
