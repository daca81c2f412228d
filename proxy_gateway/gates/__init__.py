from typing import Optional

from proxy_gateway.config import Settings
from proxy_gateway.gates.access import ApiKeyGate, IpAllowlistGate
from proxy_gateway.gates.base import (
    ADMIT,
    Admit,
    Gate,
    GateChain,
    GateResult,
    Reject,
    RequestContext,
    resolve_client_ip,
)
from proxy_gateway.gates.cors import CorsGate
from proxy_gateway.gates.payload import PayloadSizeGate
from proxy_gateway.gates.rate_limit import RateLimitGate, RateLimiter


def build_gate_chain(
    settings: Settings, rate_limiter: Optional[RateLimiter] = None
) -> GateChain:
    """Assemble the admission gates in their fixed order for ``settings``."""
    if rate_limiter is None:
        rate_limiter = RateLimiter(settings.rate_limit_window, settings.rate_limit_max)

    gates = [
        CorsGate(
            settings.allowed_origin,
            settings.api_key_header if settings.api_key else "",
        ),
        PayloadSizeGate(settings.request_size_limit),
        RateLimitGate(rate_limiter),
    ]
    if settings.api_key:
        gates.append(ApiKeyGate(settings.api_key, settings.api_key_header))
    if settings.ip_allowlist:
        gates.append(IpAllowlistGate(settings.ip_allowlist))
    return GateChain(gates)


__all__ = [
    "ADMIT",
    "Admit",
    "ApiKeyGate",
    "CorsGate",
    "Gate",
    "GateChain",
    "GateResult",
    "IpAllowlistGate",
    "PayloadSizeGate",
    "RateLimitGate",
    "RateLimiter",
    "Reject",
    "RequestContext",
    "build_gate_chain",
    "resolve_client_ip",
]
