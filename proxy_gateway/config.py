"""
Gateway configuration.

Settings are parsed from environment-style key/value pairs once at startup
and validated before the listener binds. A ``Settings`` instance is frozen
and shared read-only by every component for the lifetime of the process.
"""

import enum
import ipaddress
import os
import re
from dataclasses import dataclass
from typing import FrozenSet, Mapping, Optional
from urllib.parse import urlparse


class ConfigurationError(Exception):
    """Raised when the configuration violates a startup invariant."""


class ProxyMode(str, enum.Enum):
    REVERSE = "reverse"
    FORWARD = "forward"


DEFAULT_PORT = 8080
DEFAULT_REQUEST_SIZE_LIMIT = 10 * 1024 * 1024
DEFAULT_RATE_LIMIT_WINDOW = 60.0
DEFAULT_RATE_LIMIT_MAX = 300
DEFAULT_FORWARD_TIMEOUT_MS = 20000

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*(b|kb|mb|gb)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"b": 1, "kb": 1024, "mb": 1024**2, "gb": 1024**3}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def parse_size(raw: str) -> int:
    """Parse a byte size such as ``1048576``, ``512kb`` or ``10mb``."""
    match = _SIZE_PATTERN.match(raw)
    if not match:
        raise ConfigurationError(f"Invalid size value: {raw!r}")
    amount, unit = match.groups()
    return int(amount) * _SIZE_UNITS[(unit or "b").lower()]


def parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _parse_int(name: str, raw: str, minimum: int) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _parse_float(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def _parse_allowlist(raw: str) -> Optional[FrozenSet[str]]:
    entries = frozenset(ip.strip() for ip in raw.split(",") if ip.strip())
    for entry in entries:
        try:
            ipaddress.ip_address(entry)
        except ValueError:
            raise ConfigurationError(
                f"IP_ALLOWLIST entries must be IP addresses, got {entry!r}"
            ) from None
    return entries or None


def is_absolute_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@dataclass(frozen=True)
class Settings:
    mode: ProxyMode = ProxyMode.REVERSE
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    upstream_url: str = ""
    api_key: Optional[str] = None
    api_key_header: str = "x-api-key"
    allowed_origin: str = "*"
    ip_allowlist: Optional[FrozenSet[str]] = None
    request_size_limit: int = DEFAULT_REQUEST_SIZE_LIMIT
    rate_limit_window: float = DEFAULT_RATE_LIMIT_WINDOW
    rate_limit_max: int = DEFAULT_RATE_LIMIT_MAX
    trust_proxy_headers: bool = False
    forward_timeout_ms: int = DEFAULT_FORWARD_TIMEOUT_MS
    forward_url_param: str = "url"

    def __post_init__(self):
        self.validate()

    @property
    def forward_timeout(self) -> float:
        return self.forward_timeout_ms / 1000.0

    @property
    def target_description(self) -> str:
        if self.mode is ProxyMode.REVERSE:
            return self.upstream_url
        return f"<per-request ?{self.forward_url_param}=>"

    def validate(self) -> None:
        if not isinstance(self.mode, ProxyMode):
            raise ConfigurationError(f"Unknown proxy mode: {self.mode!r}")
        if self.mode is ProxyMode.REVERSE:
            if not self.upstream_url:
                raise ConfigurationError(
                    "UPSTREAM_URL is required when PROXY_MODE=reverse"
                )
            if not is_absolute_http_url(self.upstream_url):
                raise ConfigurationError(
                    f"UPSTREAM_URL must be an absolute http(s) URL, got {self.upstream_url!r}"
                )
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"PORT out of range: {self.port}")
        if self.request_size_limit < 0:
            raise ConfigurationError("REQUEST_SIZE_LIMIT must not be negative")
        if self.rate_limit_max < 1:
            raise ConfigurationError("RATE_LIMIT_MAX must be at least 1")
        if self.rate_limit_window <= 0:
            raise ConfigurationError("RATE_LIMIT_WINDOW_SECONDS must be positive")
        if self.forward_timeout_ms < 1:
            raise ConfigurationError("FORWARD_TIMEOUT_MS must be at least 1")
        if self.api_key is not None and not self.api_key:
            raise ConfigurationError("API_KEY must not be empty when set")
        if not self.allowed_origin:
            raise ConfigurationError("ALLOWED_ORIGIN must not be empty")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build validated settings from ``environ`` (defaults to ``os.environ``)."""
        env = os.environ if environ is None else environ

        raw_mode = env.get("PROXY_MODE", ProxyMode.REVERSE.value).strip().lower()
        try:
            mode = ProxyMode(raw_mode)
        except ValueError:
            raise ConfigurationError(
                f"PROXY_MODE must be 'reverse' or 'forward', got {raw_mode!r}"
            ) from None

        return cls(
            mode=mode,
            host=env.get("HOST", "0.0.0.0"),
            port=_parse_int("PORT", env.get("PORT", str(DEFAULT_PORT)), 1),
            upstream_url=env.get("UPSTREAM_URL", "").strip().rstrip("/"),
            api_key=env.get("API_KEY") or None,
            api_key_header=env.get("API_KEY_HEADER", "x-api-key").strip().lower(),
            allowed_origin=env.get("ALLOWED_ORIGIN", "*").strip() or "*",
            ip_allowlist=_parse_allowlist(env.get("IP_ALLOWLIST", "")),
            request_size_limit=parse_size(env.get("REQUEST_SIZE_LIMIT", "10mb")),
            rate_limit_window=_parse_float(
                "RATE_LIMIT_WINDOW_SECONDS",
                env.get("RATE_LIMIT_WINDOW_SECONDS", str(DEFAULT_RATE_LIMIT_WINDOW)),
            ),
            rate_limit_max=_parse_int(
                "RATE_LIMIT_MAX", env.get("RATE_LIMIT_MAX", str(DEFAULT_RATE_LIMIT_MAX)), 1
            ),
            trust_proxy_headers=parse_bool("TRUST_PROXY", env.get("TRUST_PROXY", "false")),
            forward_timeout_ms=_parse_int(
                "FORWARD_TIMEOUT_MS",
                env.get("FORWARD_TIMEOUT_MS", str(DEFAULT_FORWARD_TIMEOUT_MS)),
                1,
            ),
            forward_url_param=env.get("FORWARD_URL_PARAM", "url").strip() or "url",
        )
