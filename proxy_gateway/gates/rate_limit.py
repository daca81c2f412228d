import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from proxy_gateway.gates.base import ADMIT, Gate, GateResult, Reject, RequestContext


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after: float


class RateLimiter:
    """
    Fixed-window request counter keyed by client IP.

    State is in-process only and is lost on restart. Windows roll over
    lazily: the first hit after a window has elapsed starts a new window with
    a count of 1. The clock is injectable so tests can step through windows
    deterministically.
    """

    def __init__(
        self,
        window: float,
        max_requests: int,
        clock: Callable[[], float] = time.monotonic,
        prune_threshold: int = 10000,
    ):
        self.window = window
        self.max_requests = max_requests
        self._clock = clock
        self._prune_threshold = prune_threshold
        self._counters: Dict[str, Tuple[float, int]] = {}
        self._last_prune = float("-inf")
        self._lock = threading.Lock()

    def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            window_start, count = self._counters.get(key, (now, 0))
            if now - window_start >= self.window:
                window_start, count = now, 0
            count += 1
            self._counters[key] = (window_start, count)
            # at most one sweep per window
            if (
                len(self._counters) > self._prune_threshold
                and now - self._last_prune >= self.window
            ):
                self._prune(now)
        retry_after = max(0.0, window_start + self.window - now)
        return RateLimitDecision(count <= self.max_requests, count, retry_after)

    def _prune(self, now: float) -> None:
        # caller holds the lock
        self._last_prune = now
        expired = [
            key
            for key, (window_start, _) in self._counters.items()
            if now - window_start >= self.window
        ]
        for key in expired:
            del self._counters[key]

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()

    def __len__(self) -> int:
        return len(self._counters)


class RateLimitGate(Gate):
    name = "rate_limit"

    def __init__(self, limiter: RateLimiter):
        self.limiter = limiter

    async def check(self, context: RequestContext) -> GateResult:
        decision = self.limiter.hit(context.client_ip)
        if decision.allowed:
            return ADMIT
        return Reject(
            429,
            "Too many requests",
            headers={"Retry-After": str(max(1, math.ceil(decision.retry_after)))},
        )
