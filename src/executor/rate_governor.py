"""Request admission control, keyed by caller identity.

Fixed-window counters held in memory: the first request for an identity
opens a window of `window_seconds`; further requests increment the count
until `max_requests` is reached, after which they are rejected until the
window resets. Expired entries are swept opportunistically once the map
grows past a threshold, so no background sweeper is needed.
"""

import hashlib
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

logger = logging.getLogger(__name__)

SWEEP_THRESHOLD = 10_000


@dataclass(frozen=True)
class RateLimitPolicy:
    window_seconds: float
    max_requests: int


# Presets per endpoint family
RATE_LIMITS: dict[str, RateLimitPolicy] = {
    "pipeline": RateLimitPolicy(window_seconds=60, max_requests=5),
    "api": RateLimitPolicy(window_seconds=60, max_requests=60),
    "auth": RateLimitPolicy(window_seconds=15 * 60, max_requests=10),
    "webhook": RateLimitPolicy(window_seconds=60, max_requests=20),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in_ms: int

    @property
    def reset_in_seconds(self) -> int:
        return math.ceil(self.reset_in_ms / 1000)


@dataclass
class _Window:
    count: int
    reset_time: float


class RateGovernor:
    """In-memory per-identity request counter.

    Args:
        clock: Returns the current time in seconds (injectable for tests)
        sweep_threshold: Map size above which expired entries are purged
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_threshold: int = SWEEP_THRESHOLD,
    ):
        self._clock = clock
        self._sweep_threshold = sweep_threshold
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check_limit(self, identity: str, policy: RateLimitPolicy = RATE_LIMITS["api"]) -> RateLimitResult:
        """Admit or reject one request for `identity` under `policy`."""
        now = self._clock()
        window_ms = int(policy.window_seconds * 1000)

        with self._lock:
            if len(self._windows) > self._sweep_threshold:
                self._sweep(now)

            window = self._windows.get(identity)
            if window is None or now >= window.reset_time:
                self._windows[identity] = _Window(count=1, reset_time=now + policy.window_seconds)
                return RateLimitResult(
                    allowed=True,
                    remaining=policy.max_requests - 1,
                    reset_in_ms=window_ms,
                )

            reset_in_ms = max(int((window.reset_time - now) * 1000), 0)
            if window.count >= policy.max_requests:
                logger.warning(
                    f"Rate limit exceeded for {identity}: "
                    f"{window.count}/{policy.max_requests}, resets in {reset_in_ms}ms"
                )
                return RateLimitResult(allowed=False, remaining=0, reset_in_ms=reset_in_ms)

            window.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests - window.count,
                reset_in_ms=reset_in_ms,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep(self, now: float) -> None:
        expired = [key for key, w in self._windows.items() if now >= w.reset_time]
        for key in expired:
            del self._windows[key]
        logger.debug(f"Swept {len(expired)} expired rate-limit windows")


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_in_seconds),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.reset_in_seconds)
    return headers


def client_identity(headers: Mapping[str, str]) -> str:
    """Identify the caller from proxy headers, else a user-agent fingerprint.

    `headers` should be case-insensitive (e.g. starlette's Headers).
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    user_agent = headers.get("user-agent") or "unknown"
    accept = headers.get("accept") or ""
    digest = hashlib.sha256((user_agent + accept).encode("utf-8")).hexdigest()[:12]
    return f"anon_{digest}"
