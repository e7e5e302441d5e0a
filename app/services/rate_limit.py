"""In-process fixed-window rate limiter."""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from app.utils.errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    window_seconds: int
    max_requests: int


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.success:
            headers["Retry-After"] = str(self.retry_after)
        return headers


RATE_LIMITS: dict[str, RateLimit] = {
    "payment_init": RateLimit(window_seconds=60, max_requests=5),
    "payment_verify": RateLimit(window_seconds=60, max_requests=10),
    "subscription_checkout": RateLimit(window_seconds=60, max_requests=3),
    "payout_transfer": RateLimit(window_seconds=60, max_requests=5),
    "webhook": RateLimit(window_seconds=60, max_requests=100),
    "webhook_get": RateLimit(window_seconds=60, max_requests=5),
    "general": RateLimit(window_seconds=60, max_requests=60),
}


class RateLimiter:
    """Counts hits per key inside fixed windows.

    State is process local; each replica enforces its own budget. All access
    goes through one lock so concurrent requests never lose an increment.
    """

    def __init__(self, clock: Callable[[], float] = time.time, cleanup_interval: float = 60.0) -> None:
        self._clock = clock
        self._cleanup_interval = cleanup_interval
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def check(self, key: str, limit: RateLimit) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            count, reset_at = self._windows.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + limit.window_seconds

            if count >= limit.max_requests:
                retry_after = max(1, int(math.ceil(reset_at - now)))
                return RateLimitResult(False, limit.max_requests, 0, reset_at, retry_after)

            count += 1
            self._windows[key] = (count, reset_at)
            return RateLimitResult(True, limit.max_requests, limit.max_requests - count, reset_at, 0)

    def hit(self, key: str, limit: RateLimit) -> RateLimitResult:
        """Like :meth:`check` but raises :class:`RateLimitError` when exhausted."""

        result = self.check(key, limit)
        if not result.success:
            logger.warning("Rate limit exceeded", extra={"rate_limit_key": key, "retry_after": result.retry_after})
            raise RateLimitError(result.retry_after, result.headers())
        return result

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def _evict_expired(self, now: float) -> None:
        if now - self._last_cleanup < self._cleanup_interval:
            return
        expired = [key for key, (_, reset_at) in self._windows.items() if reset_at <= now]
        for key in expired:
            del self._windows[key]
        self._last_cleanup = now

    def __len__(self) -> int:
        return len(self._windows)


__all__ = ["RATE_LIMITS", "RateLimit", "RateLimitResult", "RateLimiter"]
