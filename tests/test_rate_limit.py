import pytest

from app.services.rate_limit import RATE_LIMITS, RateLimit, RateLimiter
from app.utils.errors import RateLimitError


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_window_allows_up_to_limit_then_blocks():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limit = RateLimit(window_seconds=60, max_requests=3)

    results = [limiter.check("payment_init:u1", limit) for _ in range(3)]
    assert [r.remaining for r in results] == [2, 1, 0]
    assert all(r.success for r in results)

    blocked = limiter.check("payment_init:u1", limit)
    assert blocked.success is False
    assert blocked.retry_after == 60
    assert blocked.headers()["Retry-After"] == "60"
    assert blocked.headers()["X-RateLimit-Limit"] == "3"


def test_window_resets_after_expiry():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limit = RateLimit(window_seconds=10, max_requests=1)

    assert limiter.check("k", limit).success
    assert not limiter.check("k", limit).success
    clock.now += 10
    assert limiter.check("k", limit).success


def test_keys_are_independent():
    limiter = RateLimiter(clock=FakeClock())
    limit = RateLimit(window_seconds=60, max_requests=1)
    assert limiter.check("a", limit).success
    assert limiter.check("b", limit).success
    assert not limiter.check("a", limit).success


def test_hit_raises_with_headers():
    limiter = RateLimiter(clock=FakeClock())
    limit = RATE_LIMITS["subscription_checkout"]
    for _ in range(limit.max_requests):
        limiter.hit("subscription_checkout:u1", limit)
    with pytest.raises(RateLimitError) as excinfo:
        limiter.hit("subscription_checkout:u1", limit)
    assert excinfo.value.status_code == 429
    assert "Retry-After" in excinfo.value.headers


def test_expired_windows_are_evicted():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, cleanup_interval=30)
    limit = RateLimit(window_seconds=5, max_requests=5)
    for index in range(10):
        limiter.check(f"ip-{index}", limit)
    assert len(limiter) == 10

    clock.now += 31
    limiter.check("fresh", limit)
    assert len(limiter) == 1


def test_configured_budgets():
    assert RATE_LIMITS["payment_init"].max_requests == 5
    assert RATE_LIMITS["payment_verify"].max_requests == 10
    assert RATE_LIMITS["subscription_checkout"].max_requests == 3
    assert RATE_LIMITS["webhook"].max_requests == 100
    assert RATE_LIMITS["webhook_get"].max_requests == 5
