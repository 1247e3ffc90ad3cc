"""Tests for per-client rate governing."""

from src.executor.rate_governor import (
    RATE_LIMITS,
    RateGovernor,
    RateLimitPolicy,
    client_identity,
    rate_limit_headers,
)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


PIPELINE = RateLimitPolicy(window_seconds=60, max_requests=5)


class TestRateGovernor:
    def setup_method(self):
        self.clock = FakeClock()
        self.governor = RateGovernor(clock=self.clock)

    def test_sixth_request_rejected(self):
        remaining = []
        for _ in range(5):
            result = self.governor.check_limit("client-a", PIPELINE)
            assert result.allowed
            remaining.append(result.remaining)
            self.clock.now += 1

        assert remaining == [4, 3, 2, 1, 0]

        rejected = self.governor.check_limit("client-a", PIPELINE)
        assert not rejected.allowed
        assert rejected.remaining == 0
        assert rejected.reset_in_ms == 55_000

    def test_fresh_window_after_reset(self):
        for _ in range(6):
            self.governor.check_limit("client-a", PIPELINE)

        rejected = self.governor.check_limit("client-a", PIPELINE)
        self.clock.now += rejected.reset_in_ms / 1000

        result = self.governor.check_limit("client-a", PIPELINE)
        assert result.allowed
        assert result.remaining == 4
        assert result.reset_in_ms == 60_000

    def test_identities_are_independent(self):
        for _ in range(5):
            self.governor.check_limit("client-a", PIPELINE)
        assert not self.governor.check_limit("client-a", PIPELINE).allowed
        assert self.governor.check_limit("client-b", PIPELINE).allowed

    def test_expired_entries_swept_past_threshold(self):
        governor = RateGovernor(clock=self.clock, sweep_threshold=2)
        for name in ("a", "b", "c"):
            governor.check_limit(name, PIPELINE)
        assert len(governor) == 3

        self.clock.now += 61
        governor.check_limit("d", PIPELINE)
        assert len(governor) == 1

    def test_presets(self):
        assert RATE_LIMITS["pipeline"] == PIPELINE
        assert RATE_LIMITS["api"].max_requests == 60
        assert RATE_LIMITS["auth"].window_seconds == 15 * 60
        assert RATE_LIMITS["webhook"].max_requests == 20


class TestHeaders:
    def test_allowed_headers(self):
        governor = RateGovernor(clock=FakeClock())
        headers = rate_limit_headers(governor.check_limit("x", PIPELINE))
        assert headers == {"X-RateLimit-Remaining": "4", "X-RateLimit-Reset": "60"}

    def test_rejected_carries_retry_after(self):
        clock = FakeClock()
        governor = RateGovernor(clock=clock)
        for _ in range(5):
            governor.check_limit("x", PIPELINE)
        clock.now += 0.5
        headers = rate_limit_headers(governor.check_limit("x", PIPELINE))
        assert headers["Retry-After"] == "60"
        assert headers["X-RateLimit-Remaining"] == "0"


class TestClientIdentity:
    def test_forwarded_for_first_hop(self):
        assert client_identity({"x-forwarded-for": "203.0.113.7, 10.0.0.1"}) == "203.0.113.7"

    def test_real_ip(self):
        assert client_identity({"x-real-ip": "198.51.100.2"}) == "198.51.100.2"

    def test_anonymous_fingerprint_is_stable(self):
        headers = {"user-agent": "curl/8.0", "accept": "*/*"}
        first = client_identity(headers)
        assert first.startswith("anon_")
        assert client_identity(dict(headers)) == first
        assert client_identity({"user-agent": "other"}) != first
