"""Tests for vaporstudio.core.rate_limiter -- fixed-window limiting.

A fake clock drives every test so windows can be opened and expired without
sleeping.
"""

from __future__ import annotations

import threading

import pytest

from vaporstudio.core.rate_limiter import RateLimit, RateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(
        {
            "/api/compose": RateLimit(max_requests=3, window_seconds=60),
            "/api/assets": RateLimit(max_requests=120, window_seconds=60),
        },
        default=RateLimit(max_requests=5, window_seconds=30),
        clock=clock,
    )


class TestLimitResolution:
    """Test route to limit mapping."""

    def test_configured_route(self, limiter: RateLimiter):
        assert limiter.limit_for("/api/compose").max_requests == 3

    def test_prefix_match(self, limiter: RateLimiter):
        """Sub-paths inherit their prefix's limit."""
        assert limiter.limit_for("/api/assets/backgrounds").max_requests == 120

    def test_unconfigured_route_uses_default(self, limiter: RateLimiter):
        assert limiter.limit_for("/api/health") == RateLimit(5, 30)

    def test_longest_prefix_wins(self, clock: FakeClock):
        limiter = RateLimiter(
            {"/api": RateLimit(10, 60), "/api/compose": RateLimit(2, 60)},
            default=RateLimit(100, 60),
            clock=clock,
        )
        assert limiter.limit_for("/api/compose").max_requests == 2
        assert limiter.limit_for("/api/other").max_requests == 10


class TestAdmit:
    """Test the fixed-window algorithm."""

    def test_admits_up_to_limit_then_rejects(self, limiter: RateLimiter):
        """After N admitted requests the (N+1)th is rejected."""
        results = [limiter.admit("1.2.3.4", "/api/compose") for _ in range(4)]
        assert results == [True, True, True, False]

    def test_window_resets_after_expiry(self, limiter: RateLimiter, clock: FakeClock):
        """Once the window has passed, the count restarts at one."""
        for _ in range(4):
            limiter.admit("1.2.3.4", "/api/compose")

        clock.advance(61)

        assert limiter.admit("1.2.3.4", "/api/compose") is True
        window = limiter.window("1.2.3.4", "/api/compose")
        assert window.count == 1
        assert window.window_start == clock.now

    def test_window_not_reset_at_boundary(self, limiter: RateLimiter, clock: FakeClock):
        """Exactly W seconds later the old window still applies."""
        for _ in range(3):
            limiter.admit("1.2.3.4", "/api/compose")
        clock.advance(60)
        assert limiter.admit("1.2.3.4", "/api/compose") is False

    def test_keys_are_per_client(self, limiter: RateLimiter):
        for _ in range(3):
            limiter.admit("1.1.1.1", "/api/compose")
        assert limiter.admit("1.1.1.1", "/api/compose") is False
        assert limiter.admit("2.2.2.2", "/api/compose") is True

    def test_keys_are_per_route(self, limiter: RateLimiter):
        for _ in range(4):
            limiter.admit("1.1.1.1", "/api/compose")
        assert limiter.admit("1.1.1.1", "/api/assets") is True

    @pytest.mark.parametrize("missing", [None, "", "   "])
    def test_missing_client_shares_unknown_bucket(self, limiter: RateLimiter, missing):
        """Missing identities all count against one shared bucket."""
        for _ in range(3):
            limiter.admit(None, "/api/compose")
        assert limiter.admit(missing, "/api/compose") is False
        assert limiter.window("unknown", "/api/compose").count == 4

    def test_admit_never_raises(self, limiter: RateLimiter, monkeypatch):
        """Internal failures admit the request."""

        def broken(route):
            raise RuntimeError("boom")

        monkeypatch.setattr(limiter, "limit_for", broken)
        assert limiter.admit("1.2.3.4", "/api/compose") is True

    def test_concurrent_admits_count_exactly(self, clock: FakeClock):
        """Threads racing on one key never lose increments."""
        limiter = RateLimiter({}, default=RateLimit(100, 60), clock=clock)
        admitted = []

        def worker():
            for _ in range(50):
                admitted.append(limiter.admit("c", "/r"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert admitted.count(True) == 100
        assert limiter.window("c", "/r").count == 400


class TestPurge:
    """Test removal of stale windows."""

    def test_purges_windows_older_than_twice_their_size(self, limiter: RateLimiter, clock: FakeClock):
        limiter.admit("a", "/api/compose")  # 60s window
        limiter.admit("b", "/api/health")  # 30s default window

        clock.advance(90)
        assert limiter.purge() == 1
        assert limiter.window("b", "/api/health") is None
        assert limiter.window("a", "/api/compose") is not None

        clock.advance(40)
        assert limiter.purge() == 1
        assert len(limiter) == 0

    def test_purge_on_empty_limiter(self, limiter: RateLimiter):
        assert limiter.purge() == 0
