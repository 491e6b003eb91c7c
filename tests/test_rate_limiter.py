"""Tests for the sliding-window rate limiter and the payload cache."""

import threading

import pytest

from btc_graph.utils.cache import PayloadCache
from btc_graph.utils.rate_limiter import RateLimiter


class FakeClock:
    """Manually advanced monotonic clock; sleeping advances it."""

    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestRateLimiter:
    """Tests for RateLimiter window accounting."""

    def test_admits_up_to_limit(self, clock):
        """Test max_requests calls pass without waiting."""
        limiter = RateLimiter(3, 60, clock=clock, sleep=clock.sleep)

        waits = [limiter.acquire() for _ in range(3)]

        assert waits == [0.0, 0.0, 0.0]
        assert limiter.remaining() == 0
        assert limiter.is_limited() is True

    def test_waits_for_oldest_to_expire(self, clock):
        """Test the next call waits until the oldest call leaves the window."""
        limiter = RateLimiter(2, 60, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        clock.now += 10
        limiter.acquire()

        waited = limiter.acquire()

        assert waited == pytest.approx(50.0)
        assert clock.sleeps == [pytest.approx(50.0)]

    def test_window_slides(self, clock):
        """Test calls older than the window no longer count."""
        limiter = RateLimiter(2, 60, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        limiter.acquire()

        clock.now += 60

        assert limiter.remaining() == 2
        assert limiter.is_limited() is False

    def test_reset_time(self, clock):
        """Test reset_time reports when the oldest call expires."""
        limiter = RateLimiter(5, 60, clock=clock, sleep=clock.sleep)
        assert limiter.reset_time() == 0.0

        limiter.acquire()
        clock.now += 15

        assert limiter.reset_time() == pytest.approx(45.0)

    def test_never_more_than_limit_in_window(self, clock):
        """Test no window of time_window seconds holds more than max_requests calls."""
        limiter = RateLimiter(4, 10, clock=clock, sleep=clock.sleep)
        stamps = []
        for _ in range(20):
            limiter.acquire()
            stamps.append(clock.now)
            clock.now += 1

        for start in stamps:
            assert sum(1 for t in stamps if start <= t < start + 10) <= 4

    def test_thread_safe(self):
        """Test concurrent acquires never exceed the limit."""
        limiter = RateLimiter(50, 3600)
        threads = [threading.Thread(target=limiter.acquire) for _ in range(50)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert limiter.remaining() == 0

    def test_invalid_arguments(self):
        """Test non-positive limits are rejected."""
        with pytest.raises(ValueError):
            RateLimiter(0, 60)
        with pytest.raises(ValueError):
            RateLimiter(10, 0)


class TestPayloadCache:
    """Tests for PayloadCache expiry and size bound."""

    def test_expires_after_ttl(self, clock):
        """Test the factory runs again once the entry's TTL has passed."""
        cache = PayloadCache(maxsize=10, ttl=30, timer=clock)
        calls = []

        def factory():
            calls.append(1)
            return {'hash': "a"}

        assert cache.get_or_set("a", factory) == {'hash': "a"}
        assert cache.get_or_set("a", factory) == {'hash': "a"}
        assert len(calls) == 1

        clock.now += 31
        cache.get_or_set("a", factory)
        assert len(calls) == 2

    def test_size_is_bounded(self, clock):
        """Test keys fetched once never grow the cache past maxsize."""
        cache = PayloadCache(maxsize=100, ttl=3600, timer=clock)

        for i in range(1000):
            cache.get_or_set(f"tx{i}", lambda: "payload")

        assert len(cache) == 100

    def test_expired_entries_purged_on_insert(self, clock):
        """Test stale entries are dropped without being read again."""
        cache = PayloadCache(maxsize=10_000, ttl=10, timer=clock)
        for i in range(1000):
            cache.get_or_set(f"tx{i}", lambda: "payload")

        clock.now += 10_000
        cache.get_or_set("fresh", lambda: "payload")

        assert len(cache) == 1
