"""Tests for fixed-window rate limiting."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from authgate.config import DEFAULT_RATE_LIMITS, RateLimitRule
from authgate.service.rate_limit import RateLimiter
from authgate.storage.errors import StoreUnavailable
from authgate.storage.memory import MemoryCache


@pytest.fixture
def limiter(fake_clock):
    return RateLimiter(MemoryCache(clock=fake_clock), DEFAULT_RATE_LIMITS)


class TestFixedWindow:
    """Exactly ``limit`` requests are admitted per window."""

    async def test_admits_exactly_limit_then_denies(self, limiter):
        results = [await limiter.allow("1.2.3.4", "login") for _ in range(6)]

        assert results == [True] * 5 + [False]

    async def test_window_reopens_after_expiry(self, limiter, fake_clock):
        for _ in range(5):
            await limiter.allow("1.2.3.4", "login")
        assert await limiter.allow("1.2.3.4", "login") is False

        fake_clock.advance(60)

        assert await limiter.allow("1.2.3.4", "login") is True

    async def test_denied_requests_do_not_extend_window(self, limiter, fake_clock):
        for _ in range(5):
            await limiter.allow("1.2.3.4", "login")
        fake_clock.advance(45)
        for _ in range(10):
            assert await limiter.allow("1.2.3.4", "login") is False

        fake_clock.advance(15)

        assert await limiter.allow("1.2.3.4", "login") is True

    async def test_addresses_and_classes_are_independent(self, limiter):
        for _ in range(3):
            await limiter.allow("1.2.3.4", "register")

        assert await limiter.allow("1.2.3.4", "register") is False
        assert await limiter.allow("5.6.7.8", "register") is True
        assert await limiter.allow("1.2.3.4", "login") is True

    async def test_status_reports_remaining_and_retry(self, limiter, fake_clock):
        first = await limiter.check("1.2.3.4", "register")
        assert first.allowed is True
        assert first.limit == 3
        assert first.remaining == 2
        assert first.reset_seconds == 60

        await limiter.check("1.2.3.4", "register")
        await limiter.check("1.2.3.4", "register")
        fake_clock.advance(20)
        denied = await limiter.check("1.2.3.4", "register")

        assert denied.allowed is False
        assert denied.remaining == 0
        assert denied.reset_seconds == 40

    async def test_explicit_budget_overrides_table(self, limiter):
        assert await limiter.allow("1.2.3.4", "custom", limit=1, window=10) is True
        assert await limiter.allow("1.2.3.4", "custom", limit=1, window=10) is False

    async def test_zero_limit_disables_class(self, fake_clock):
        store = MemoryCache(clock=fake_clock)
        limiter = RateLimiter(store, {"login": RateLimitRule(limit=0, window_seconds=60)})

        for _ in range(20):
            assert await limiter.allow("1.2.3.4", "login") is True
        assert await store.get_counter(RateLimiter.key("login", "1.2.3.4")) == 0

    def test_unknown_class_raises(self, limiter):
        with pytest.raises(ValueError, match="no rate limit configured"):
            limiter.rule_for("nonexistent")


class TestStoreOutage:
    """Limiter admits requests when the counter store is unreachable."""

    @pytest.fixture
    def broken_store(self):
        store = MagicMock()
        store.increment_counter = AsyncMock(side_effect=StoreUnavailable("increment_counter"))
        store.get_counter = AsyncMock(side_effect=StoreUnavailable("get_counter"))
        store.counter_ttl = AsyncMock(side_effect=StoreUnavailable("counter_ttl"))
        return store

    async def test_fails_open(self, broken_store):
        limiter = RateLimiter(broken_store, DEFAULT_RATE_LIMITS)

        for _ in range(10):
            assert await limiter.allow("1.2.3.4", "login") is True

    async def test_remaining_defaults_to_full_budget(self, broken_store):
        limiter = RateLimiter(broken_store, DEFAULT_RATE_LIMITS)

        assert await limiter.remaining_attempts("1.2.3.4", "login") == 5
        assert await limiter.seconds_until_reset("1.2.3.4", "login") == 0


class TestIntrospectionAndReset:
    async def test_remaining_attempts_tracks_usage(self, limiter):
        assert await limiter.remaining_attempts("1.2.3.4", "login") == 5
        await limiter.allow("1.2.3.4", "login")
        await limiter.allow("1.2.3.4", "login")

        assert await limiter.remaining_attempts("1.2.3.4", "login") == 3

    async def test_reset_closes_all_windows(self, limiter):
        for _ in range(5):
            await limiter.allow("1.2.3.4", "login")
        await limiter.allow("1.2.3.4", "auth")

        removed = await limiter.reset("1.2.3.4")

        assert removed == 2
        assert await limiter.allow("1.2.3.4", "login") is True

    async def test_reset_limited_to_named_classes(self, limiter):
        for _ in range(5):
            await limiter.allow("1.2.3.4", "login")
        for _ in range(3):
            await limiter.allow("1.2.3.4", "register")

        await limiter.reset("1.2.3.4", ["login"])

        assert await limiter.allow("1.2.3.4", "login") is True
        assert await limiter.allow("1.2.3.4", "register") is False
