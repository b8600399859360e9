"""Tests for laos_checkout.rate_limiter."""
from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock
from laos_checkout.rate_limiter import RateLimitConfig, SlidingWindowRateLimiter, TokenBucketRateLimiter


class TestTokenBucketRateLimiter:
    """Tests for TokenBucketRateLimiter."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def limiter(self, clock):
        return TokenBucketRateLimiter(
            RateLimitConfig(capacity=5, refill_rate=5, window_seconds=60.0),
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_burst_then_block(self, limiter):
        """Should allow five immediate calls and deny the sixth."""
        results = [await limiter.check_limit("k") for _ in range(5)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0]

        denied = await limiter.check_limit("k")
        assert denied.allowed is False
        assert 0 < denied.retry_after_seconds <= 60

    @pytest.mark.asyncio
    async def test_retry_after_counts_down(self, limiter, clock):
        """Should shrink retry-after as the window elapses."""
        for _ in range(5):
            await limiter.check_limit("k")

        clock.advance(5)
        denied = await limiter.check_limit("k")
        assert denied.allowed is False
        assert denied.retry_after_seconds == 55

    @pytest.mark.asyncio
    async def test_refill_after_window(self, limiter, clock):
        """Should allow an exhausted key again once the window has passed."""
        for _ in range(5):
            await limiter.check_limit("k")
        assert (await limiter.check_limit("k")).allowed is False

        clock.advance(60)
        result = await limiter.check_limit("k")
        assert result.allowed is True
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_denials_do_not_move_refill_point(self, limiter, clock):
        """Should measure refill from the last refill, not the last denied call."""
        for _ in range(5):
            await limiter.check_limit("k")

        # One token takes 12s; each check is 2s after the previous one
        for _ in range(5):
            clock.advance(2)
            assert (await limiter.check_limit("k")).allowed is False

        # 12s since the last refill in total, though only 2s since the previous call
        clock.advance(2)
        assert (await limiter.check_limit("k")).allowed is True

    @pytest.mark.asyncio
    async def test_partial_window_refills_whole_tokens(self, limiter, clock):
        """Should add floor(elapsed / window * rate) tokens."""
        for _ in range(5):
            await limiter.check_limit("k")

        clock.advance(12)  # 12/60 * 5 = 1 token
        assert (await limiter.check_limit("k")).allowed is True
        assert (await limiter.check_limit("k")).allowed is False

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        """Should keep a separate bucket per key."""
        for _ in range(5):
            await limiter.check_limit("checkout:a")
        assert (await limiter.check_limit("checkout:a")).allowed is False
        assert (await limiter.check_limit("checkout:b")).allowed is True

    @pytest.mark.asyncio
    async def test_reset(self, limiter):
        """Should start a reset key from a fresh bucket."""
        for _ in range(6):
            await limiter.check_limit("k")
        await limiter.reset("k")
        assert (await limiter.check_limit("k")).allowed is True

    @pytest.mark.asyncio
    async def test_sweep_removes_idle_buckets(self, limiter, clock):
        """Should drop buckets idle for longer than the threshold."""
        await limiter.check_limit("old")
        clock.advance(100)
        await limiter.check_limit("fresh")
        clock.advance(30)

        removed = await limiter.sweep(max_idle_seconds=120)
        assert removed == 1
        assert len(limiter) == 1

    @pytest.mark.asyncio
    async def test_lru_eviction(self, clock):
        """Should evict the least recently checked key beyond max_buckets."""
        limiter = TokenBucketRateLimiter(
            RateLimitConfig(capacity=1, refill_rate=1, window_seconds=60.0, max_buckets=2),
            clock=clock,
        )
        await limiter.check_limit("a")
        await limiter.check_limit("b")
        await limiter.check_limit("a")  # touch a, b is now oldest
        await limiter.check_limit("c")

        assert len(limiter) == 2
        # a kept its exhausted bucket; b was evicted and starts fresh
        assert (await limiter.check_limit("a")).allowed is False
        assert (await limiter.check_limit("b")).allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_checks_do_not_lose_updates(self, limiter):
        """Should admit exactly capacity calls under concurrency."""
        results = await asyncio.gather(*(limiter.check_limit("k") for _ in range(20)))
        assert sum(1 for r in results if r.allowed) == 5


class TestSlidingWindowRateLimiter:
    """Tests for SlidingWindowRateLimiter."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def limiter(self, clock):
        return SlidingWindowRateLimiter(max_events=3, window_seconds=60.0, clock=clock)

    @pytest.mark.asyncio
    async def test_caps_events_in_window(self, limiter):
        """Should admit max_events calls and deny the next one."""
        results = [await limiter.check() for _ in range(3)]
        assert [r.remaining for r in results] == [2, 1, 0]

        denied = await limiter.check()
        assert denied.allowed is False
        assert denied.retry_after_seconds == 60
        assert len(limiter) == 3

    @pytest.mark.asyncio
    async def test_window_slides(self, limiter, clock):
        """Should free capacity as individual events age out."""
        await limiter.check()
        clock.advance(30)
        await limiter.check()
        await limiter.check()

        assert (await limiter.check()).retry_after_seconds == 30

        clock.advance(30)
        # The first event is exactly one window old and no longer counts
        assert (await limiter.check()).allowed is True
        assert (await limiter.check()).allowed is False

    @pytest.mark.asyncio
    async def test_reset(self, limiter):
        """Should forget every recorded event."""
        for _ in range(3):
            await limiter.check()
        await limiter.reset()
        assert (await limiter.check()).allowed is True
