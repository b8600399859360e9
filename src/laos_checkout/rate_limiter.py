"""Rate limiting: per-key token buckets for checkout attempts and a sliding
window for inbound webhook deliveries.

Buckets refill lazily: tokens are only added when a key is checked, in whole
units proportional to the time since the last refill. ``last_refill`` moves
only when tokens are actually added, so a key that keeps getting denied
accumulates elapsed time against the same starting point.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Token bucket configuration."""
    capacity: int = 5
    refill_rate: int = 5  # tokens added per full window
    window_seconds: float = 60.0
    max_buckets: int = 10_000


@dataclass
class RateLimitResult:
    """Outcome of a single limit check."""
    allowed: bool
    remaining: int = 0
    retry_after_seconds: Optional[int] = None


@dataclass
class _Bucket:
    tokens: int
    last_refill: float
    last_seen: float


class TokenBucketRateLimiter:
    """
    In-process token bucket limiter keyed by identity.

    The first check for a key creates its bucket with ``capacity - 1``
    tokens, the current request having consumed one. Bucket state lives in
    memory only and is bounded by ``max_buckets`` (least recently checked
    keys are evicted first).

    Usage:
        limiter = TokenBucketRateLimiter(RateLimitConfig(capacity=5))
        result = await limiter.check_limit(f"checkout:{user_id}")
        if not result.allowed:
            raise RateLimitExceededError(result.retry_after_seconds)
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or RateLimitConfig()
        self._clock = clock
        self._buckets: "OrderedDict[str, _Bucket]" = OrderedDict()
        self._lock = asyncio.Lock()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def __len__(self) -> int:
        return len(self._buckets)

    async def check_limit(self, key: str) -> RateLimitResult:
        """Consume one token for ``key`` if one is available."""
        async with self._lock:
            return self._check(key)

    def _check(self, key: str) -> RateLimitResult:
        cfg = self._config
        now = self._clock()
        window = cfg.window_seconds

        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(tokens=cfg.capacity - 1, last_refill=now, last_seen=now)
            self._buckets[key] = bucket
            self._evict_overflow()
            return RateLimitResult(allowed=True, remaining=bucket.tokens)

        self._buckets.move_to_end(key)
        bucket.last_seen = now

        elapsed = now - bucket.last_refill
        tokens_to_add = math.floor((elapsed / window) * cfg.refill_rate)
        if tokens_to_add > 0:
            bucket.tokens = min(cfg.capacity, bucket.tokens + tokens_to_add)
            bucket.last_refill = now

        if bucket.tokens > 0:
            bucket.tokens -= 1
            return RateLimitResult(allowed=True, remaining=bucket.tokens)

        retry_after = max(1, math.ceil(window - elapsed))
        logger.info(
            "Rate limit exceeded",
            extra={"rate_limit_key": key, "retry_after": retry_after},
        )
        return RateLimitResult(allowed=False, remaining=0, retry_after_seconds=retry_after)

    def _evict_overflow(self) -> None:
        while len(self._buckets) > self._config.max_buckets:
            evicted, _ = self._buckets.popitem(last=False)
            logger.debug("Evicted rate limit bucket %s", evicted)

    async def reset(self, key: str) -> None:
        """Forget a key's bucket so its next check starts fresh."""
        async with self._lock:
            self._buckets.pop(key, None)

    async def sweep(self, max_idle_seconds: Optional[float] = None) -> int:
        """
        Drop buckets not checked for ``max_idle_seconds``.

        Defaults to two windows, after which an idle bucket would have
        refilled to capacity anyway.

        Returns:
            Number of buckets removed.
        """
        idle_limit = (
            max_idle_seconds
            if max_idle_seconds is not None
            else self._config.window_seconds * 2
        )
        async with self._lock:
            now = self._clock()
            stale = [
                key for key, bucket in self._buckets.items()
                if now - bucket.last_seen > idle_limit
            ]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.debug("Swept %d idle rate limit buckets", len(stale))
        return len(stale)


class SlidingWindowRateLimiter:
    """
    Admits at most ``max_events`` calls in any trailing ``window_seconds``.

    A single shared window, used to cap webhook deliveries regardless of
    sender. Rejected calls are not recorded.
    """

    def __init__(
        self,
        max_events: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._events)

    async def check(self) -> RateLimitResult:
        async with self._lock:
            now = self._clock()
            window_start = now - self.window_seconds
            while self._events and self._events[0] <= window_start:
                self._events.popleft()

            if len(self._events) >= self.max_events:
                retry_after = max(1, math.ceil(self._events[0] - window_start))
                return RateLimitResult(allowed=False, remaining=0, retry_after_seconds=retry_after)

            self._events.append(now)
            return RateLimitResult(allowed=True, remaining=self.max_events - len(self._events))

    async def reset(self) -> None:
        async with self._lock:
            self._events.clear()
