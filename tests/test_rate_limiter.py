"""Tests for the per-origin sliding window rate limiters."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.gateway.rate_limiter import RedisRateLimiter, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ==========================================================================
# Test: in-memory sliding window
# ==========================================================================


class TestSlidingWindowRateLimiter:
    @pytest.fixture
    def clock(self):
        return FakeClock(1000.0)

    @pytest.fixture
    def limiter(self, clock):
        return SlidingWindowRateLimiter(max_requests=3, window_seconds=60, clock=clock)

    @pytest.mark.asyncio
    async def test_allows_up_to_ceiling(self, limiter):
        results = [await limiter.allow("1.2.3.4") for _ in range(3)]
        assert results == [True, True, True]
        assert await limiter.allow("1.2.3.4") is False

    @pytest.mark.asyncio
    async def test_rejections_are_not_recorded(self, limiter, clock):
        for _ in range(3):
            await limiter.allow("o")
        for _ in range(5):
            assert await limiter.allow("o") is False

        # the three accepted instants age out together; rejected ones never counted
        clock.advance(60.01)
        assert await limiter.allow("o") is True
        assert await limiter.remaining("o") == 2

    @pytest.mark.asyncio
    async def test_window_slides(self, limiter, clock):
        await limiter.allow("o")
        clock.advance(30)
        await limiter.allow("o")
        await limiter.allow("o")
        assert await limiter.allow("o") is False

        clock.advance(30)  # first instant is now exactly window-old
        assert await limiter.allow("o") is True
        assert await limiter.allow("o") is False

    @pytest.mark.asyncio
    async def test_origins_are_independent(self, limiter):
        for _ in range(3):
            await limiter.allow("a")
        assert await limiter.allow("a") is False
        assert await limiter.allow("b") is True

    @pytest.mark.asyncio
    async def test_retry_after(self, limiter, clock):
        assert await limiter.retry_after("o") == 0.0
        await limiter.allow("o")
        clock.advance(10)
        await limiter.allow("o")
        await limiter.allow("o")
        assert await limiter.retry_after("o") == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_remaining(self, limiter):
        assert await limiter.remaining("o") == 3
        await limiter.allow("o")
        assert await limiter.remaining("o") == 2

    @pytest.mark.asyncio
    async def test_n_plus_one_concurrent_requests(self):
        limiter = SlidingWindowRateLimiter(max_requests=10, window_seconds=60)
        results = await asyncio.gather(*(limiter.allow("burst") for _ in range(11)))
        assert results.count(True) == 10
        assert results.count(False) == 1

    @pytest.mark.asyncio
    async def test_sweep_drops_idle_origins(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=3, window_seconds=10, sweep_interval=5, clock=clock)
        await limiter.allow("idle")
        clock.advance(11)
        await limiter.allow("active")

        stats = limiter.get_stats()
        assert stats["tracked_origins"] == 1
        assert stats["evicted_origins"] == 1

    @pytest.mark.asyncio
    async def test_lru_bound(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=3, window_seconds=60, max_origins=2, clock=clock)
        await limiter.allow("a")
        await limiter.allow("b")
        await limiter.allow("a")  # a is now most recently used
        await limiter.allow("c")

        assert limiter.get_stats()["tracked_origins"] == 2
        # b was evicted, so it starts over with a full allowance
        assert await limiter.remaining("b") == 3
        assert await limiter.remaining("a") == 1

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(max_requests=0)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(window_seconds=0)

    def test_get_stats(self, limiter):
        stats = limiter.get_stats()
        assert stats["backend"] == "memory"
        assert stats["max_requests"] == 3
        assert stats["window_seconds"] == 60


# ==========================================================================
# Test: Redis sliding window (mocked client)
# ==========================================================================


def _mock_redis(count: int) -> tuple[MagicMock, MagicMock]:
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[0, 1, count, True])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=None)

    redis = MagicMock()
    redis.pipeline.return_value = pipe
    redis.zrem = AsyncMock(return_value=1)
    redis.zcount = AsyncMock(return_value=count)
    redis.zrangebyscore = AsyncMock(return_value=[("m", 970.0)])
    return redis, pipe


class TestRedisRateLimiter:
    @pytest.mark.asyncio
    async def test_allows_under_ceiling(self):
        redis, pipe = _mock_redis(count=3)
        limiter = RedisRateLimiter(redis, max_requests=3, window_seconds=60, clock=lambda: 1000.0)

        assert await limiter.allow("1.2.3.4") is True
        redis.pipeline.assert_called_once_with(transaction=True)
        pipe.zremrangebyscore.assert_called_once_with("ratelimit:origin:1.2.3.4", 0, 940.0)
        redis.zrem.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejects_and_removes_own_member(self):
        redis, pipe = _mock_redis(count=4)
        limiter = RedisRateLimiter(redis, max_requests=3, window_seconds=60, clock=lambda: 1000.0)

        assert await limiter.allow("1.2.3.4") is False
        added_member = next(iter(pipe.zadd.call_args.args[1]))
        redis.zrem.assert_awaited_once_with("ratelimit:origin:1.2.3.4", added_member)

    @pytest.mark.asyncio
    async def test_retry_after_from_oldest_member(self):
        redis, _ = _mock_redis(count=3)
        limiter = RedisRateLimiter(redis, max_requests=3, window_seconds=60, clock=lambda: 1000.0)

        assert await limiter.retry_after("o") == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_remaining(self):
        redis, _ = _mock_redis(count=1)
        limiter = RedisRateLimiter(redis, max_requests=3, window_seconds=60, clock=lambda: 1000.0)

        assert await limiter.remaining("o") == 2
        assert limiter.get_stats()["backend"] == "redis"
