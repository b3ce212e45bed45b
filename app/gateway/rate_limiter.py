"""Origin Rate Limiter: ingress guard with a per-origin sliding window.

Each origin (normally the caller's network address) keeps the instants of
its recent requests. A request is accepted when fewer than `max_requests`
instants fall inside the trailing `window_seconds`; accepted requests are
recorded, rejected ones are not. Pure accept/reject, never blocks.

Two interchangeable backends share the `OriginRateLimiter` contract:
  - SlidingWindowRateLimiter: process memory, LRU-bounded, periodically swept.
    Per-instance only; restarts and horizontal scaling each get fresh buckets.
  - RedisRateLimiter: sorted set per origin in Redis, shared across instances.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Callable
from typing import Protocol

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class OriginRateLimiter(Protocol):
    max_requests: int
    window_seconds: float

    async def allow(self, origin_key: str) -> bool: ...

    async def retry_after(self, origin_key: str) -> float: ...

    async def remaining(self, origin_key: str) -> int: ...

    def get_stats(self) -> dict: ...


class SlidingWindowRateLimiter:
    """In-memory sliding window limiter keyed by origin.

    Usage:
        limiter = SlidingWindowRateLimiter(max_requests=10, window_seconds=60)

        if not await limiter.allow(client_ip):
            # reject with 429, Retry-After: await limiter.retry_after(client_ip)
            ...
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        max_origins: int = 10_000,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_origins = max_origins
        self.sweep_interval = sweep_interval
        self._clock = clock
        # origin → request instants, least recently used first
        self._buckets: OrderedDict[str, deque[float]] = OrderedDict()
        self._lock = asyncio.Lock()
        self._last_sweep = clock()
        self.evicted_total = 0

    def _prune(self, bucket: deque[float], now: float) -> None:
        """Remove instants that left the trailing window."""
        cutoff = now - self.window_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def _sweep(self, now: float) -> None:
        """Drop origins with no instant inside the window."""
        cutoff = now - self.window_seconds
        stale = [origin for origin, bucket in self._buckets.items() if not bucket or bucket[-1] <= cutoff]
        for origin in stale:
            del self._buckets[origin]
        self.evicted_total += len(stale)
        self._last_sweep = now
        if stale:
            logger.debug("Rate limiter sweep dropped %d idle origins", len(stale))

    def _evict_overflow(self) -> None:
        while len(self._buckets) > self.max_origins:
            self._buckets.popitem(last=False)
            self.evicted_total += 1

    async def allow(self, origin_key: str) -> bool:
        async with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self.sweep_interval:
                self._sweep(now)

            bucket = self._buckets.get(origin_key)
            if bucket is None:
                bucket = deque()
                self._buckets[origin_key] = bucket
            else:
                self._buckets.move_to_end(origin_key)

            self._prune(bucket, now)
            if len(bucket) >= self.max_requests:
                return False

            bucket.append(now)
            self._evict_overflow()
            return True

    async def retry_after(self, origin_key: str) -> float:
        """Seconds until the oldest surviving instant leaves the window."""
        async with self._lock:
            bucket = self._buckets.get(origin_key)
            if not bucket:
                return 0.0
            now = self._clock()
            self._prune(bucket, now)
            if len(bucket) < self.max_requests:
                return 0.0
            return max(bucket[0] + self.window_seconds - now, 0.0)

    async def remaining(self, origin_key: str) -> int:
        async with self._lock:
            bucket = self._buckets.get(origin_key)
            if not bucket:
                return self.max_requests
            self._prune(bucket, self._clock())
            return max(self.max_requests - len(bucket), 0)

    def get_stats(self) -> dict:
        return {
            "backend": "memory",
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
            "tracked_origins": len(self._buckets),
            "max_origins": self.max_origins,
            "evicted_origins": self.evicted_total,
        }


class RedisRateLimiter:
    """Sliding window limiter on a Redis sorted set per origin.

    Members are unique request ids scored by wall-clock time. One MULTI
    pipeline prunes, counts and records; a request that pushed the set over
    the ceiling removes its own member again, so rejected requests are not
    counted.
    """

    def __init__(
        self,
        redis: Redis,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        key_prefix: str = "ratelimit:origin:",
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._clock = clock

    def _key(self, origin_key: str) -> str:
        return f"{self.key_prefix}{origin_key}"

    async def allow(self, origin_key: str) -> bool:
        key = self._key(origin_key)
        now = self._clock()
        member = f"{now:.6f}:{uuid.uuid4().hex[:8]}"

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now - self.window_seconds)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.expire(key, int(self.window_seconds) + 1)
            _, _, count, _ = await pipe.execute()

        if count > self.max_requests:
            await self.redis.zrem(key, member)
            return False
        return True

    async def retry_after(self, origin_key: str) -> float:
        key = self._key(origin_key)
        now = self._clock()
        count = await self.redis.zcount(key, f"({now - self.window_seconds}", "+inf")
        if count < self.max_requests:
            return 0.0
        oldest = await self.redis.zrangebyscore(key, f"({now - self.window_seconds}", "+inf", start=0, num=1, withscores=True)
        if not oldest:
            return 0.0
        return max(oldest[0][1] + self.window_seconds - now, 0.0)

    async def remaining(self, origin_key: str) -> int:
        now = self._clock()
        count = await self.redis.zcount(self._key(origin_key), f"({now - self.window_seconds}", "+inf")
        return max(self.max_requests - count, 0)

    def get_stats(self) -> dict:
        return {
            "backend": "redis",
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
        }
