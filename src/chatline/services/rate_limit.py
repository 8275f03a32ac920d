"""Per-principal sliding-window rate limiting.

Request timestamps are kept per principal in a counter store: process memory
for a single instance, or a Redis sorted set (with a TTL) when several instances
share the quota. Checks and records are separate store operations, so
concurrent bursts may over- or under-count by one.
"""

import logging
import math
import time
import uuid
from collections import deque
from typing import Callable, Protocol

import redis.asyncio as redis

from chatline.config import Settings, settings as default_settings
from chatline.errors import RateLimitedError

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    """Sliding-window hit log keyed by principal."""

    async def hit(self, key: str, limit: int, window_seconds: float) -> float | None:
        """Record a hit if under ``limit``; otherwise return seconds until one frees up."""
        ...

    async def close(self) -> None: ...


def _retry_after(oldest: float, window_seconds: float, now: float) -> float:
    return max(oldest + window_seconds - now, 0.0)


class MemoryCounterStore:
    """Process-local hit log.

    Principals whose hits have all aged out are dropped on a periodic sweep.
    """

    def __init__(self, time_fn: Callable[[], float] = time.monotonic):
        self.time_fn = time_fn
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = time_fn()

    async def hit(self, key: str, limit: int, window_seconds: float) -> float | None:
        now = self.time_fn()
        if now - self._last_sweep >= window_seconds:
            self._sweep(now - window_seconds)
            self._last_sweep = now

        hits = self._hits.setdefault(key, deque())
        _prune(hits, now - window_seconds)
        if len(hits) >= limit:
            return _retry_after(hits[0], window_seconds, now)
        hits.append(now)
        return None

    def _sweep(self, cutoff: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            _prune(hits, cutoff)
            if not hits:
                del self._hits[key]

    async def close(self) -> None:
        self._hits.clear()


def _prune(hits: deque[float], cutoff: float) -> None:
    while hits and hits[0] <= cutoff:
        hits.popleft()


class RedisCounterStore:
    """Hit log shared through Redis sorted sets scored by timestamp."""

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "chatline:ratelimit",
        time_fn: Callable[[], float] = time.time,
    ):
        self.client = client
        self.prefix = prefix
        self.time_fn = time_fn

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(redis.from_url(url))

    async def hit(self, key: str, limit: int, window_seconds: float) -> float | None:
        now = self.time_fn()
        redis_key = f"{self.prefix}:{key}"

        pipe = self.client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        pipe.zcard(redis_key)
        _, oldest, count = await pipe.execute()

        if count >= limit:
            oldest_score = oldest[0][1] if oldest else now
            return _retry_after(oldest_score, window_seconds, now)

        pipe = self.client.pipeline()
        pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.expire(redis_key, math.ceil(window_seconds))
        await pipe.execute()
        return None

    async def close(self) -> None:
        await self.client.aclose()


class RateLimiter:
    """Fixed quota of requests per rolling window, per principal."""

    def __init__(self, store: CounterStore, limit: int = 30, window_seconds: float = 60):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    async def check(self, principal: str) -> None:
        """Count a request for ``principal``.

        Raises:
            RateLimitedError: If the principal is over quota; the request is not counted.

        """
        wait = await self.store.hit(principal, self.limit, self.window_seconds)
        if wait is None:
            return
        retry_after = max(1, math.ceil(wait))
        logger.warning(f"Rate limit exceeded for principal {principal}, retry in {retry_after}s")
        raise RateLimitedError(
            f"Rate limit exceeded: {self.limit} requests per {self.window_seconds:g} seconds.",
            retry_after=retry_after,
        )

    async def close(self) -> None:
        await self.store.close()


def create_rate_limiter(config: Settings | None = None) -> RateLimiter:
    """Build a limiter over Redis when ``redis_url`` is set, else process memory."""
    config = config or default_settings
    if config.redis_url:
        logger.info("Using Redis rate-limit counters")
        store: CounterStore = RedisCounterStore.from_url(config.redis_url)
    else:
        store = MemoryCounterStore()
    return RateLimiter(
        store, limit=config.rate_limit_requests, window_seconds=config.rate_limit_window_seconds
    )
