"""Sliding-window rate limiting for inbound webhooks.

The limiter is backed by a store so the window can be shared across
instances: the in-memory store is per process, the Redis store keeps one
sorted set per key and is safe with several API workers.
"""

from __future__ import annotations

import math
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import redis
from loguru import logger

from cycleflow.config.settings import settings


class RateLimitStore(Protocol):
    def hit(self, key: str, now: float, window_seconds: float) -> int:
        """Record one request for key and return the count inside the window."""
        ...


class InMemoryRateLimitStore:
    """Process-local sliding log with periodic eviction of idle keys."""

    def __init__(self) -> None:
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    def hit(self, key: str, now: float, window_seconds: float) -> int:
        cutoff = now - window_seconds
        with self._lock:
            if now - self._last_sweep >= window_seconds:
                self._evict(cutoff)
                self._last_sweep = now

            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            hits.append(now)
            return len(hits)

    def _evict(self, cutoff: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug(f"[RATE_LIMIT] Evicted {len(stale)} idle keys")

    def __len__(self) -> int:
        return len(self._hits)


class RedisRateLimitStore:
    """Redis sorted-set sliding log shared by every instance."""

    KEY_PREFIX = "cycleflow:ratelimit:"

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.redis = client or redis.from_url(settings.redis_url, decode_responses=True)

    def hit(self, key: str, now: float, window_seconds: float) -> int:
        redis_key = f"{self.KEY_PREFIX}{key}"
        member = f"{now}:{uuid.uuid4().hex}"
        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
        pipe.zadd(redis_key, {member: now})
        pipe.zcard(redis_key)
        pipe.expire(redis_key, math.ceil(window_seconds))
        _, _, count, _ = pipe.execute()
        return int(count)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    retry_after: int


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

    def check(self, key: str) -> RateLimitResult:
        count = self.store.hit(key, self._clock(), self.window_seconds)
        allowed = count <= self.max_requests
        if not allowed:
            logger.warning(f"[RATE_LIMIT] Limit exceeded for key={key}: {count} requests in {self.window_seconds}s")
        return RateLimitResult(
            allowed=allowed,
            count=count,
            retry_after=math.ceil(self.window_seconds),
        )


_limiter: RateLimiter | None = None


def get_webhook_rate_limiter() -> RateLimiter:
    """Get the process-wide webhook rate limiter (lazy initialization)."""
    global _limiter
    if _limiter is None:
        store: RateLimitStore
        if settings.rate_limit_backend == "redis":
            store = RedisRateLimitStore()
            logger.info("[RATE_LIMIT] Using Redis rate limit store")
        else:
            store = InMemoryRateLimitStore()
            logger.info("[RATE_LIMIT] Using in-memory rate limit store")
        _limiter = RateLimiter(
            store,
            max_requests=settings.webhook_rate_limit_max_requests,
            window_seconds=settings.webhook_rate_limit_window_seconds,
        )
    return _limiter
