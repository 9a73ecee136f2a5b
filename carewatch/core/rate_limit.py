"""
Fixed-window request limiter.

Counters live behind ``CounterStore`` so a single process can keep them in memory while
a multi-instance deployment shares them through Redis. Precision is not a goal: the
limiter only bounds abuse of ingestion and privileged endpoints.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import structlog
from fastapi import Request
from redis.exceptions import RedisError

from carewatch.core.errors import RateLimitError
from carewatch.core.middleware import client_identity

log = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_in: float  # seconds until the current window closes


class CounterStore(Protocol):
    async def increment(self, key: str, window_seconds: float) -> tuple[int, float]:
        """Increment ``key`` and return (count in current window, seconds until reset)."""
        ...


@dataclass
class _Window:
    count: int
    reset_at: float


class MemoryCounterStore:
    """Process-local counters. Unsafe to share between instances."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = asyncio.Lock()

    async def increment(self, key: str, window_seconds: float) -> tuple[int, float]:
        async with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                window = _Window(count=0, reset_at=now + window_seconds)
                self._windows[key] = window
                self._prune(now)
            window.count += 1
            return window.count, window.reset_at - now

    def _prune(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            self._windows.pop(key, None)


class RedisCounterStore:
    """
    Counters shared through Redis: INCR plus a PEXPIRE set only on the first hit.

    Redis is best-effort. While it is unreachable the counters fall back to process-local
    windows, so quotas keep applying per instance instead of failing every request.
    """

    KEY_PREFIX = "ratelimit:"

    def __init__(self, client: Any, fallback: MemoryCounterStore | None = None) -> None:
        self._client = client
        self._fallback = fallback or MemoryCounterStore()

    async def increment(self, key: str, window_seconds: float) -> tuple[int, float]:
        try:
            return await self._increment(key, window_seconds)
        except (RedisError, OSError) as exc:
            log.warning("rate_limit.redis_unavailable", key=key, error=str(exc))
            return await self._fallback.increment(key, window_seconds)

    async def _increment(self, key: str, window_seconds: float) -> tuple[int, float]:
        redis_key = f"{self.KEY_PREFIX}{key}"
        window_ms = max(1, int(window_seconds * 1000))
        pipeline = self._client.pipeline()
        pipeline.incr(redis_key)
        pipeline.pexpire(redis_key, window_ms, nx=True)
        pipeline.pttl(redis_key)
        count, _, ttl_ms = await pipeline.execute()
        if ttl_ms is None or ttl_ms < 0:
            # Key lost its TTL (e.g. created by an older writer); re-arm it.
            await self._client.pexpire(redis_key, window_ms)
            ttl_ms = window_ms
        return int(count), ttl_ms / 1000


class RateLimiter:
    def __init__(self, store: CounterStore) -> None:
        self._store = store

    async def check(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision:
        count, reset_in = await self._store.increment(key, window_seconds)
        if count > limit:
            return RateLimitDecision(allowed=False, remaining=0, reset_in=reset_in)
        return RateLimitDecision(allowed=True, remaining=limit - count, reset_in=reset_in)

    async def enforce(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision:
        decision = await self.check(key, limit, window_seconds)
        if not decision.allowed:
            log.warning("rate_limit.rejected", key=key, limit=limit, reset_in=decision.reset_in)
            raise RateLimitError("Rate limit exceeded", reset_in=decision.reset_in, key=key)
        return decision


class RateLimited:
    """FastAPI dependency guarding an endpoint with a per-client quota."""

    def __init__(self, scope: str, limit: int, window_seconds: float) -> None:
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds

    async def __call__(self, request: Request) -> RateLimitDecision:
        limiter: RateLimiter = request.app.state.engine.rate_limiter
        key = f"{self.scope}:{client_identity(request)}"
        return await limiter.enforce(key, self.limit, self.window_seconds)
