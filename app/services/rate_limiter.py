"""
Rate Limiter - Fixed-window request counters per caller and route class.

Two interchangeable backends share the same window arithmetic:
  - RedisRateLimitBackend: SET NX PX + INCR in one MULTI on a shared
    store, for multiple instances.
  - InMemoryRateLimitBackend: a per-process dict. Not durable and not shared
    between processes; used for single-instance runs, tests, and as the
    fallback whenever Redis fails.

The limiter never fails a request because of its own storage.
"""

import time
from collections.abc import Callable
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.config import settings
from app.models.domain import RateDecision
from app.observability import get_logger, metrics

logger = get_logger(__name__)

KEY_PREFIX = "rl"


def window_index(now_ms: int, window_ms: int) -> int:
    """Index of the fixed window containing now_ms."""
    return now_ms // window_ms


def storage_key(key: str, index: int) -> str:
    """Counter key for one caller/route in one window."""
    return f"{KEY_PREFIX}:{key}:{index}"


class RateLimitBackend(Protocol):
    """Counter store used by RateLimiter."""

    name: str

    async def incr(self, key: str, window_ms: int, now_ms: int) -> int:
        """Increment the counter, arming expiry on first use; return the new count."""
        ...

    async def close(self) -> None: ...


class InMemoryRateLimitBackend:
    """Per-process counters; expired windows are pruned lazily."""

    name = "memory"

    def __init__(self, prune_every: int = 1000) -> None:
        self._counters: dict[str, tuple[int, int]] = {}
        self._prune_every = prune_every
        self._ops = 0

    async def incr(self, key: str, window_ms: int, now_ms: int) -> int:
        self._ops += 1
        if self._ops % self._prune_every == 0:
            self.prune(now_ms)

        count, expires_at_ms = self._counters.get(key, (0, 0))
        if expires_at_ms <= now_ms:
            # First increment in this window arms the expiry
            count, expires_at_ms = 0, now_ms + window_ms
        count += 1
        self._counters[key] = (count, expires_at_ms)
        return count

    def prune(self, now_ms: int) -> int:
        """Drop expired counters. Returns the number removed."""
        expired = [k for k, (_, exp) in self._counters.items() if exp <= now_ms]
        for k in expired:
            del self._counters[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._counters)

    async def close(self) -> None:
        self._counters.clear()


class RedisRateLimitBackend:
    """Shared counters in Redis."""

    name = "redis"

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimitBackend":
        client = aioredis.from_url(
            url,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
            decode_responses=True,
        )
        return cls(client)

    async def incr(self, key: str, window_ms: int, now_ms: int) -> int:
        # The first call in a window creates the key with its TTL; INCR keeps it
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, px=window_ms, nx=True)
            pipe.incr(key)
            _, count = await pipe.execute()
        return int(count)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class RateLimiter:
    """Fixed-window limiter with transparent fallback to in-process counters."""

    def __init__(
        self,
        backend: RateLimitBackend | None = None,
        fallback: InMemoryRateLimitBackend | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.fallback = fallback if fallback is not None else InMemoryRateLimitBackend()
        self.backend: RateLimitBackend = backend if backend is not None else self.fallback
        self._clock = clock

    @property
    def backend_name(self) -> str:
        return self.backend.name

    async def allow(
        self,
        key: str,
        limit: int,
        window_ms: int,
        now_ms: int | None = None,
    ) -> RateDecision:
        """Count one call for `key` and decide whether it is within `limit`."""
        if limit <= 0 or window_ms <= 0:
            raise ValueError(f"limit and window_ms must be positive: {limit}, {window_ms}")

        now_ms = now_ms if now_ms is not None else int(self._clock() * 1000)
        index = window_index(now_ms, window_ms)
        counter_key = storage_key(key, index)
        reset_at_ms = (index + 1) * window_ms

        backend_name = self.backend.name
        try:
            count = await self.backend.incr(counter_key, window_ms, now_ms)
        except (RedisError, OSError, TimeoutError) as e:
            if self.backend is self.fallback:
                raise
            metrics.rate_limit_fallbacks_total.inc()
            logger.warning(
                "rate_limit_backend_unavailable",
                backend=self.backend.name,
                error=str(e),
            )
            backend_name = self.fallback.name
            count = await self.fallback.incr(counter_key, window_ms, now_ms)

        return RateDecision(
            allowed=count <= limit,
            count=count,
            limit=limit,
            reset_at_ms=reset_at_ms,
            backend=backend_name,
        )

    async def close(self) -> None:
        await self.backend.close()
        if self.backend is not self.fallback:
            await self.fallback.close()


# Process-wide limiter, configured at startup
_limiter: RateLimiter | None = None


def create_rate_limiter(redis_url: str | None = None) -> RateLimiter:
    """Redis-backed limiter when a URL is configured, in-memory otherwise."""
    if redis_url:
        return RateLimiter(backend=RedisRateLimitBackend.from_url(redis_url))
    return RateLimiter()


def get_rate_limiter() -> RateLimiter:
    """Get or create the process-wide limiter."""
    global _limiter
    if _limiter is None:
        _limiter = create_rate_limiter(settings.redis_url)
    return _limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    """Replace the process-wide limiter (startup and tests)."""
    global _limiter
    _limiter = limiter


async def close_rate_limiter() -> None:
    global _limiter
    if _limiter is not None:
        await _limiter.close()
        _limiter = None
