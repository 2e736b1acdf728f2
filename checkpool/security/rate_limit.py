from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import math
import time

from checkpool.clients.result_cache import RedisConnectionManager
from checkpool.domain.contracts import RateLimitBackend
from checkpool.domain.errors import SecurityRejection

logger = logging.getLogger("checkpool.security")

RATE_LIMIT_KEY_PREFIX = "ratelimit:"


@dataclass
class _WindowRecord:
    count: int
    reset_at: float


@dataclass
class InMemoryRateLimitBackend:
    """Fixed window per key, held in process memory.

    With several API processes each one keeps its own counters, so the limit
    becomes per-process. Use the Redis backend for a global limit.
    """

    clock: Callable[[], float] = time.monotonic
    sweep_interval_seconds: float = 600.0
    grace_seconds: float = 60.0
    records: dict[str, _WindowRecord] = field(default_factory=dict)
    _last_sweep: float | None = field(default=None, init=False)

    async def hit(self, *, key: str, window_seconds: int) -> tuple[int, float]:
        now = self.clock()
        if self._last_sweep is None:
            self._last_sweep = now
        elif now - self._last_sweep >= self.sweep_interval_seconds:
            await self.sweep()

        record = self.records.get(key)
        if record is None or now >= record.reset_at:
            record = _WindowRecord(count=0, reset_at=now + window_seconds)
            self.records[key] = record
        record.count += 1
        return record.count, record.reset_at - now

    async def sweep(self) -> int:
        now = self.clock()
        stale = [key for key, record in self.records.items() if record.reset_at + self.grace_seconds < now]
        for key in stale:
            del self.records[key]
        self._last_sweep = now
        return len(stale)


@dataclass
class RedisRateLimitBackend:
    """Shared fixed-window counter: INCR plus EXPIRE on the first hit."""

    connection: RedisConnectionManager

    async def hit(self, *, key: str, window_seconds: int) -> tuple[int, float]:
        client = self.connection.client
        if client is None:
            return 0, float(window_seconds)
        redis_key = f"{RATE_LIMIT_KEY_PREFIX}{key}"
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.ttl(redis_key)
            count, ttl = await pipe.execute()
        if ttl is None or ttl < 0:
            await client.expire(redis_key, window_seconds)
            ttl = window_seconds
        return int(count), float(ttl)

    async def sweep(self) -> int:
        # Redis expires windows on its own.
        return 0


@dataclass
class RateLimiter:
    backend: RateLimitBackend

    async def enforce(self, *, address: str, max_requests: int, window_seconds: int) -> None:
        window = window_seconds if window_seconds > 0 else 60
        try:
            count, seconds_until_reset = await self.backend.hit(key=address, window_seconds=window)
        except Exception as exc:
            # A broken counter store must not block workers.
            logger.warning(
                "rate limit backend failed",
                extra={"remote_addr": address, "reason": str(exc)},
            )
            return
        if count > max_requests:
            retry_after = max(1, math.ceil(seconds_until_reset))
            raise SecurityRejection(
                f"rate limit exceeded, retry after {retry_after}s",
                status_code=429,
                error_code="rate_limited",
                title="Too Many Requests",
                retry_after=retry_after,
            )
