from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import importlib
import json
import logging
import time
from typing import Any

from checkpool.domain.contracts import RESULT_CACHE_KEY_PREFIX
from checkpool.domain.models import RESOLVED_STATUSES, CachedOutcome

try:
    redis_asyncio = importlib.import_module("redis.asyncio")
except ModuleNotFoundError:  # pragma: no cover
    redis_asyncio = None  # type: ignore[assignment]

logger = logging.getLogger("checkpool.cache")


def cache_key(*, fingerprint: str, check_type: int) -> str:
    return f"{RESULT_CACHE_KEY_PREFIX}{check_type}:{fingerprint}"


def encode_outcome(outcome: CachedOutcome) -> str:
    return json.dumps(
        {
            "status": outcome.status,
            "message": outcome.message,
            "metadata": outcome.metadata,
            "resolved_at": outcome.resolved_at,
        }
    )


def decode_outcome(raw: str | bytes) -> CachedOutcome | None:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("status"), str):
        return None
    # Only resolved outcomes are cached; anything else reads as a miss.
    if payload["status"] not in RESOLVED_STATUSES:
        return None
    metadata = payload.get("metadata")
    return CachedOutcome(
        status=payload["status"],
        message=str(payload.get("message") or ""),
        metadata=metadata if isinstance(metadata, dict) else {},
        resolved_at=payload.get("resolved_at"),
    )


@dataclass
class InMemoryResultCache:
    """Process-local cache used when no Redis URL is configured."""

    clock: Callable[[], float] = time.monotonic
    entries: dict[str, tuple[str, float]] = field(default_factory=dict)
    hits: int = 0
    misses: int = 0

    async def get(self, *, fingerprint: str, check_type: int) -> CachedOutcome | None:
        key = cache_key(fingerprint=fingerprint, check_type=check_type)
        entry = self.entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        raw, expires_at = entry
        if self.clock() >= expires_at:
            del self.entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return decode_outcome(raw)

    async def put(self, *, fingerprint: str, check_type: int, outcome: CachedOutcome, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        key = cache_key(fingerprint=fingerprint, check_type=check_type)
        self.entries[key] = (encode_outcome(outcome), self.clock() + ttl_seconds)

    async def delete(self, *, fingerprint: str, check_type: int) -> None:
        self.entries.pop(cache_key(fingerprint=fingerprint, check_type=check_type), None)

    async def flush(self) -> None:
        self.entries.clear()

    async def stats(self) -> dict[str, object]:
        now = self.clock()
        live = sum(1 for _raw, expires_at in self.entries.values() if expires_at > now)
        return {
            "enabled": True,
            "connected": True,
            "backend": "memory",
            "total_keys": live,
            "hits": self.hits,
            "misses": self.misses,
        }


@dataclass
class RedisConnectionManager:
    url: str
    client: Any | None = None

    async def startup(self) -> None:
        if redis_asyncio is None:  # pragma: no cover
            raise RuntimeError("redis is required when REDIS_URL is set")
        self.client = redis_asyncio.from_url(self.url, decode_responses=True)

    async def shutdown(self) -> None:
        if self.client is None:
            return
        await self.client.aclose()
        self.client = None


@dataclass
class RedisResultCache:
    """Redis-backed result cache.

    The cache is an optimisation: every Redis failure is logged and treated
    as a miss, so an unreachable Redis never fails a fetch or a report.
    """

    connection: RedisConnectionManager

    async def get(self, *, fingerprint: str, check_type: int) -> CachedOutcome | None:
        client = self.connection.client
        if client is None:
            return None
        try:
            raw = await client.get(cache_key(fingerprint=fingerprint, check_type=check_type))
        except Exception as exc:
            logger.warning("result cache read failed", extra={"reason": str(exc)})
            return None
        if raw is None:
            return None
        return decode_outcome(raw)

    async def put(self, *, fingerprint: str, check_type: int, outcome: CachedOutcome, ttl_seconds: int) -> None:
        client = self.connection.client
        if client is None or ttl_seconds <= 0:
            return
        try:
            await client.setex(
                cache_key(fingerprint=fingerprint, check_type=check_type),
                ttl_seconds,
                encode_outcome(outcome),
            )
        except Exception as exc:
            logger.warning("result cache write failed", extra={"reason": str(exc)})

    async def delete(self, *, fingerprint: str, check_type: int) -> None:
        client = self.connection.client
        if client is None:
            return
        try:
            await client.delete(cache_key(fingerprint=fingerprint, check_type=check_type))
        except Exception as exc:
            logger.warning("result cache delete failed", extra={"reason": str(exc)})

    async def flush(self) -> None:
        # Only result keys are removed; rate-limit counters may share the database.
        client = self.connection.client
        if client is None:
            return
        try:
            keys = [key async for key in client.scan_iter(match=f"{RESULT_CACHE_KEY_PREFIX}*")]
            if keys:
                await client.delete(*keys)
        except Exception as exc:
            logger.warning("result cache flush failed", extra={"reason": str(exc)})
            return
        logger.info("result cache flushed")

    async def stats(self) -> dict[str, object]:
        client = self.connection.client
        if client is None:
            return {"enabled": False, "connected": False, "backend": "redis"}
        try:
            total_keys = 0
            async for _key in client.scan_iter(match=f"{RESULT_CACHE_KEY_PREFIX}*"):
                total_keys += 1
            info = await client.info("stats")
        except Exception as exc:
            return {"enabled": True, "connected": False, "backend": "redis", "error": str(exc)}
        return {
            "enabled": True,
            "connected": True,
            "backend": "redis",
            "total_keys": total_keys,
            "hits": int(info.get("keyspace_hits", 0)),
            "misses": int(info.get("keyspace_misses", 0)),
        }
