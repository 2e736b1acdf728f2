from __future__ import annotations

import asyncio

import pytest

from checkpool.clients.result_cache import (
    InMemoryResultCache,
    RedisConnectionManager,
    RedisResultCache,
    cache_key,
    decode_outcome,
)
from checkpool.domain.models import CachedOutcome

OUTCOME = CachedOutcome(
    status="resolved_failure",
    message="declined",
    metadata={"issuer": "acme"},
    resolved_at="2026-01-02T03:04:05+00:00",
)


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class _FakeRedis:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis down")

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            removed += 1 if self.data.pop(key, None) is not None else 0
        return removed

    async def scan_iter(self, match: str):
        self._check()
        prefix = match.rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key

    async def info(self, section: str) -> dict[str, int]:
        self._check()
        assert section == "stats"
        return {"keyspace_hits": 4, "keyspace_misses": 1}


def _redis_cache(client: _FakeRedis | None) -> RedisResultCache:
    return RedisResultCache(connection=RedisConnectionManager(url="redis://test", client=client))


@pytest.mark.unit
def test_cache_keys_are_namespaced_by_check_type() -> None:
    assert cache_key(fingerprint="abc", check_type=2) == "result:2:abc"


@pytest.mark.unit
def test_corrupt_cache_payload_reads_as_miss() -> None:
    assert decode_outcome("not json") is None
    assert decode_outcome('{"message": "no status"}') is None
    assert decode_outcome('["list"]') is None
    assert decode_outcome('{"status": "archived", "message": "legacy"}') is None
    assert decode_outcome('{"status": "leased"}') is None


@pytest.mark.unit
def test_in_memory_entries_expire_after_ttl() -> None:
    async def _run() -> None:
        clock = _Clock()
        cache = InMemoryResultCache(clock=clock)
        await cache.put(fingerprint="abc", check_type=1, outcome=OUTCOME, ttl_seconds=60)

        clock.now += 59
        assert await cache.get(fingerprint="abc", check_type=1) == OUTCOME
        assert await cache.get(fingerprint="abc", check_type=2) is None

        clock.now += 1
        assert await cache.get(fingerprint="abc", check_type=1) is None

        stats = await cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 2
        assert stats["total_keys"] == 0

    asyncio.run(_run())


@pytest.mark.unit
def test_in_memory_put_with_disabled_ttl_is_skipped() -> None:
    async def _run() -> None:
        cache = InMemoryResultCache()
        await cache.put(fingerprint="abc", check_type=1, outcome=OUTCOME, ttl_seconds=0)
        assert cache.entries == {}

    asyncio.run(_run())


@pytest.mark.unit
def test_redis_cache_stores_with_ttl_and_flushes_only_result_keys() -> None:
    async def _run() -> None:
        client = _FakeRedis()
        client.data["ratelimit:10.0.0.1"] = "3"
        cache = _redis_cache(client)

        await cache.put(fingerprint="abc", check_type=1, outcome=OUTCOME, ttl_seconds=604800)
        assert client.ttls["result:1:abc"] == 604800
        assert await cache.get(fingerprint="abc", check_type=1) == OUTCOME

        stats = await cache.stats()
        assert stats["total_keys"] == 1
        assert stats["hits"] == 4

        await cache.flush()
        assert list(client.data) == ["ratelimit:10.0.0.1"]

    asyncio.run(_run())


@pytest.mark.unit
def test_redis_failures_are_swallowed() -> None:
    async def _run() -> None:
        cache = _redis_cache(_FakeRedis(fail=True))

        await cache.put(fingerprint="abc", check_type=1, outcome=OUTCOME, ttl_seconds=60)
        assert await cache.get(fingerprint="abc", check_type=1) is None
        await cache.delete(fingerprint="abc", check_type=1)
        await cache.flush()

        stats = await cache.stats()
        assert stats["connected"] is False
        assert "redis down" in str(stats["error"])

    asyncio.run(_run())


@pytest.mark.unit
def test_redis_cache_without_connection_is_disabled() -> None:
    async def _run() -> None:
        cache = _redis_cache(None)

        assert await cache.get(fingerprint="abc", check_type=1) is None
        assert (await cache.stats())["enabled"] is False

    asyncio.run(_run())
