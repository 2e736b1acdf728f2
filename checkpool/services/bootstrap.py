from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os

from checkpool.api.handlers.deps import ApiDeps
from checkpool.clients.result_cache import InMemoryResultCache, RedisConnectionManager, RedisResultCache
from checkpool.domain.contracts import ConfigSource, RateLimitBackend, ResultCache, WorkRepository
from checkpool.repositories.postgres import AsyncpgPoolManager, PostgresConfigSource, PostgresWorkRepository
from checkpool.repositories.stub import InMemoryWorkRepository
from checkpool.roles import RuntimeRole
from checkpool.security.gateway import SecurityGateway
from checkpool.security.rate_limit import InMemoryRateLimitBackend, RateLimiter, RedisRateLimitBackend
from checkpool.services.live_config import InMemoryConfigSource, LiveConfig
from checkpool.workers.loop import WorkerLoop

RATE_LIMIT_BACKENDS = ("memory", "redis")


@dataclass(frozen=True)
class RuntimeSettings:
    database_url: str | None = None
    redis_url: str | None = None
    rate_limit_backend: str = "memory"
    config_refresh_seconds: int = 30


@dataclass
class RuntimeContainer:
    repository: WorkRepository
    cache: ResultCache
    config: LiveConfig
    gateway: SecurityGateway
    api_deps: ApiDeps
    worker_loop: WorkerLoop | None
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None
    mode: str = "memory"


def runtime_settings_from_env() -> RuntimeSettings:
    backend = (os.getenv("RATE_LIMIT_BACKEND") or "memory").strip().lower()
    if backend not in RATE_LIMIT_BACKENDS:
        supported = ", ".join(RATE_LIMIT_BACKENDS)
        raise ValueError(f"Unsupported RATE_LIMIT_BACKEND '{backend}'. Supported: {supported}.")
    return RuntimeSettings(
        database_url=os.getenv("DATABASE_URL") or None,
        redis_url=os.getenv("REDIS_URL") or None,
        rate_limit_backend=backend,
        config_refresh_seconds=_env_int("CONFIG_REFRESH_SECONDS", 30),
    )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def build_runtime_container(role: RuntimeRole, settings: RuntimeSettings | None = None) -> RuntimeContainer:
    settings = settings or runtime_settings_from_env()
    startup_hooks: list[Callable[[], Awaitable[None]]] = []
    shutdown_hooks: list[Callable[[], Awaitable[None]]] = []

    repository: WorkRepository
    config_source: ConfigSource
    if settings.database_url:
        pool_manager = AsyncpgPoolManager(dsn=settings.database_url)
        repository = PostgresWorkRepository(pool_manager=pool_manager)
        config_source = PostgresConfigSource(pool_manager=pool_manager)
        startup_hooks.append(pool_manager.startup)
        shutdown_hooks.append(pool_manager.shutdown)
        mode = "postgres"
    else:
        repository = InMemoryWorkRepository()
        config_source = InMemoryConfigSource()
        mode = "memory"

    redis_connection: RedisConnectionManager | None = None
    cache: ResultCache
    if settings.redis_url:
        redis_connection = RedisConnectionManager(url=settings.redis_url)
        cache = RedisResultCache(connection=redis_connection)
        startup_hooks.append(redis_connection.startup)
        shutdown_hooks.append(redis_connection.shutdown)
    else:
        cache = InMemoryResultCache()

    rate_limit_backend: RateLimitBackend
    if settings.rate_limit_backend == "redis":
        if redis_connection is None:
            raise ValueError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
        rate_limit_backend = RedisRateLimitBackend(connection=redis_connection)
    else:
        rate_limit_backend = InMemoryRateLimitBackend()

    config = LiveConfig(source=config_source, refresh_seconds=settings.config_refresh_seconds)
    gateway = SecurityGateway(config=config, rate_limiter=RateLimiter(backend=rate_limit_backend))
    api_deps = ApiDeps(repository=repository, cache=cache, config=config, gateway=gateway)

    worker_loop: WorkerLoop | None = None
    if role.runs_reclaim_loop:
        worker_loop = WorkerLoop(role=role.name, repository=repository)

    return RuntimeContainer(
        repository=repository,
        cache=cache,
        config=config,
        gateway=gateway,
        api_deps=api_deps,
        worker_loop=worker_loop,
        on_startup=_chain(startup_hooks) if startup_hooks else None,
        on_shutdown=_chain(list(reversed(shutdown_hooks))) if shutdown_hooks else None,
        mode=mode,
    )


def _chain(hooks: list[Callable[[], Awaitable[None]]]) -> Callable[[], Awaitable[None]]:
    async def _run() -> None:
        for hook in hooks:
            await hook()

    return _run
