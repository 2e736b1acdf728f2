from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from checkpool.workers.loop import WorkerLoop


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    error_backoff_ms: int = 2000
    purge_interval_seconds: int = 3600

    def delay_ms(self, *, did_work: bool | None) -> int:
        """Pause before the next tick; None means the tick failed."""
        if did_work is None:
            return self.error_backoff_ms
        return self.poll_interval_ms if did_work else self.idle_backoff_ms


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    last_error: str | None = None

    def record_tick(self, *, did_work: bool) -> None:
        self.ticks_total += 1
        if did_work:
            self.claims_total += 1
        else:
            self.idle_ticks_total += 1

    def record_error(self, exc: Exception) -> None:
        self.ticks_total += 1
        self.errors_total += 1
        self.last_error = f"{type(exc).__name__}: {exc}"


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        poll_interval_ms=_env_int("WORKER_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=_env_int("WORKER_IDLE_BACKOFF_MS", 1000),
        error_backoff_ms=_env_int("WORKER_ERROR_BACKOFF_MS", 2000),
        purge_interval_seconds=_env_int("WORKER_PURGE_INTERVAL_SECONDS", 3600),
    )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


async def _wait_or_stop(stop_event: asyncio.Event, delay_ms: int) -> bool:
    """Sleep up to delay_ms; True when the stop event fired meanwhile."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
    except TimeoutError:
        return False
    return True


async def run_worker_until_stopped(
    *,
    worker_loop: WorkerLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    state = state if state is not None else WorkerRuntimeState()
    log_extra = {"role": role, "service": role, "run_id": run_id}
    if isinstance(worker_loop, WorkerLoop):
        worker_loop.purge_interval_seconds = float(settings.purge_interval_seconds)

    state.started = True
    logger.info("worker loop started", extra=log_extra)

    while not stop_event.is_set():
        did_work: bool | None
        try:
            did_work = await worker_loop.run_once()
        except Exception as exc:
            did_work = None
            state.record_error(exc)
            logger.exception("worker tick error", extra=log_extra)
        else:
            state.record_tick(did_work=did_work)
            if did_work:
                logger.info("worker tick", extra={**log_extra, "reason": "leases reclaimed"})

        if await _wait_or_stop(stop_event, settings.delay_ms(did_work=did_work)):
            break

    logger.info("worker loop stopped", extra=log_extra)
    state.stopped = True
