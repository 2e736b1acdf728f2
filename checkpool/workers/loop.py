from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import time

from checkpool.domain.contracts import WorkRepository
from checkpool.domain.use_cases.lease import purge_report_log, reclaim_expired_leases

logger = logging.getLogger("runtime")


@dataclass
class WorkerLoop:
    """Background maintenance tick for the reclaim role.

    Each tick returns expired leases to the pending pool. The report log is
    trimmed to its retention window at most once per purge interval.
    """

    role: str
    repository: WorkRepository
    purge_interval_seconds: float = 3600.0
    clock: Callable[[], float] = time.monotonic
    _last_purge: float | None = field(default=None, init=False)

    async def run_once(self) -> bool:
        reclaimed = await reclaim_expired_leases(repository=self.repository)

        now = self.clock()
        if self._last_purge is None or now - self._last_purge >= self.purge_interval_seconds:
            purged = await purge_report_log(repository=self.repository)
            self._last_purge = now
            if purged:
                logger.info("report log purged", extra={"role": self.role, "reason": f"purged={purged}"})

        return reclaimed > 0
