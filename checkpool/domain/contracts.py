from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from checkpool.domain.models import (
    CachedOutcome,
    DeviceUsage,
    NewWorkItem,
    ReportLogEntry,
    ResolutionMetadata,
    SeedOutcome,
    SessionSnapshot,
    WorkItemSnapshot,
)


LEASE_SQL_CONTRACT = "UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING ..."
RESULT_CACHE_KEY_PREFIX = "result:"


@runtime_checkable
class WorkRepository(Protocol):
    """Item store contract for the lease -> process -> report flow.

    Every status change is a conditional update guarded by the expected
    current status. Lease semantics must remain compatible with Postgres
    batch leases using SELECT ... FOR UPDATE SKIP LOCKED.
    """

    async def insert_item(self, *, item: NewWorkItem) -> SeedOutcome: ...

    async def lease_batch(
        self,
        *,
        check_type: int,
        quantity: int,
        device: str,
        lease_seconds: int | None = None,
    ) -> list[WorkItemSnapshot]: ...

    # Create-or-find by (fingerprint, owner) and lease in one step; returns None
    # when the existing item is not pending.
    async def lease_or_create(
        self,
        *,
        item: NewWorkItem,
        device: str,
        lease_seconds: int | None = None,
    ) -> WorkItemSnapshot | None: ...

    async def get_item(self, *, item_id: str) -> WorkItemSnapshot | None: ...

    async def resolve_item(
        self,
        *,
        item_id: str,
        status: str,
        origin_tag: str | None,
        resolution: ResolutionMetadata,
    ) -> WorkItemSnapshot | None: ...

    async def release_session_items(self, *, session_id: str) -> int: ...

    async def reclaim_expired_leases(self) -> int: ...

    async def find_resolved_by_fingerprints(
        self,
        *,
        fingerprints: list[str],
        check_type: int | None,
        resolved_after: datetime,
    ) -> list[WorkItemSnapshot]: ...

    async def create_session(self, *, session: SessionSnapshot) -> SessionSnapshot: ...

    async def get_session(self, *, session_id: str) -> SessionSnapshot | None: ...

    async def transition_session(
        self,
        *,
        session_id: str,
        from_status: str,
        to_status: str,
    ) -> SessionSnapshot | None: ...

    async def list_session_items(self, *, session_id: str) -> list[WorkItemSnapshot]: ...

    async def bump_device_usage(self, *, device: str, day: str) -> None: ...

    async def device_usage(self, *, day_from: str | None, day_to: str | None, today: str) -> list[DeviceUsage]: ...

    async def append_report_log(self, *, entry: ReportLogEntry) -> None: ...

    async def purge_report_log(self, *, older_than: datetime) -> int: ...


@runtime_checkable
class ResultCache(Protocol):
    """TTL cache of stable-negative outcomes keyed by (fingerprint, check_type)."""

    async def get(self, *, fingerprint: str, check_type: int) -> CachedOutcome | None: ...

    async def put(self, *, fingerprint: str, check_type: int, outcome: CachedOutcome, ttl_seconds: int) -> None: ...

    async def delete(self, *, fingerprint: str, check_type: int) -> None: ...

    async def flush(self) -> None: ...

    async def stats(self) -> dict[str, object]: ...


@runtime_checkable
class ConfigSource(Protocol):
    async def load_all(self) -> dict[str, object]: ...


@runtime_checkable
class RateLimitBackend(Protocol):
    # Returns (count in current window, seconds until the window resets).
    async def hit(self, *, key: str, window_seconds: int) -> tuple[int, float]: ...

    async def sweep(self) -> int: ...
