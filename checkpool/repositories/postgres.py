from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
import importlib
import json
from typing import Any

from checkpool.domain.errors import DomainDependencyError, DomainInvariantError
from checkpool.domain.ids import new_item_id
from checkpool.domain.lifecycle import can_transition_session
from checkpool.domain.models import (
    DeviceUsage,
    NewWorkItem,
    ReportLogEntry,
    ResolutionMetadata,
    SeedOutcome,
    SessionSnapshot,
    WorkItemSnapshot,
)
from checkpool.repositories.sql_loader import load_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


ITEM_COLUMNS = (
    "public_id, fingerprint, content, owner_id, origin_owner_id, session_public_id, status, "
    "check_type, check_source, price, billed, origin_tag, message, origin_class, locale, issuer, "
    "tier, extra_json, leased_by, leased_at, lease_expires_at, lease_attempts, created_at, "
    "updated_at, resolved_at"
)
SESSION_COLUMNS = (
    "public_id, owner_id, status, check_type, total, price_per_item, estimated_cost, "
    "stop_requested, created_at, started_at, ended_at"
)

SQL_INSERT_ITEM = load_sql("insert_item.sql")
SQL_FIND_ITEM_BY_FINGERPRINT = load_sql("find_item_by_fingerprint.sql")
SQL_LEASE_BATCH = load_sql("lease_batch.sql", item_columns=ITEM_COLUMNS)
SQL_LEASE_BY_FINGERPRINT = load_sql("lease_by_fingerprint.sql", item_columns=ITEM_COLUMNS)
SQL_GET_ITEM = load_sql("get_item.sql", item_columns=ITEM_COLUMNS)
SQL_RESOLVE_ITEM = load_sql("resolve_item.sql", item_columns=ITEM_COLUMNS)
SQL_RELEASE_SESSION_ITEMS = load_sql("release_session_items.sql")
SQL_RECLAIM_EXPIRED_LEASES = load_sql("reclaim_expired_leases.sql")
SQL_FIND_RESOLVED = load_sql("find_resolved.sql", item_columns=ITEM_COLUMNS)
SQL_LIST_SESSION_ITEMS = load_sql("list_session_items.sql", item_columns=ITEM_COLUMNS)
SQL_CREATE_SESSION = load_sql("create_session.sql", session_columns=SESSION_COLUMNS)
SQL_GET_SESSION = load_sql("get_session.sql", session_columns=SESSION_COLUMNS)
SQL_TRANSITION_SESSION = load_sql("transition_session.sql", session_columns=SESSION_COLUMNS)
SQL_BUMP_DEVICE_USAGE = load_sql("bump_device_usage.sql")
SQL_LIST_DEVICE_USAGE = load_sql("list_device_usage.sql")
SQL_INSERT_REPORT_LOG = load_sql("insert_report_log.sql")
SQL_PURGE_REPORT_LOG = load_sql("purge_report_log.sql")
SQL_LOAD_SITE_CONFIG = load_sql("load_site_config.sql")


def _is_connection_failure(exc: Exception) -> bool:
    if isinstance(exc, (OSError, ConnectionError)):
        return True
    if asyncpg_module is None:  # pragma: no cover
        return False
    return isinstance(
        exc,
        (
            asyncpg_module.exceptions.PostgresConnectionError,
            asyncpg_module.exceptions.InterfaceError,
            asyncpg_module.exceptions.CannotConnectNowError,
        ),
    )


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None
    min_size: int = 1
    max_size: int = 10

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres repository mode")

        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        if self.pool is None:
            raise DomainDependencyError("postgres pool is not initialized")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except Exception as exc:
            if _is_connection_failure(exc):
                raise DomainDependencyError(f"postgres is unavailable: {exc}") from exc
            raise


@dataclass
class PostgresWorkRepository:
    pool_manager: AsyncpgPoolManager

    async def insert_item(self, *, item: NewWorkItem) -> SeedOutcome:
        async with self.pool_manager.connection() as conn:
            inserted = await conn.fetchval(SQL_INSERT_ITEM, *_insert_args(item))
            if inserted is not None:
                return SeedOutcome(item_id=inserted, fingerprint=item.fingerprint, created=True)
            existing = await conn.fetchval(SQL_FIND_ITEM_BY_FINGERPRINT, item.fingerprint, item.owner_id)
        if existing is None:
            raise DomainInvariantError("item insert conflict without existing row")
        return SeedOutcome(item_id=existing, fingerprint=item.fingerprint, created=False)

    async def lease_batch(
        self,
        *,
        check_type: int,
        quantity: int,
        device: str,
        lease_seconds: int | None = None,
    ) -> list[WorkItemSnapshot]:
        async with self.pool_manager.connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(SQL_LEASE_BATCH, check_type, quantity, device, lease_seconds)
        snapshots = [_item_snapshot(row) for row in rows]
        snapshots.sort(key=lambda snapshot: (snapshot.created_at, snapshot.item_id))
        return snapshots

    async def lease_or_create(
        self,
        *,
        item: NewWorkItem,
        device: str,
        lease_seconds: int | None = None,
    ) -> WorkItemSnapshot | None:
        async with self.pool_manager.connection() as conn:
            async with conn.transaction():
                await conn.fetchval(SQL_INSERT_ITEM, *_insert_args(item))
                row = await conn.fetchrow(
                    SQL_LEASE_BY_FINGERPRINT,
                    item.fingerprint,
                    item.owner_id,
                    device,
                    lease_seconds,
                    item.check_type,
                )
        if row is None:
            return None
        return _item_snapshot(row)

    async def get_item(self, *, item_id: str) -> WorkItemSnapshot | None:
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(SQL_GET_ITEM, item_id)
        if row is None:
            return None
        return _item_snapshot(row)

    async def resolve_item(
        self,
        *,
        item_id: str,
        status: str,
        origin_tag: str | None,
        resolution: ResolutionMetadata,
    ) -> WorkItemSnapshot | None:
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(
                SQL_RESOLVE_ITEM,
                item_id,
                status,
                origin_tag,
                resolution.message,
                resolution.origin_class,
                resolution.locale,
                resolution.issuer,
                resolution.tier,
                dict(resolution.extra),
            )
        if row is None:
            return None
        return _item_snapshot(row)

    async def release_session_items(self, *, session_id: str) -> int:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_RELEASE_SESSION_ITEMS, session_id)
        return len(rows)

    async def reclaim_expired_leases(self) -> int:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_RECLAIM_EXPIRED_LEASES)
        return len(rows)

    async def find_resolved_by_fingerprints(
        self,
        *,
        fingerprints: list[str],
        check_type: int | None,
        resolved_after: datetime,
    ) -> list[WorkItemSnapshot]:
        if not fingerprints:
            return []
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_FIND_RESOLVED, list(fingerprints), check_type, resolved_after)
        return [_item_snapshot(row) for row in rows]

    async def create_session(self, *, session: SessionSnapshot) -> SessionSnapshot:
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(
                SQL_CREATE_SESSION,
                session.session_id,
                session.owner_id,
                session.status,
                session.check_type,
                session.total,
                session.price_per_item,
                session.estimated_cost,
            )
        if row is None:
            raise DomainInvariantError("failed to create session")
        return _session_snapshot(row)

    async def get_session(self, *, session_id: str) -> SessionSnapshot | None:
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(SQL_GET_SESSION, session_id)
        if row is None:
            return None
        return _session_snapshot(row)

    async def transition_session(
        self,
        *,
        session_id: str,
        from_status: str,
        to_status: str,
    ) -> SessionSnapshot | None:
        if not can_transition_session(from_status, to_status):
            raise DomainInvariantError(f"invalid session transition: {from_status} -> {to_status}")
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(SQL_TRANSITION_SESSION, session_id, from_status, to_status)
        if row is None:
            return None
        return _session_snapshot(row)

    async def list_session_items(self, *, session_id: str) -> list[WorkItemSnapshot]:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_LIST_SESSION_ITEMS, session_id)
        return [_item_snapshot(row) for row in rows]

    async def bump_device_usage(self, *, device: str, day: str) -> None:
        async with self.pool_manager.connection() as conn:
            await conn.execute(SQL_BUMP_DEVICE_USAGE, device, day)

    async def device_usage(self, *, day_from: str | None, day_to: str | None, today: str) -> list[DeviceUsage]:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_LIST_DEVICE_USAGE, day_from, day_to)
        grouped: dict[str, list[tuple[str, int]]] = {}
        for row in rows:
            grouped.setdefault(row["device"], []).append((row["day"], int(row["count"])))
        return [
            DeviceUsage(
                device=device,
                total=sum(count for _day, count in daily),
                today=sum(count for day, count in daily if day == today),
                daily=daily,
            )
            for device, daily in grouped.items()
        ]

    async def append_report_log(self, *, entry: ReportLogEntry) -> None:
        async with self.pool_manager.connection() as conn:
            await conn.execute(
                SQL_INSERT_REPORT_LOG,
                entry.item_id,
                entry.device,
                entry.outcome_code,
                entry.message,
                entry.remote_addr,
                entry.received_at,
            )

    async def purge_report_log(self, *, older_than: datetime) -> int:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_PURGE_REPORT_LOG, older_than)
        return len(rows)


@dataclass
class PostgresConfigSource:
    """Live configuration rows stored as JSON values in site_config."""

    pool_manager: AsyncpgPoolManager

    async def load_all(self) -> dict[str, object]:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_LOAD_SITE_CONFIG)
        return {row["key"]: row["value"] for row in rows}


def _insert_args(item: NewWorkItem) -> tuple[object, ...]:
    return (
        new_item_id(),
        item.fingerprint,
        item.content,
        item.owner_id,
        item.origin_owner_id,
        item.session_id,
        item.check_type,
        str(item.check_source),
        item.price,
    )


def _item_snapshot(row: Any) -> WorkItemSnapshot:
    resolution = None
    if row["resolved_at"] is not None:
        resolution = ResolutionMetadata(
            message=row["message"] or "",
            origin_class=row["origin_class"],
            locale=row["locale"],
            issuer=row["issuer"],
            tier=row["tier"],
            extra={str(key): str(value) for key, value in (_json_object(row["extra_json"])).items()},
        )
    return WorkItemSnapshot(
        item_id=row["public_id"],
        fingerprint=row["fingerprint"],
        content=row["content"],
        owner_id=row["owner_id"],
        status=row["status"],
        check_type=row["check_type"],
        check_source=row["check_source"],
        session_id=row["session_public_id"],
        origin_owner_id=row["origin_owner_id"],
        price=float(row["price"]),
        billed=row["billed"],
        origin_tag=row["origin_tag"],
        resolution=resolution,
        leased_by=row["leased_by"],
        leased_at=row["leased_at"],
        lease_expires_at=row["lease_expires_at"],
        lease_attempts=row["lease_attempts"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        resolved_at=row["resolved_at"],
    )


def _session_snapshot(row: Any) -> SessionSnapshot:
    return SessionSnapshot(
        session_id=row["public_id"],
        owner_id=row["owner_id"],
        status=row["status"],
        check_type=row["check_type"],
        total=row["total"],
        price_per_item=float(row["price_per_item"]),
        estimated_cost=float(row["estimated_cost"]),
        stop_requested=row["stop_requested"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
    )


def _json_object(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return {str(key): val for key, val in value.items()}
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        if isinstance(parsed, dict):
            return {str(key): val for key, val in parsed.items()}
    return {}
