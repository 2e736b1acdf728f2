from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from checkpool.domain.errors import DomainInvariantError
from checkpool.domain.ids import new_item_id
from checkpool.domain.lifecycle import ITEM_TRANSITIONS, can_transition_session
from checkpool.domain.models import (
    RESOLVED_STATUSES,
    DeviceUsage,
    ItemStatus,
    NewWorkItem,
    ReportLogEntry,
    ResolutionMetadata,
    SeedOutcome,
    SessionSnapshot,
    SessionStatus,
    WorkItemSnapshot,
)


@dataclass
class _ItemRow:
    item_id: str
    fingerprint: str
    content: str
    owner_id: str
    status: str
    check_type: int
    check_source: str
    session_id: str | None = None
    origin_owner_id: str | None = None
    price: float = 0.0
    billed: bool = False
    origin_tag: str | None = None
    resolution: ResolutionMetadata | None = None
    leased_by: str | None = None
    leased_at: datetime | None = None
    lease_expires_at: datetime | None = None
    lease_attempts: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    resolved_at: datetime | None = None


@dataclass
class InMemoryWorkRepository:
    """Non-network item store with the same conditional-update semantics as Postgres.

    Each status change checks and mutates a row without awaiting in between, so
    concurrent coroutines on one event loop never observe a half-applied lease.
    """

    items: dict[str, _ItemRow] = field(default_factory=dict)
    fingerprints: dict[tuple[str, str], str] = field(default_factory=dict)
    sessions: dict[str, SessionSnapshot] = field(default_factory=dict)
    usage: dict[tuple[str, str], int] = field(default_factory=dict)
    report_log: list[ReportLogEntry] = field(default_factory=list)
    transitions: list[tuple[str, str, str]] = field(default_factory=list)

    async def insert_item(self, *, item: NewWorkItem) -> SeedOutcome:
        key = (item.fingerprint, item.owner_id)
        existing = self.fingerprints.get(key)
        if existing is not None:
            return SeedOutcome(item_id=existing, fingerprint=item.fingerprint, created=False)
        row = self._new_row(item=item, status=ItemStatus.PENDING)
        return SeedOutcome(item_id=row.item_id, fingerprint=row.fingerprint, created=True)

    async def lease_batch(
        self,
        *,
        check_type: int,
        quantity: int,
        device: str,
        lease_seconds: int | None = None,
    ) -> list[WorkItemSnapshot]:
        now = datetime.now(tz=UTC)
        leased: list[WorkItemSnapshot] = []
        for row in sorted(self.items.values(), key=lambda candidate: candidate.created_at):
            if len(leased) >= quantity:
                break
            if row.status != ItemStatus.PENDING or row.check_type != check_type:
                continue
            self._lease_row(row, device=device, now=now, lease_seconds=lease_seconds)
            leased.append(_snapshot(row))
        return leased

    async def lease_or_create(
        self,
        *,
        item: NewWorkItem,
        device: str,
        lease_seconds: int | None = None,
    ) -> WorkItemSnapshot | None:
        now = datetime.now(tz=UTC)
        existing_id = self.fingerprints.get((item.fingerprint, item.owner_id))
        if existing_id is not None:
            row = self.items[existing_id]
            if row.status != ItemStatus.PENDING or row.check_type != item.check_type:
                return None
        else:
            row = self._new_row(item=item, status=ItemStatus.PENDING)
        self._lease_row(row, device=device, now=now, lease_seconds=lease_seconds)
        return _snapshot(row)

    async def get_item(self, *, item_id: str) -> WorkItemSnapshot | None:
        row = self.items.get(item_id)
        if row is None:
            return None
        return _snapshot(row)

    async def resolve_item(
        self,
        *,
        item_id: str,
        status: str,
        origin_tag: str | None,
        resolution: ResolutionMetadata,
    ) -> WorkItemSnapshot | None:
        row = self.items.get(item_id)
        if row is None or row.status != ItemStatus.LEASED:
            return None
        if status not in RESOLVED_STATUSES:
            raise DomainInvariantError(f"not a terminal status: {status}")
        now = datetime.now(tz=UTC)
        self._set_status(row, status)
        row.origin_tag = origin_tag
        row.resolution = resolution
        row.resolved_at = now
        row.updated_at = now
        row.lease_expires_at = None
        return _snapshot(row)

    async def release_session_items(self, *, session_id: str) -> int:
        released = 0
        now = datetime.now(tz=UTC)
        for row in self.items.values():
            if row.session_id != session_id:
                continue
            if row.status not in (ItemStatus.LEASED, ItemStatus.PENDING):
                continue
            self._set_status(row, ItemStatus.PENDING)
            row.session_id = None
            row.leased_by = None
            row.leased_at = None
            row.lease_expires_at = None
            row.updated_at = now
            released += 1
        return released

    async def reclaim_expired_leases(self) -> int:
        reclaimed = 0
        now = datetime.now(tz=UTC)
        for row in self.items.values():
            if (
                row.status == ItemStatus.LEASED
                and row.lease_expires_at is not None
                and row.lease_expires_at <= now
            ):
                self._set_status(row, ItemStatus.PENDING)
                row.leased_by = None
                row.leased_at = None
                row.lease_expires_at = None
                row.updated_at = now
                reclaimed += 1
        return reclaimed

    async def find_resolved_by_fingerprints(
        self,
        *,
        fingerprints: list[str],
        check_type: int | None,
        resolved_after: datetime,
    ) -> list[WorkItemSnapshot]:
        wanted = set(fingerprints)
        return [
            _snapshot(row)
            for row in self.items.values()
            if row.fingerprint in wanted
            and row.status in RESOLVED_STATUSES
            and (check_type is None or row.check_type == check_type)
            and row.resolved_at is not None
            and row.resolved_at >= resolved_after
        ]

    async def create_session(self, *, session: SessionSnapshot) -> SessionSnapshot:
        if session.session_id in self.sessions:
            raise DomainInvariantError(f"session already exists: {session.session_id}")
        stored = replace(session, created_at=session.created_at or datetime.now(tz=UTC))
        self.sessions[session.session_id] = stored
        return stored

    async def get_session(self, *, session_id: str) -> SessionSnapshot | None:
        return self.sessions.get(session_id)

    async def transition_session(
        self,
        *,
        session_id: str,
        from_status: str,
        to_status: str,
    ) -> SessionSnapshot | None:
        session = self.sessions.get(session_id)
        if session is None or session.status != from_status:
            return None
        if not can_transition_session(from_status, to_status):
            raise DomainInvariantError(f"invalid session transition: {from_status} -> {to_status}")
        now = datetime.now(tz=UTC)
        updated = replace(session, status=to_status)
        if to_status == SessionStatus.RUNNING:
            updated = replace(updated, started_at=now)
        elif to_status == SessionStatus.STOPPING:
            updated = replace(updated, stop_requested=True)
        elif to_status in (SessionStatus.STOPPED, SessionStatus.COMPLETED, SessionStatus.FAILED):
            updated = replace(updated, ended_at=now)
        self.sessions[session_id] = updated
        self.transitions.append((session_id, from_status, to_status))
        return updated

    async def list_session_items(self, *, session_id: str) -> list[WorkItemSnapshot]:
        rows = [row for row in self.items.values() if row.session_id == session_id]
        rows.sort(key=lambda row: row.created_at)
        return [_snapshot(row) for row in rows]

    async def bump_device_usage(self, *, device: str, day: str) -> None:
        key = (device, day)
        self.usage[key] = self.usage.get(key, 0) + 1

    async def device_usage(self, *, day_from: str | None, day_to: str | None, today: str) -> list[DeviceUsage]:
        grouped: dict[str, list[tuple[str, int]]] = {}
        for (device, day), count in sorted(self.usage.items()):
            if day_from is not None and day < day_from:
                continue
            if day_to is not None and day > day_to:
                continue
            grouped.setdefault(device, []).append((day, count))
        return [
            DeviceUsage(
                device=device,
                total=sum(count for _day, count in daily),
                today=sum(count for day, count in daily if day == today),
                daily=daily,
            )
            for device, daily in sorted(grouped.items())
        ]

    async def append_report_log(self, *, entry: ReportLogEntry) -> None:
        self.report_log.append(entry)

    async def purge_report_log(self, *, older_than: datetime) -> int:
        kept = [entry for entry in self.report_log if entry.received_at >= older_than]
        purged = len(self.report_log) - len(kept)
        self.report_log = kept
        return purged

    def _new_row(self, *, item: NewWorkItem, status: str) -> _ItemRow:
        row = _ItemRow(
            item_id=new_item_id(),
            fingerprint=item.fingerprint,
            content=item.content,
            owner_id=item.owner_id,
            status=status,
            check_type=item.check_type,
            check_source=item.check_source,
            session_id=item.session_id,
            origin_owner_id=item.origin_owner_id,
            price=item.price,
        )
        self.items[row.item_id] = row
        self.fingerprints[(row.fingerprint, row.owner_id)] = row.item_id
        return row

    def _lease_row(self, row: _ItemRow, *, device: str, now: datetime, lease_seconds: int | None) -> None:
        self._set_status(row, ItemStatus.LEASED)
        row.leased_by = device
        row.leased_at = now
        row.lease_expires_at = now + timedelta(seconds=lease_seconds) if lease_seconds else None
        row.lease_attempts += 1
        row.updated_at = now

    def _set_status(self, row: _ItemRow, to_status: str) -> None:
        if to_status not in ITEM_TRANSITIONS.get(row.status, set()):
            raise DomainInvariantError(f"invalid transition: {row.status} -> {to_status}")
        self.transitions.append((row.item_id, row.status, to_status))
        row.status = to_status


def _snapshot(row: _ItemRow) -> WorkItemSnapshot:
    return WorkItemSnapshot(
        item_id=row.item_id,
        fingerprint=row.fingerprint,
        content=row.content,
        owner_id=row.owner_id,
        status=row.status,
        check_type=row.check_type,
        check_source=row.check_source,
        session_id=row.session_id,
        origin_owner_id=row.origin_owner_id,
        price=row.price,
        billed=row.billed,
        origin_tag=row.origin_tag,
        resolution=row.resolution,
        leased_by=row.leased_by,
        leased_at=row.leased_at,
        lease_expires_at=row.lease_expires_at,
        lease_attempts=row.lease_attempts,
        created_at=row.created_at,
        updated_at=row.updated_at,
        resolved_at=row.resolved_at,
    )
