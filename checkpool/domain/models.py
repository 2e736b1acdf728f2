from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


# Canonical work item lifecycle states.
#
# IMPORTANT:
# - Keep this enum synchronized with checkpool/domain/lifecycle.py
#   (ITEM_TRANSITIONS and status_for_outcome).
# - Keep this enum synchronized with the DB status CHECK constraint in
#   db/migrations/000001_bootstrap.up.sql.
class ItemStatus(StrEnum):
    PENDING = "pending"
    LEASED = "leased"

    # Terminal states.
    RESOLVED_SUCCESS = "resolved_success"
    RESOLVED_FAILURE = "resolved_failure"
    RESOLVED_UNKNOWN = "resolved_unknown"
    RESOLVED_ERROR = "resolved_error"


RESOLVED_STATUSES: frozenset[ItemStatus] = frozenset(
    {
        ItemStatus.RESOLVED_SUCCESS,
        ItemStatus.RESOLVED_FAILURE,
        ItemStatus.RESOLVED_UNKNOWN,
        ItemStatus.RESOLVED_ERROR,
    }
)

# Outcomes treated as durable enough to cache.
STABLE_NEGATIVE_STATUSES: frozenset[ItemStatus] = frozenset({ItemStatus.RESOLVED_FAILURE})


class SessionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckSource(StrEnum):
    MANUAL_SEED = "manual_seed"
    POOLED_STOCK = "pooled_stock"
    DIRECT_SUBMISSION = "direct_submission"


@dataclass(frozen=True)
class ResolutionMetadata:
    message: str = ""
    origin_class: str | None = None
    locale: str | None = None
    issuer: str | None = None
    tier: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "message": self.message,
            "origin_class": self.origin_class,
            "locale": self.locale,
            "issuer": self.issuer,
            "tier": self.tier,
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class NewWorkItem:
    content: str
    fingerprint: str
    owner_id: str
    check_type: int
    check_source: CheckSource
    session_id: str | None = None
    origin_owner_id: str | None = None
    price: float = 0.0


@dataclass(frozen=True)
class WorkItemSnapshot:
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
    created_at: datetime | None = None
    updated_at: datetime | None = None
    resolved_at: datetime | None = None


@dataclass(frozen=True)
class LeasedItem:
    item_id: str
    content: str
    check_type: int
    price: float


@dataclass(frozen=True)
class CachedOutcome:
    status: str
    message: str
    metadata: dict[str, object]
    resolved_at: str | None = None


@dataclass(frozen=True)
class FetchResult:
    items: list[LeasedItem]
    requested: int
    out_of_stock: bool = False
    low_stock: bool = False
    cached: CachedOutcome | None = None


@dataclass(frozen=True)
class ReportCommand:
    item_id: str
    outcome_code: int
    message: str = ""
    origin_tag: str | None = None
    metadata: ResolutionMetadata = field(default_factory=ResolutionMetadata)
    device: str = ""
    remote_addr: str | None = None


@dataclass(frozen=True)
class ReportResult:
    item_id: str
    status: str
    cached: bool


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    owner_id: str
    status: str
    check_type: int
    total: int
    price_per_item: float
    estimated_cost: float
    stop_requested: bool = False
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


@dataclass(frozen=True)
class SeedOutcome:
    item_id: str | None
    fingerprint: str
    created: bool


@dataclass(frozen=True)
class StartSessionResult:
    session: SessionSnapshot
    seeded: int
    skipped: list[str]


@dataclass(frozen=True)
class StopSessionResult:
    session: SessionSnapshot
    released: int


@dataclass(frozen=True)
class SessionItemView:
    item_id: str
    fingerprint: str
    status: str
    resolution: ResolutionMetadata | None
    resolved_at: datetime | None


@dataclass(frozen=True)
class SessionStatusView:
    session: SessionSnapshot
    counts: dict[str, int]
    total: int
    processed: int
    pending: int
    progress: int
    items: list[SessionItemView]


@dataclass(frozen=True)
class DeviceUsage:
    device: str
    total: int
    today: int
    daily: list[tuple[str, int]]


@dataclass(frozen=True)
class ReportLogEntry:
    item_id: str
    device: str
    outcome_code: int
    message: str
    remote_addr: str | None
    received_at: datetime


@dataclass(frozen=True)
class ResolvedMatch:
    fingerprint: str
    status: str
    source: str
    check_type: int | None = None
    item_id: str | None = None
    message: str = ""
    metadata: dict[str, object] = field(default_factory=dict)
    resolved_at: str | None = None
