from __future__ import annotations

from datetime import UTC, datetime, timedelta
import logging
import re

from checkpool.domain.contracts import ResultCache, WorkRepository
from checkpool.domain.errors import DomainConfigurationError, DomainConflictError, DomainValidationError
from checkpool.domain.fingerprint import fingerprint, normalize_content
from checkpool.domain.lifecycle import status_for_outcome
from checkpool.domain.models import (
    RESOLVED_STATUSES,
    STABLE_NEGATIVE_STATUSES,
    CachedOutcome,
    CheckSource,
    DeviceUsage,
    FetchResult,
    ItemStatus,
    LeasedItem,
    NewWorkItem,
    ReportCommand,
    ReportLogEntry,
    ReportResult,
    ResolutionMetadata,
    ResolvedMatch,
    WorkItemSnapshot,
)
from checkpool.services.live_config import LiveConfig

logger = logging.getLogger("checkpool.lease")

RESOLVED_LOOKUP_WINDOW_DAYS = 7
REPORT_LOG_RETENTION_DAYS = 7
UNKNOWN_DEVICE = "unknown"

_LOCALE_PATTERN = re.compile(r"^[A-Za-z]{2}$")


def utc_day(now: datetime | None = None) -> str:
    return (now or datetime.now(tz=UTC)).astimezone(UTC).date().isoformat()


async def fetch_batch(
    *,
    repository: WorkRepository,
    cache: ResultCache,
    config: LiveConfig,
    device: str,
    quantity: int,
    check_type: int,
    fallback_content: str | None = None,
    caller_id: str | None = None,
) -> FetchResult:
    """Lease up to `quantity` pending items of one check type.

    When the pool is empty and the caller sent content of its own, that content
    is enqueued under the stock owner and leased back in the same step. A
    cached stable-negative outcome for the content short-circuits the create.
    """
    if check_type < 1:
        raise DomainValidationError("check_type must be a positive integer")

    min_quantity = max(await config.get_int("min_items_per_fetch", 1), 1)
    max_quantity = max(await config.get_int("max_items_per_fetch", 1000), min_quantity)
    requested = min(max(quantity, min_quantity), max_quantity)
    lease_seconds = await _lease_seconds(config)

    leased = await repository.lease_batch(
        check_type=check_type,
        quantity=requested,
        device=device or UNKNOWN_DEVICE,
        lease_seconds=lease_seconds,
    )
    if leased:
        logger.info(
            "items leased",
            extra={"device": device, "reason": f"leased={len(leased)} requested={requested}"},
        )
        return FetchResult(
            items=[_leased_item(snapshot) for snapshot in leased],
            requested=requested,
            low_stock=len(leased) < requested,
        )

    content = normalize_content(fallback_content or "")
    if not content:
        return FetchResult(items=[], requested=requested, out_of_stock=True)

    content_fingerprint = fingerprint(content)
    cached = await cache.get(fingerprint=content_fingerprint, check_type=check_type)
    if cached is not None:
        return FetchResult(items=[], requested=requested, cached=cached)

    stock_owner_id = (await config.get_str("stock_owner_id")).strip()
    if not stock_owner_id:
        raise DomainConfigurationError("stock_owner_id is not configured", error_code="internal_error")

    snapshot = await repository.lease_or_create(
        item=NewWorkItem(
            content=content,
            fingerprint=content_fingerprint,
            owner_id=stock_owner_id,
            check_type=check_type,
            check_source=CheckSource.DIRECT_SUBMISSION,
            origin_owner_id=caller_id,
        ),
        device=device or UNKNOWN_DEVICE,
        lease_seconds=lease_seconds,
    )
    if snapshot is None:
        raise DomainConflictError("item already exists and is not pending", error_code="duplicate_item")

    logger.info("fallback item leased", extra={"device": device, "item_id": snapshot.item_id})
    return FetchResult(items=[_leased_item(snapshot)], requested=requested, low_stock=requested > 1)


async def report_result(
    *,
    repository: WorkRepository,
    cache: ResultCache,
    config: LiveConfig,
    command: ReportCommand,
    now: datetime | None = None,
) -> ReportResult:
    if not command.item_id:
        raise DomainValidationError("item_id is required")
    status = status_for_outcome(command.outcome_code)

    current = await repository.get_item(item_id=command.item_id)
    if current is None:
        raise DomainConflictError(f"item not found: {command.item_id}", error_code="item_not_found")
    if current.status != ItemStatus.LEASED:
        raise DomainConflictError(f"item is not leased: {command.item_id}", error_code="item_not_leased")

    resolution = normalize_metadata(message=command.message, metadata=command.metadata)
    resolved = await repository.resolve_item(
        item_id=command.item_id,
        status=status,
        origin_tag=(command.origin_tag or "").strip() or None,
        resolution=resolution,
    )
    if resolved is None:
        # Another report won the conditional update.
        raise DomainConflictError(f"item is not leased: {command.item_id}", error_code="item_not_leased")

    cached = False
    if status in STABLE_NEGATIVE_STATUSES:
        cached = await _cache_outcome(cache=cache, config=config, snapshot=resolved)

    received_at = now or datetime.now(tz=UTC)
    device = command.device or UNKNOWN_DEVICE
    await _record_usage(repository=repository, device=device, day=utc_day(received_at), item_id=command.item_id)
    await _append_report_log(
        repository=repository,
        entry=ReportLogEntry(
            item_id=command.item_id,
            device=device,
            outcome_code=command.outcome_code,
            message=resolution.message,
            remote_addr=command.remote_addr,
            received_at=received_at,
        ),
    )

    logger.info(
        "item resolved",
        extra={"device": device, "item_id": command.item_id, "reason": str(status)},
    )
    return ReportResult(item_id=command.item_id, status=str(status), cached=cached)


def normalize_metadata(*, message: str, metadata: ResolutionMetadata) -> ResolutionMetadata:
    locale = (metadata.locale or "").strip()
    tier = (metadata.tier or "").strip()
    return ResolutionMetadata(
        message=(message or metadata.message or "").strip(),
        origin_class=(metadata.origin_class or "").strip() or None,
        locale=locale.upper() if _LOCALE_PATTERN.match(locale) else None,
        issuer=(metadata.issuer or "").strip() or None,
        tier=tier.lower() or None,
        extra={str(key): str(value) for key, value in metadata.extra.items() if value is not None},
    )


async def evict_session(*, repository: WorkRepository, session_id: str) -> int:
    if not session_id:
        raise DomainValidationError("session_id is required")
    released = await repository.release_session_items(session_id=session_id)
    if released:
        logger.info("session items released", extra={"session_id": session_id, "reason": f"released={released}"})
    return released


async def find_resolved(
    *,
    repository: WorkRepository,
    cache: ResultCache,
    fingerprints: list[str] | None = None,
    contents: list[str] | None = None,
    check_type: int | None = None,
    window_days: int = RESOLVED_LOOKUP_WINDOW_DAYS,
    now: datetime | None = None,
) -> list[ResolvedMatch]:
    wanted: list[str] = []
    for value in fingerprints or []:
        value = value.strip().lower()
        if value and value not in wanted:
            wanted.append(value)
    for content in contents or []:
        if not normalize_content(content):
            continue
        value = fingerprint(content)
        if value not in wanted:
            wanted.append(value)
    if not wanted:
        raise DomainValidationError("fingerprints or contents are required")
    if check_type is not None and check_type < 1:
        raise DomainValidationError("check_type must be a positive integer")

    resolved_after = (now or datetime.now(tz=UTC)) - timedelta(days=max(window_days, 0))
    snapshots = await repository.find_resolved_by_fingerprints(
        fingerprints=wanted,
        check_type=check_type,
        resolved_after=resolved_after,
    )
    matches = [_match_from_snapshot(snapshot) for snapshot in snapshots if snapshot.status in RESOLVED_STATUSES]

    if check_type is not None:
        found = {match.fingerprint for match in matches}
        for value in wanted:
            if value in found:
                continue
            cached = await cache.get(fingerprint=value, check_type=check_type)
            if cached is not None:
                matches.append(
                    ResolvedMatch(
                        fingerprint=value,
                        status=cached.status,
                        source="cache",
                        check_type=check_type,
                        message=cached.message,
                        metadata=dict(cached.metadata),
                        resolved_at=cached.resolved_at,
                    )
                )
    return matches


async def reclaim_expired_leases(*, repository: WorkRepository) -> int:
    reclaimed = await repository.reclaim_expired_leases()
    if reclaimed:
        logger.info("expired leases reclaimed", extra={"reason": f"reclaimed={reclaimed}"})
    return reclaimed


async def purge_report_log(
    *,
    repository: WorkRepository,
    retention_days: int = REPORT_LOG_RETENTION_DAYS,
    now: datetime | None = None,
) -> int:
    older_than = (now or datetime.now(tz=UTC)) - timedelta(days=retention_days)
    return await repository.purge_report_log(older_than=older_than)


async def device_stats(
    *,
    repository: WorkRepository,
    day_from: str | None = None,
    day_to: str | None = None,
    now: datetime | None = None,
) -> list[DeviceUsage]:
    for value in (day_from, day_to):
        if value is not None:
            _parse_day(value)
    return await repository.device_usage(day_from=day_from, day_to=day_to, today=utc_day(now))


async def _lease_seconds(config: LiveConfig) -> int | None:
    seconds = await config.get_int("lease_ttl_seconds", 0)
    return seconds if seconds > 0 else None


async def _cache_outcome(*, cache: ResultCache, config: LiveConfig, snapshot: WorkItemSnapshot) -> bool:
    resolution = snapshot.resolution or ResolutionMetadata()
    outcome = CachedOutcome(
        status=snapshot.status,
        message=resolution.message,
        metadata=resolution.as_dict(),
        resolved_at=snapshot.resolved_at.isoformat() if snapshot.resolved_at else None,
    )
    ttl_seconds = await config.get_int("result_cache_ttl_seconds", 604800)
    try:
        await cache.put(
            fingerprint=snapshot.fingerprint,
            check_type=snapshot.check_type,
            outcome=outcome,
            ttl_seconds=ttl_seconds,
        )
    except Exception as exc:
        logger.warning("result cache write failed", extra={"item_id": snapshot.item_id, "reason": str(exc)})
        return False
    return ttl_seconds > 0


async def _record_usage(*, repository: WorkRepository, device: str, day: str, item_id: str) -> None:
    try:
        await repository.bump_device_usage(device=device, day=day)
    except Exception as exc:
        logger.warning("usage counter update failed", extra={"device": device, "item_id": item_id, "reason": str(exc)})


async def _append_report_log(*, repository: WorkRepository, entry: ReportLogEntry) -> None:
    try:
        await repository.append_report_log(entry=entry)
    except Exception as exc:
        logger.warning("report log append failed", extra={"item_id": entry.item_id, "reason": str(exc)})


def _leased_item(snapshot: WorkItemSnapshot) -> LeasedItem:
    return LeasedItem(
        item_id=snapshot.item_id,
        content=snapshot.content,
        check_type=snapshot.check_type,
        price=snapshot.price,
    )


def _match_from_snapshot(snapshot: WorkItemSnapshot) -> ResolvedMatch:
    resolution = snapshot.resolution or ResolutionMetadata()
    return ResolvedMatch(
        fingerprint=snapshot.fingerprint,
        status=snapshot.status,
        source="store",
        check_type=snapshot.check_type,
        item_id=snapshot.item_id,
        message=resolution.message,
        metadata=resolution.as_dict(),
        resolved_at=snapshot.resolved_at.isoformat() if snapshot.resolved_at else None,
    )


def _parse_day(value: str) -> None:
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise DomainValidationError(f"invalid day: {value}") from exc
