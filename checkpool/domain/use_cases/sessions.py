from __future__ import annotations

import logging

from checkpool.domain.contracts import WorkRepository
from checkpool.domain.errors import DomainConflictError, DomainNotFoundError, DomainValidationError
from checkpool.domain.fingerprint import fingerprint, normalize_content
from checkpool.domain.ids import new_session_id
from checkpool.domain.lifecycle import STOPPABLE_SESSION_STATUSES
from checkpool.domain.models import (
    RESOLVED_STATUSES,
    CheckSource,
    ItemStatus,
    NewWorkItem,
    SessionItemView,
    SessionSnapshot,
    SessionStatus,
    SessionStatusView,
    StartSessionResult,
    StopSessionResult,
)
from checkpool.domain.use_cases.lease import evict_session
from checkpool.services.live_config import LiveConfig

logger = logging.getLogger("checkpool.sessions")


def split_items(items: list[str] | str) -> list[str]:
    raw = items.splitlines() if isinstance(items, str) else items
    return [normalize_content(line) for line in raw if normalize_content(line)]


async def start_session(
    *,
    repository: WorkRepository,
    config: LiveConfig,
    owner_id: str,
    items: list[str] | str,
    check_type: int,
) -> StartSessionResult:
    if not owner_id:
        raise DomainValidationError("owner_id is required")
    if check_type < 1:
        raise DomainValidationError("check_type must be a positive integer")
    contents = split_items(items)
    if not contents:
        raise DomainValidationError("at least one item is required")
    max_items = await config.get_int("max_items_per_session", 10000)
    if len(contents) > max_items:
        raise DomainValidationError(f"too many items: {len(contents)} > {max_items}")

    price_per_item = await config.get_float("price_per_item", 0.0)
    session = await repository.create_session(
        session=SessionSnapshot(
            session_id=new_session_id(),
            owner_id=owner_id,
            status=SessionStatus.PENDING,
            check_type=check_type,
            total=len(contents),
            price_per_item=price_per_item,
            estimated_cost=round(len(contents) * price_per_item, 2),
        )
    )

    seeded = 0
    skipped: list[str] = []
    seen: set[str] = set()
    for content in contents:
        content_fingerprint = fingerprint(content)
        if content_fingerprint in seen:
            skipped.append(content_fingerprint)
            continue
        seen.add(content_fingerprint)
        outcome = await repository.insert_item(
            item=NewWorkItem(
                content=content,
                fingerprint=content_fingerprint,
                owner_id=owner_id,
                check_type=check_type,
                check_source=CheckSource.MANUAL_SEED,
                session_id=session.session_id,
                price=price_per_item,
            )
        )
        if not outcome.created:
            skipped.append(content_fingerprint)
            continue
        seeded += 1

    target = SessionStatus.RUNNING if seeded else SessionStatus.FAILED
    updated = await repository.transition_session(
        session_id=session.session_id,
        from_status=SessionStatus.PENDING,
        to_status=target,
    )
    logger.info(
        "session started",
        extra={"session_id": session.session_id, "reason": f"seeded={seeded} skipped={len(skipped)} status={target}"},
    )
    return StartSessionResult(session=updated or session, seeded=seeded, skipped=skipped)


async def stop_session(*, repository: WorkRepository, owner_id: str, session_id: str) -> StopSessionResult:
    """Stop a session and hand its unfinished items back to the shared pool.

    Stopping an already stopped session succeeds with nothing released.
    """
    session = await get_owned_session(repository=repository, owner_id=owner_id, session_id=session_id)
    if session.status == SessionStatus.STOPPED:
        return StopSessionResult(session=session, released=0)
    if session.status not in STOPPABLE_SESSION_STATUSES:
        raise DomainConflictError(
            f"session cannot be stopped from {session.status}",
            error_code="session_not_stoppable",
        )

    stopping = await repository.transition_session(
        session_id=session_id,
        from_status=session.status,
        to_status=SessionStatus.STOPPING,
    )
    if stopping is None:
        raise DomainConflictError("session changed while stopping", error_code="session_not_stoppable")

    released = await evict_session(repository=repository, session_id=session_id)
    stopped = await repository.transition_session(
        session_id=session_id,
        from_status=SessionStatus.STOPPING,
        to_status=SessionStatus.STOPPED,
    )
    logger.info("session stopped", extra={"session_id": session_id, "reason": f"released={released}"})
    return StopSessionResult(session=stopped or stopping, released=released)


async def session_status(*, repository: WorkRepository, owner_id: str, session_id: str) -> SessionStatusView:
    session = await get_owned_session(repository=repository, owner_id=owner_id, session_id=session_id)
    items = await repository.list_session_items(session_id=session_id)

    counts = {str(status): 0 for status in ItemStatus}
    for item in items:
        counts[item.status] = counts.get(item.status, 0) + 1
    processed = sum(counts[str(status)] for status in RESOLVED_STATUSES)
    pending = counts[ItemStatus.PENDING] + counts[ItemStatus.LEASED]
    total = len(items)
    progress = (processed * 100) // total if total else 0

    if session.status == SessionStatus.RUNNING and total and pending == 0:
        completed = await repository.transition_session(
            session_id=session_id,
            from_status=SessionStatus.RUNNING,
            to_status=SessionStatus.COMPLETED,
        )
        if completed is not None:
            logger.info("session completed", extra={"session_id": session_id})
            session = completed

    return SessionStatusView(
        session=session,
        counts=counts,
        total=total,
        processed=processed,
        pending=pending,
        progress=progress,
        items=[
            SessionItemView(
                item_id=item.item_id,
                fingerprint=item.fingerprint,
                status=item.status,
                resolution=item.resolution,
                resolved_at=item.resolved_at,
            )
            for item in items
        ],
    )


async def get_owned_session(*, repository: WorkRepository, owner_id: str, session_id: str) -> SessionSnapshot:
    if not session_id:
        raise DomainValidationError("session_id is required")
    session = await repository.get_session(session_id=session_id)
    if session is None or session.owner_id != owner_id:
        raise DomainNotFoundError(f"session not found: {session_id}", error_code="session_not_found")
    return session
