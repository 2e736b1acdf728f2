from __future__ import annotations

from datetime import datetime

from checkpool.api.handlers.deps import ApiDeps
from checkpool.api.schemas import (
    ApiEnvelope,
    EvictData,
    SessionItemResponse,
    SessionResponse,
    SessionStatusData,
    StartSessionData,
    StopSessionData,
)
from checkpool.domain.legacy_status import to_legacy_code
from checkpool.domain.models import SessionSnapshot
from checkpool.domain.use_cases.lease import evict_session
from checkpool.domain.use_cases.sessions import get_owned_session, session_status, start_session, stop_session


def session_response(session: SessionSnapshot) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        owner_id=session.owner_id,
        status=session.status,
        check_type=session.check_type,
        total=session.total,
        price_per_item=session.price_per_item,
        estimated_cost=session.estimated_cost,
        stop_requested=session.stop_requested,
        created_at=_iso(session.created_at),
        started_at=_iso(session.started_at),
        ended_at=_iso(session.ended_at),
    )


async def start_session_handler(
    *,
    owner_id: str,
    items: list[str] | str,
    check_type: int,
    api_deps: ApiDeps,
) -> ApiEnvelope:
    result = await start_session(
        repository=api_deps.repository,
        config=api_deps.config,
        owner_id=owner_id,
        items=items,
        check_type=check_type,
    )
    data = StartSessionData(session=session_response(result.session), seeded=result.seeded, skipped=result.skipped)
    message = "session started" if result.seeded else "no items could be seeded"
    return ApiEnvelope(success=result.seeded > 0, message=message, data=data.model_dump())


async def stop_session_handler(*, owner_id: str, session_id: str, api_deps: ApiDeps) -> ApiEnvelope:
    result = await stop_session(repository=api_deps.repository, owner_id=owner_id, session_id=session_id)
    data = StopSessionData(session=session_response(result.session), released=result.released)
    return ApiEnvelope(success=True, message="session stopped", data=data.model_dump())


async def session_status_handler(*, owner_id: str, session_id: str, api_deps: ApiDeps) -> ApiEnvelope:
    view = await session_status(repository=api_deps.repository, owner_id=owner_id, session_id=session_id)
    data = SessionStatusData(
        session=session_response(view.session),
        counts=view.counts,
        total=view.total,
        processed=view.processed,
        pending=view.pending,
        progress=view.progress,
        items=[
            SessionItemResponse(
                item_id=item.item_id,
                fingerprint=item.fingerprint,
                status=item.status,
                legacy_code=to_legacy_code(item.status),
                resolution=item.resolution.as_dict() if item.resolution is not None else None,
                resolved_at=_iso(item.resolved_at),
            )
            for item in view.items
        ],
    )
    return ApiEnvelope(success=True, data=data.model_dump())


async def evict_session_handler(*, owner_id: str, session_id: str, api_deps: ApiDeps) -> ApiEnvelope:
    await get_owned_session(repository=api_deps.repository, owner_id=owner_id, session_id=session_id)
    released = await evict_session(repository=api_deps.repository, session_id=session_id)
    return ApiEnvelope(
        success=True,
        message="session items released",
        data=EvictData(session_id=session_id, released=released).model_dump(),
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
