from __future__ import annotations

from checkpool.api.handlers.deps import ApiDeps
from checkpool.api.schemas import ApiEnvelope, ExistingItemsRequest, ResolvedMatchResponse
from checkpool.domain.legacy_status import to_legacy_code
from checkpool.domain.use_cases.lease import find_resolved


async def existing_items_handler(*, request: ExistingItemsRequest, api_deps: ApiDeps) -> ApiEnvelope:
    """Answer "were any of these already resolved?" before new work is created."""
    matches = await find_resolved(
        repository=api_deps.repository,
        cache=api_deps.cache,
        fingerprints=request.fingerprints,
        contents=request.contents,
        check_type=request.check_type,
        window_days=request.window_days,
    )
    data = [
        ResolvedMatchResponse(
            fingerprint=match.fingerprint,
            status=match.status,
            legacy_code=to_legacy_code(match.status),
            source=match.source,
            check_type=match.check_type,
            item_id=match.item_id,
            message=match.message,
            metadata=match.metadata,
            resolved_at=match.resolved_at,
        ).model_dump()
        for match in matches
    ]
    return ApiEnvelope(success=True, message=f"{len(data)} resolved", data=data)
