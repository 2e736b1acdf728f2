from __future__ import annotations

import re

from checkpool.api.handlers.deps import ApiDeps
from checkpool.api.schemas import FINGERPRINT_PATTERN, ApiEnvelope, DeviceUsageResponse
from checkpool.domain.errors import DomainValidationError
from checkpool.domain.use_cases.lease import device_stats


async def device_stats_handler(*, day_from: str | None, day_to: str | None, api_deps: ApiDeps) -> ApiEnvelope:
    usage = await device_stats(repository=api_deps.repository, day_from=day_from, day_to=day_to)
    data = [
        DeviceUsageResponse(
            device=entry.device,
            total=entry.total,
            today=entry.today,
            daily=[{"day": day, "count": count} for day, count in entry.daily],
        ).model_dump()
        for entry in usage
    ]
    return ApiEnvelope(success=True, data=data)


async def cache_stats_handler(*, api_deps: ApiDeps) -> ApiEnvelope:
    return ApiEnvelope(success=True, data=await api_deps.cache.stats())


async def flush_cache_handler(*, api_deps: ApiDeps) -> ApiEnvelope:
    await api_deps.cache.flush()
    return ApiEnvelope(success=True, message="result cache flushed")


async def evict_cached_result_handler(*, fingerprint: str, check_type: int, api_deps: ApiDeps) -> ApiEnvelope:
    if re.fullmatch(FINGERPRINT_PATTERN, fingerprint) is None:
        raise DomainValidationError("fingerprint must be 64 lowercase hex characters")
    if check_type < 1:
        raise DomainValidationError("check_type must be a positive integer")
    await api_deps.cache.delete(fingerprint=fingerprint, check_type=check_type)
    return ApiEnvelope(success=True, message="cached result removed")
