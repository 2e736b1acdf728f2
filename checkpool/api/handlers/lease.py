from __future__ import annotations

from collections.abc import Mapping
import logging

from pydantic import ValidationError

from checkpool.api.handlers.deps import ApiDeps
from checkpool.api.schemas import (
    SERVICE_FETCH,
    SERVICE_REPORT,
    FetchRequest,
    LeasedItemResponse,
    ReportRequest,
    WorkerEnvelope,
    WorkerRequest,
)
from checkpool.domain.error_taxonomy import classify_error
from checkpool.domain.errors import DomainConflictError, DomainValidationError
from checkpool.domain.legacy_status import to_legacy_code
from checkpool.domain.models import FetchResult, ReportCommand, ResolutionMetadata
from checkpool.domain.use_cases.lease import fetch_batch, report_result

logger = logging.getLogger("checkpool.lease")

_HEADER_FIELDS = ("Token", "LoaiDV", "Device", "Amount", "TypeCheck", "Id", "Status", "From", "Msg")


def merge_worker_payload(
    *,
    body_fields: Mapping[str, object],
    query: Mapping[str, str],
    headers: Mapping[str, str],
) -> dict[str, object]:
    """Body fields win over query parameters, which win over legacy headers."""
    payload: dict[str, object] = {}
    for name in _HEADER_FIELDS:
        value = headers.get(name.lower())
        if value:
            payload[name] = value
    authorization = headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        payload["token"] = authorization[7:].strip()
    payload.update(query)
    payload.update(body_fields)
    return payload


def fetch_failure(error_code: str, message: str | None = None, *, title: str = "error") -> WorkerEnvelope:
    return WorkerEnvelope(ErrorId=1, Title=title, Message=message or error_code, Content=[])


def report_failure(error_code: str) -> WorkerEnvelope:
    return WorkerEnvelope(ErrorId=0, Title="error", Message=error_code, Content="")


def fetch_envelope(result: FetchResult) -> WorkerEnvelope:
    if result.cached is not None:
        legacy_code = to_legacy_code(result.cached.status)
        return WorkerEnvelope(
            ErrorId=1,
            Title="cached",
            Message=result.cached.message or result.cached.status,
            Content={
                "Status": legacy_code,
                "Msg": result.cached.message,
                "ResolvedAt": result.cached.resolved_at,
            },
        )
    if result.out_of_stock:
        return WorkerEnvelope(ErrorId=1, Title="error", Message="Out of stock", Content=[])
    items = [
        LeasedItemResponse(Id=item.item_id, Content=item.content, TypeCheck=item.check_type, Price=item.price)
        for item in result.items
    ]
    return WorkerEnvelope(
        ErrorId=0,
        Title="low_stock" if result.low_stock else "success",
        Message=f"{len(items)}/{result.requested}",
        Content=[item.model_dump() for item in items],
    )


async def handle_worker_request(
    payload: Mapping[str, object],
    *,
    api_deps: ApiDeps,
    remote_addr: str,
    service_type: int | None = None,
) -> WorkerEnvelope:
    """Dispatch a worker call by its service type: 1 leases, 2 reports."""
    if service_type is None:
        try:
            service_type = WorkerRequest.model_validate(payload).service_type
        except ValidationError:
            return fetch_failure("validation_error", "unknown service type")

    if service_type == SERVICE_FETCH:
        return await handle_fetch(payload, api_deps=api_deps, remote_addr=remote_addr)
    if service_type == SERVICE_REPORT:
        return await handle_report(payload, api_deps=api_deps, remote_addr=remote_addr)
    return fetch_failure("validation_error", "unknown service type")


async def handle_fetch(payload: Mapping[str, object], *, api_deps: ApiDeps, remote_addr: str) -> WorkerEnvelope:
    try:
        request = FetchRequest.model_validate(payload)
    except ValidationError:
        return fetch_failure("validation_error")

    try:
        result = await fetch_batch(
            repository=api_deps.repository,
            cache=api_deps.cache,
            config=api_deps.config,
            device=request.device,
            quantity=request.quantity,
            check_type=request.check_type,
            fallback_content=request.fallback_content,
            caller_id=request.token,
        )
    except (DomainValidationError, DomainConflictError) as exc:
        _log_expected_failure(exc.error_code, device=request.device, remote_addr=remote_addr)
        return fetch_failure(exc.error_code)
    return fetch_envelope(result)


async def handle_report(payload: Mapping[str, object], *, api_deps: ApiDeps, remote_addr: str) -> WorkerEnvelope:
    try:
        request = ReportRequest.model_validate(payload)
    except ValidationError:
        return report_failure("validation_error")

    command = ReportCommand(
        item_id=request.item_id,
        outcome_code=request.outcome,
        message=request.message,
        origin_tag=request.origin,
        metadata=ResolutionMetadata(
            message=request.message,
            origin_class=request.origin_class,
            locale=request.locale,
            issuer=request.issuer,
            tier=request.tier,
            extra=dict(request.extra),
        ),
        device=request.device,
        remote_addr=remote_addr,
    )
    try:
        result = await report_result(
            repository=api_deps.repository,
            cache=api_deps.cache,
            config=api_deps.config,
            command=command,
        )
    except (DomainValidationError, DomainConflictError) as exc:
        _log_expected_failure(exc.error_code, device=request.device, remote_addr=remote_addr, item_id=request.item_id)
        return report_failure(exc.error_code)
    return WorkerEnvelope(ErrorId=1, Title="success", Message=result.status, Content="")


def _log_expected_failure(error_code: str, *, device: str, remote_addr: str, item_id: str | None = None) -> None:
    logger.info(
        "worker request refused",
        extra={
            "device": device,
            "remote_addr": remote_addr,
            "item_id": item_id,
            "error_code": error_code,
            "reason": classify_error(error_code),
        },
    )
