from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict
import json
import logging

from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from checkpool.api.handlers.deps import ApiDeps
from checkpool.api.handlers.items import existing_items_handler
from checkpool.api.handlers.lease import fetch_failure, handle_worker_request, merge_worker_payload
from checkpool.api.handlers.sessions import (
    evict_session_handler,
    session_status_handler,
    start_session_handler,
    stop_session_handler,
)
from checkpool.api.handlers.stats import (
    cache_stats_handler,
    device_stats_handler,
    evict_cached_result_handler,
    flush_cache_handler,
)
from checkpool.api.schemas import (
    SERVICE_FETCH,
    SERVICE_REPORT,
    ApiEnvelope,
    ExistingItemsRequest,
    HealthResponse,
    ReadyResponse,
    StartSessionRequest,
    StopSessionRequest,
    WorkerEnvelope,
    WorkerMetrics,
)
from checkpool.domain.errors import (
    DomainConfigurationError,
    DomainConflictError,
    DomainDependencyError,
    DomainError,
    DomainNotFoundError,
    DomainValidationError,
    SecurityRejection,
)
from checkpool.security.gateway import GatewayRequest
from checkpool.workers.loop import WorkerLoop
from checkpool.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def build_app(
    role: str,
    run_id: str,
    worker_loop: WorkerLoop | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
    mode: str = "memory",
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loop is not None:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_worker_until_stopped(
                    worker_loop=worker_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            stop_event.set()
            await worker_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="checkpool", version="0.1.0", lifespan=lifespan)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode=mode)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        # The reclaim loop must be alive for a worker role to count as ready.
        worker_loop_ready = worker_loop is None or (
            worker_state is not None
            and worker_state.started
            and worker_task is not None
            and not worker_task.done()
        )
        metrics = WorkerMetrics(**asdict(worker_state)) if worker_state is not None else WorkerMetrics()
        return ReadyResponse(
            status="ready",
            role=role,
            mode=mode,
            worker_loop_enabled=worker_loop is not None,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=metrics,
        )

    async def worker_call(request: Request, service_type: int | None) -> JSONResponse:
        if api_deps is None:
            return _worker_response(503, fetch_failure("store_unavailable"))
        body = await request.body()
        peer = request.client.host if request.client is not None else None
        try:
            remote_addr = await api_deps.gateway.check(
                GatewayRequest(
                    method=request.method,
                    path=request.url.path,
                    headers=request.headers,
                    body=body,
                    peer=peer,
                )
            )
            try:
                body_fields = await _read_body_fields(request, body)
            except DomainValidationError:
                return _worker_response(200, fetch_failure("validation_error"))
            payload = merge_worker_payload(
                body_fields=body_fields,
                query=dict(request.query_params),
                headers=request.headers,
            )
            token = str(payload.get("token") or payload.get("Token") or "").strip()
            if not token:
                return _worker_response(401, fetch_failure("unauthorized", title="Unauthorized"))
            envelope = await handle_worker_request(
                payload,
                api_deps=api_deps,
                remote_addr=remote_addr,
                service_type=service_type,
            )
        except SecurityRejection as exc:
            headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
            return _worker_response(exc.status_code, fetch_failure(exc.error_code, title=exc.title), headers=headers)
        except DomainDependencyError as exc:
            logger.error("item store unavailable", extra={"error_code": exc.error_code, "reason": str(exc)})
            return _worker_response(503, fetch_failure(exc.error_code, title="Service Unavailable"))
        except DomainConfigurationError as exc:
            logger.error("service misconfigured", extra={"error_code": exc.error_code, "reason": str(exc)})
            return _worker_response(500, fetch_failure(exc.error_code, title="Server Error"))
        return _worker_response(200, envelope)

    @app.post("/api/checkcc", tags=["Workers"])
    async def checkcc(request: Request) -> JSONResponse:
        return await worker_call(request, service_type=None)

    @app.post("/api/post/checkcc", tags=["Workers"])
    async def post_checkcc(request: Request) -> JSONResponse:
        return await worker_call(request, service_type=SERVICE_FETCH)

    @app.post("/api/post/update-status", tags=["Workers"])
    async def post_update_status(request: Request) -> JSONResponse:
        return await worker_call(request, service_type=SERVICE_REPORT)

    async def operator_call(owner_id: str | None, call: Callable[[ApiDeps, str], Awaitable[ApiEnvelope]]) -> JSONResponse:
        if api_deps is None:
            return _operator_response(503, ApiEnvelope(success=False, message="api dependencies are not available"))
        if not owner_id or not owner_id.strip():
            return _operator_response(401, ApiEnvelope(success=False, message="unauthorized"))
        try:
            envelope = await call(api_deps, owner_id.strip())
        except DomainDependencyError as exc:
            logger.error("item store unavailable", extra={"error_code": exc.error_code, "reason": str(exc)})
            return _operator_response(503, _error_envelope(exc))
        except DomainValidationError as exc:
            return _operator_response(400, _error_envelope(exc))
        except DomainNotFoundError as exc:
            return _operator_response(404, _error_envelope(exc))
        except DomainConflictError as exc:
            return _operator_response(409, _error_envelope(exc))
        except DomainError as exc:
            logger.error("operator request failed", extra={"error_code": exc.error_code, "reason": str(exc)})
            return _operator_response(500, _error_envelope(exc))
        return _operator_response(200, envelope)

    @app.post("/api/sessions/start", tags=["Sessions"])
    async def sessions_start(
        request: StartSessionRequest,
        owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
    ) -> JSONResponse:
        return await operator_call(
            owner_id,
            lambda deps, owner: start_session_handler(
                owner_id=owner,
                items=request.items,
                check_type=request.check_type,
                api_deps=deps,
            ),
        )

    @app.post("/api/sessions/stop", tags=["Sessions"])
    async def sessions_stop(
        request: StopSessionRequest,
        owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
    ) -> JSONResponse:
        return await operator_call(
            owner_id,
            lambda deps, owner: stop_session_handler(owner_id=owner, session_id=request.session_id, api_deps=deps),
        )

    @app.get("/api/sessions/{session_id}", tags=["Sessions"])
    async def sessions_status(
        session_id: str,
        owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
    ) -> JSONResponse:
        return await operator_call(
            owner_id,
            lambda deps, owner: session_status_handler(owner_id=owner, session_id=session_id, api_deps=deps),
        )

    @app.post("/api/sessions/{session_id}/evict", tags=["Sessions"])
    async def sessions_evict(
        session_id: str,
        owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
    ) -> JSONResponse:
        return await operator_call(
            owner_id,
            lambda deps, owner: evict_session_handler(owner_id=owner, session_id=session_id, api_deps=deps),
        )

    @app.post("/api/items/existing", tags=["Items"])
    async def items_existing(
        request: ExistingItemsRequest,
        owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
    ) -> JSONResponse:
        return await operator_call(
            owner_id,
            lambda deps, _owner: existing_items_handler(request=request, api_deps=deps),
        )

    @app.get("/api/stats/devices", tags=["Stats"])
    async def stats_devices(
        day_from: str | None = Query(default=None, alias="from"),
        day_to: str | None = Query(default=None, alias="to"),
        owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
    ) -> JSONResponse:
        return await operator_call(
            owner_id,
            lambda deps, _owner: device_stats_handler(day_from=day_from, day_to=day_to, api_deps=deps),
        )

    @app.get("/api/stats/cache", tags=["Stats"])
    async def stats_cache(owner_id: str | None = Header(default=None, alias="X-Owner-Id")) -> JSONResponse:
        return await operator_call(owner_id, lambda deps, _owner: cache_stats_handler(api_deps=deps))

    @app.delete("/api/stats/cache", tags=["Stats"])
    async def stats_cache_flush(owner_id: str | None = Header(default=None, alias="X-Owner-Id")) -> JSONResponse:
        return await operator_call(owner_id, lambda deps, _owner: flush_cache_handler(api_deps=deps))

    @app.delete("/api/stats/cache/{fingerprint}", tags=["Stats"])
    async def stats_cache_evict(
        fingerprint: str,
        check_type: int = Query(default=1),
        owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
    ) -> JSONResponse:
        return await operator_call(
            owner_id,
            lambda deps, _owner: evict_cached_result_handler(fingerprint=fingerprint, check_type=check_type, api_deps=deps),
        )

    return app


async def _read_body_fields(request: Request, body: bytes) -> dict[str, object]:
    content_type = request.headers.get("content-type", "")
    if any(content_type.startswith(kind) for kind in _FORM_CONTENT_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    if not body.strip():
        return {}
    try:
        parsed = json.loads(body)
    except ValueError as exc:
        raise DomainValidationError("request body is not valid json") from exc
    if not isinstance(parsed, dict):
        raise DomainValidationError("request body must be a json object")
    return parsed


def _worker_response(status_code: int, envelope: WorkerEnvelope, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _operator_response(status_code: int, envelope: ApiEnvelope) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _error_envelope(exc: DomainError) -> ApiEnvelope:
    return ApiEnvelope(success=False, message=str(exc), data={"error_code": exc.error_code})
