from __future__ import annotations

import argparse
import logging
import os
import sys
import uuid

import uvicorn
from fastapi import FastAPI

from checkpool.api.http_app import build_app
from checkpool.logging_setup import configure_logging
from checkpool.roles import SUPPORTED_ROLES, RuntimeRole, validate_role
from checkpool.services.bootstrap import RuntimeContainer, build_runtime_container

logger = logging.getLogger("runtime")

EXIT_USAGE = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="checkpool work distribution runtime")
    parser.add_argument("--role", required=True, help=f"One of: {', '.join(SUPPORTED_ROLES)}")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None, help="Defaults to the role's port")
    parser.add_argument("--dry-run-startup", action="store_true", help="Validate role and logging, then exit")
    parser.add_argument("--reload", action="store_true", help="Serve through the uvicorn reloader (dev only)")
    return parser.parse_args(argv)


def _app_for(role: RuntimeRole, run_id: str, container: RuntimeContainer) -> FastAPI:
    return build_app(
        role=role.name,
        run_id=run_id,
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
        mode=container.mode,
    )


def create_runtime_app() -> FastAPI:
    """uvicorn factory used by --reload; the role travels through APP_ROLE."""
    configure_logging()
    role = validate_role(os.getenv("APP_ROLE", "api"))
    return _app_for(role, str(uuid.uuid4()), build_runtime_container(role))


def _fail(message: str, *hints: str) -> int:
    sys.stderr.write(f"ERROR: {message}\n")
    for hint in hints:
        sys.stderr.write(f"{hint}\n")
    return EXIT_USAGE


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        role = validate_role(args.role)
    except ValueError as exc:
        return _fail(str(exc), f"Try one of: {', '.join(SUPPORTED_ROLES)}")

    configure_logging()
    run_id = str(uuid.uuid4())
    log_extra = {"role": role.name, "service": role.name, "run_id": run_id}
    logger.info("runtime initialized", extra=log_extra)

    if args.dry_run_startup:
        logger.info("dry-run startup complete", extra=log_extra)
        return 0

    try:
        container = build_runtime_container(role)
    except ValueError as exc:
        return _fail(str(exc))

    port = role.default_port if args.port is None else args.port
    if not args.reload:
        uvicorn.run(_app_for(role, run_id, container), host=args.host, port=port, log_level="warning")
        return 0

    os.environ["APP_ROLE"] = role.name
    uvicorn.run(
        "checkpool.main:create_runtime_app",
        host=args.host,
        port=port,
        log_level="warning",
        reload=True,
        factory=True,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
