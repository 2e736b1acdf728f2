from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import logging
import time

from checkpool.domain.errors import SecurityRejection
from checkpool.security.allowlist import client_address, enforce_allowlist, parse_allowlist
from checkpool.security.rate_limit import RateLimiter
from checkpool.security.signature import verify_signature
from checkpool.services.live_config import LiveConfig

logger = logging.getLogger("checkpool.security")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class GatewayRequest:
    method: str
    path: str
    headers: Mapping[str, str]
    body: bytes
    peer: str | None = None


@dataclass
class SecurityGateway:
    """Ordered worker-request checks: signature, IP allowlist, rate limit.

    Every flag and parameter is read from live configuration on each call, so
    operators can toggle checks without restarting the service.
    """

    config: LiveConfig
    rate_limiter: RateLimiter
    now_ms: Callable[[], int] = _now_ms

    async def check(self, request: GatewayRequest) -> str:
        address = client_address(
            forwarded_for=request.headers.get("x-forwarded-for"),
            peer=request.peer,
        )
        try:
            await self._check_signature(request)
            await self._check_allowlist(address)
            await self._check_rate_limit(address)
        except SecurityRejection as exc:
            log = logger.error if exc.status_code >= 500 else logger.warning
            log(
                "worker request rejected",
                extra={
                    "remote_addr": address,
                    "reason": str(exc),
                    "error_code": exc.error_code,
                    "path": request.path,
                },
            )
            raise
        return address

    async def _check_signature(self, request: GatewayRequest) -> None:
        if not await self.config.get_bool("signature_enabled"):
            return
        verify_signature(
            secret=await self.config.get_str("signature_secret"),
            method=request.method,
            path=request.path,
            body=request.body,
            signature=request.headers.get("x-signature"),
            timestamp=request.headers.get("x-timestamp"),
            now_ms=self.now_ms(),
        )

    async def _check_allowlist(self, address: str) -> None:
        if not await self.config.get_bool("ip_allowlist_enabled"):
            return
        entries = parse_allowlist(await self.config.get_str("ip_allowlist"))
        if not entries:
            logger.warning("ip allowlist enabled but empty", extra={"remote_addr": address})
            return
        enforce_allowlist(address, entries)

    async def _check_rate_limit(self, address: str) -> None:
        if not await self.config.get_bool("rate_limit_enabled"):
            return
        await self.rate_limiter.enforce(
            address=address,
            max_requests=await self.config.get_int("rate_limit_max_requests", 100),
            window_seconds=await self.config.get_int("rate_limit_window_seconds", 60),
        )
