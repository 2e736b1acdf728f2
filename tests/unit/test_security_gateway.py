from __future__ import annotations

import asyncio
import json

import pytest

from checkpool.domain.errors import SecurityRejection
from checkpool.security.allowlist import client_address, is_allowed, parse_allowlist
from checkpool.security.gateway import GatewayRequest, SecurityGateway
from checkpool.security.rate_limit import InMemoryRateLimitBackend, RateLimiter
from checkpool.security.signature import compute_signature, verify_signature
from checkpool.services.live_config import DEFAULT_SETTINGS, InMemoryConfigSource, LiveConfig

SECRET = "s" * 32
NOW_MS = 1_760_000_000_000


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _signed_headers(*, body: bytes, timestamp_ms: int, path: str = "/api/checkcc") -> dict[str, str]:
    timestamp = str(timestamp_ms)
    return {
        "x-timestamp": timestamp,
        "x-signature": compute_signature(secret=SECRET, method="POST", path=path, timestamp=timestamp, body=body),
    }


def _verify(**overrides: object) -> None:
    body = b'{"LoaiDV": 1}'
    headers = _signed_headers(body=body, timestamp_ms=NOW_MS)
    params: dict[str, object] = {
        "secret": SECRET,
        "method": "POST",
        "path": "/api/checkcc",
        "body": body,
        "signature": headers["x-signature"],
        "timestamp": headers["x-timestamp"],
        "now_ms": NOW_MS,
    }
    params.update(overrides)
    verify_signature(**params)  # type: ignore[arg-type]


@pytest.mark.unit
def test_valid_signature_passes() -> None:
    _verify()


@pytest.mark.unit
def test_signature_with_ten_minute_old_timestamp_is_expired_even_if_correct() -> None:
    body = b"{}"
    old_ms = NOW_MS - 10 * 60 * 1000
    headers = _signed_headers(body=body, timestamp_ms=old_ms)

    with pytest.raises(SecurityRejection) as exc_info:
        _verify(body=body, signature=headers["x-signature"], timestamp=headers["x-timestamp"])

    assert exc_info.value.error_code == "signature_expired"
    assert exc_info.value.status_code == 401


@pytest.mark.unit
@pytest.mark.parametrize(
    ("overrides", "error_code", "status_code"),
    [
        ({"signature": None}, "missing_signature", 401),
        ({"timestamp": ""}, "missing_signature", 401),
        ({"signature": "0" * 64}, "bad_signature", 401),
        ({"body": b'{"LoaiDV": 2}'}, "bad_signature", 401),
        ({"secret": "short"}, "security_misconfigured", 500),
        ({"secret": ""}, "security_misconfigured", 500),
    ],
)
def test_signature_rejections(overrides: dict[str, object], error_code: str, status_code: int) -> None:
    with pytest.raises(SecurityRejection) as exc_info:
        _verify(**overrides)

    assert exc_info.value.error_code == error_code
    assert exc_info.value.status_code == status_code


@pytest.mark.unit
def test_client_address_prefers_first_forwarded_entry() -> None:
    assert client_address(forwarded_for="10.1.2.3, 172.16.0.1", peer="127.0.0.1") == "10.1.2.3"
    assert client_address(forwarded_for=None, peer="::ffff:192.168.1.7") == "192.168.1.7"
    assert client_address(forwarded_for=None, peer=None) == "unknown"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("address", "expected"),
    [
        ("203.0.113.9", True),
        ("10.200.1.1", True),
        ("172.16.99.1", True),
        ("172.17.0.1", False),
        ("192.168.5.77", True),
        ("192.168.6.77", False),
        ("198.51.100.1", False),
    ],
)
def test_allowlist_matches_exact_and_prefix_entries(address: str, expected: bool) -> None:
    entries = parse_allowlist("203.0.113.9, 10.0.0.0/8,172.16.0.0/16 , 192.168.5.0/24, 198.51.0.0/12")
    assert is_allowed(address, entries) is expected


@pytest.mark.unit
def test_rate_limit_rejects_third_call_and_accepts_after_window_reset() -> None:
    async def _run() -> None:
        clock = _Clock()
        limiter = RateLimiter(backend=InMemoryRateLimitBackend(clock=clock))

        await limiter.enforce(address="10.0.0.1", max_requests=2, window_seconds=60)
        clock.now += 1
        await limiter.enforce(address="10.0.0.1", max_requests=2, window_seconds=60)
        clock.now += 1
        with pytest.raises(SecurityRejection) as exc_info:
            await limiter.enforce(address="10.0.0.1", max_requests=2, window_seconds=60)

        assert exc_info.value.status_code == 429
        assert exc_info.value.error_code == "rate_limited"
        assert exc_info.value.retry_after is not None
        assert 0 < exc_info.value.retry_after <= 60

        await limiter.enforce(address="10.0.0.2", max_requests=2, window_seconds=60)

        clock.now += 60
        await limiter.enforce(address="10.0.0.1", max_requests=2, window_seconds=60)

    asyncio.run(_run())


@pytest.mark.unit
def test_stale_rate_limit_records_are_swept() -> None:
    async def _run() -> None:
        clock = _Clock()
        backend = InMemoryRateLimitBackend(clock=clock, sweep_interval_seconds=600)
        await backend.hit(key="a", window_seconds=60)
        clock.now += 30
        await backend.hit(key="b", window_seconds=60)

        clock.now += 600
        await backend.hit(key="c", window_seconds=60)

        assert set(backend.records) == {"c"}

    asyncio.run(_run())


def _gateway(clock: _Clock | None = None, **settings: object) -> SecurityGateway:
    config = LiveConfig(source=InMemoryConfigSource(values={**DEFAULT_SETTINGS, **settings}))
    return SecurityGateway(
        config=config,
        rate_limiter=RateLimiter(backend=InMemoryRateLimitBackend(clock=clock or _Clock())),
        now_ms=lambda: NOW_MS,
    )


def _request(headers: dict[str, str], body: bytes = b"{}", peer: str = "10.0.0.5") -> GatewayRequest:
    return GatewayRequest(method="POST", path="/api/checkcc", headers=headers, body=body, peer=peer)


@pytest.mark.unit
def test_gateway_runs_signature_before_allowlist() -> None:
    async def _run() -> None:
        gateway = _gateway(signature_enabled=True, signature_secret=SECRET, ip_allowlist_enabled=True, ip_allowlist="1.2.3.4")

        with pytest.raises(SecurityRejection) as exc_info:
            await gateway.check(_request({}))

        assert exc_info.value.error_code == "missing_signature"

    asyncio.run(_run())


@pytest.mark.unit
def test_gateway_accepts_signed_allowed_request_and_returns_address() -> None:
    async def _run() -> None:
        gateway = _gateway(
            signature_enabled=True,
            signature_secret=SECRET,
            ip_allowlist_enabled=True,
            ip_allowlist="10.0.0.0/24",
        )
        body = json.dumps({"LoaiDV": 1}).encode("utf-8")
        headers = _signed_headers(body=body, timestamp_ms=NOW_MS)
        headers["x-forwarded-for"] = "10.0.0.9, 8.8.8.8"

        address = await gateway.check(_request(headers, body=body))

        assert address == "10.0.0.9"

    asyncio.run(_run())


@pytest.mark.unit
def test_gateway_rejects_disallowed_address() -> None:
    async def _run() -> None:
        gateway = _gateway(ip_allowlist_enabled=True, ip_allowlist="192.168.0.0/16")

        with pytest.raises(SecurityRejection) as exc_info:
            await gateway.check(_request({}, peer="10.0.0.5"))

        assert exc_info.value.status_code == 403
        assert exc_info.value.error_code == "ip_not_allowed"

    asyncio.run(_run())


@pytest.mark.unit
def test_gateway_with_empty_allowlist_lets_everyone_through() -> None:
    async def _run() -> None:
        gateway = _gateway(ip_allowlist_enabled=True, ip_allowlist="")
        assert await gateway.check(_request({})) == "10.0.0.5"

    asyncio.run(_run())


@pytest.mark.unit
def test_gateway_skips_disabled_checks() -> None:
    async def _run() -> None:
        gateway = _gateway(rate_limit_enabled=False, rate_limit_max_requests=1)
        for _ in range(5):
            await gateway.check(_request({}))

    asyncio.run(_run())


@pytest.mark.unit
def test_gateway_applies_rate_limit_from_live_config() -> None:
    async def _run() -> None:
        gateway = _gateway(rate_limit_enabled=True, rate_limit_max_requests=2, rate_limit_window_seconds=60)
        await gateway.check(_request({}))
        await gateway.check(_request({}))

        with pytest.raises(SecurityRejection) as exc_info:
            await gateway.check(_request({}))

        assert exc_info.value.retry_after == 60

    asyncio.run(_run())
