from __future__ import annotations

import hashlib
import hmac

from checkpool.domain.errors import SecurityRejection

MAX_CLOCK_SKEW_MS = 5 * 60 * 1000
MIN_SECRET_LENGTH = 32


def compute_signature(*, secret: str, method: str, path: str, timestamp: str, body: bytes) -> str:
    message = method.upper().encode("utf-8") + path.encode("utf-8") + timestamp.encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    *,
    secret: str,
    method: str,
    path: str,
    body: bytes,
    signature: str | None,
    timestamp: str | None,
    now_ms: int,
) -> None:
    """Check an X-Signature / X-Timestamp pair.

    The replay window is checked before the signature itself, so a stale
    request is reported as expired even when it is correctly signed.
    """
    if not signature or not timestamp:
        raise SecurityRejection(
            "missing signature or timestamp",
            status_code=401,
            error_code="missing_signature",
        )

    try:
        sent_ms = int(timestamp.strip())
    except ValueError:
        raise SecurityRejection(
            "request timestamp is not a unix millisecond value",
            status_code=401,
            error_code="signature_expired",
        ) from None
    if abs(now_ms - sent_ms) > MAX_CLOCK_SKEW_MS:
        raise SecurityRejection(
            "request timestamp expired",
            status_code=401,
            error_code="signature_expired",
        )

    if not secret or len(secret) < MIN_SECRET_LENGTH:
        raise SecurityRejection(
            "signature secret is not configured",
            status_code=500,
            error_code="security_misconfigured",
            title="Server Error",
        )

    expected = compute_signature(secret=secret, method=method, path=path, timestamp=timestamp.strip(), body=body)
    if not hmac.compare_digest(signature.strip().lower().encode("utf-8"), expected.encode("utf-8")):
        raise SecurityRejection(
            "invalid signature",
            status_code=401,
            error_code="bad_signature",
        )
