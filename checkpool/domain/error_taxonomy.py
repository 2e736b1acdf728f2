from __future__ import annotations

from typing import Literal

# Canonical error vocabulary exposed to workers and operators.
ErrorCode = Literal[
    "validation_error",
    "out_of_stock",
    "rate_limited",
    "missing_signature",
    "bad_signature",
    "signature_expired",
    "ip_not_allowed",
    "unauthorized",
    "security_misconfigured",
    "item_not_found",
    "item_not_leased",
    "duplicate_item",
    "session_not_found",
    "session_not_stoppable",
    "store_unavailable",
    "internal_error",
]

# How a worker is expected to react to a failure.
ErrorClassification = Literal["retry_later", "fatal", "conflict"]

CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "validation_error",
    "out_of_stock",
    "rate_limited",
    "missing_signature",
    "bad_signature",
    "signature_expired",
    "ip_not_allowed",
    "unauthorized",
    "security_misconfigured",
    "item_not_found",
    "item_not_leased",
    "duplicate_item",
    "session_not_found",
    "session_not_stoppable",
    "store_unavailable",
    "internal_error",
)

RETRY_LATER_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "out_of_stock",
        "rate_limited",
        "store_unavailable",
        "internal_error",
    }
)

CONFLICT_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "item_not_found",
        "item_not_leased",
        "duplicate_item",
        "session_not_stoppable",
    }
)


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def resolve_error_code(code: str) -> ErrorCode:
    if is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    return "internal_error"


def classify_error(code: str) -> ErrorClassification:
    resolved = resolve_error_code(code)
    if resolved in RETRY_LATER_ERROR_CODES:
        return "retry_later"
    if resolved in CONFLICT_ERROR_CODES:
        return "conflict"
    return "fatal"
