from __future__ import annotations

from checkpool.domain.errors import DomainValidationError
from checkpool.domain.models import ItemStatus

# Numeric vocabulary of the external integration:
# 0 not run, 1 running, 2 success, 3 failure, 4 unknown, 5 success variant.
STATUS_TO_LEGACY_CODE: dict[ItemStatus, int] = {
    ItemStatus.PENDING: 0,
    ItemStatus.LEASED: 1,
    ItemStatus.RESOLVED_SUCCESS: 2,
    ItemStatus.RESOLVED_FAILURE: 3,
    ItemStatus.RESOLVED_UNKNOWN: 4,
    ItemStatus.RESOLVED_ERROR: 4,
}

LEGACY_CODE_TO_STATUS: dict[int, ItemStatus] = {
    0: ItemStatus.PENDING,
    1: ItemStatus.LEASED,
    2: ItemStatus.RESOLVED_SUCCESS,
    3: ItemStatus.RESOLVED_FAILURE,
    4: ItemStatus.RESOLVED_UNKNOWN,
    5: ItemStatus.RESOLVED_SUCCESS,
}


def to_legacy_code(status: str) -> int:
    try:
        return STATUS_TO_LEGACY_CODE[ItemStatus(status)]
    except ValueError as exc:
        raise DomainValidationError(f"unknown item status: {status}") from exc


def from_legacy_code(code: int) -> ItemStatus:
    status = LEGACY_CODE_TO_STATUS.get(code)
    if status is None:
        raise DomainValidationError(f"unknown legacy status code: {code}")
    return status
