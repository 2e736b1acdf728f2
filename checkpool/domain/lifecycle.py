from __future__ import annotations

from checkpool.domain.errors import DomainValidationError
from checkpool.domain.legacy_status import LEGACY_CODE_TO_STATUS, from_legacy_code
from checkpool.domain.models import ItemStatus, SessionStatus


ITEM_TRANSITIONS: dict[str, set[str]] = {
    ItemStatus.PENDING: {ItemStatus.LEASED, ItemStatus.PENDING},
    ItemStatus.LEASED: {
        ItemStatus.RESOLVED_SUCCESS,
        ItemStatus.RESOLVED_FAILURE,
        ItemStatus.RESOLVED_UNKNOWN,
        ItemStatus.RESOLVED_ERROR,
        ItemStatus.PENDING,
    },
    ItemStatus.RESOLVED_SUCCESS: set(),
    ItemStatus.RESOLVED_FAILURE: set(),
    ItemStatus.RESOLVED_UNKNOWN: set(),
    ItemStatus.RESOLVED_ERROR: set(),
}


SESSION_TRANSITIONS: dict[str, set[str]] = {
    SessionStatus.PENDING: {SessionStatus.RUNNING, SessionStatus.STOPPING, SessionStatus.FAILED},
    SessionStatus.RUNNING: {SessionStatus.STOPPING, SessionStatus.COMPLETED, SessionStatus.FAILED},
    SessionStatus.STOPPING: {SessionStatus.STOPPED},
    SessionStatus.STOPPED: set(),
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
}

STOPPABLE_SESSION_STATUSES: frozenset[str] = frozenset({SessionStatus.PENDING, SessionStatus.RUNNING})

# Reported outcome codes follow the legacy numeric vocabulary, except that a
# reset (0) resolves as unknown and any unmapped code resolves as an error.
NON_TERMINAL_OUTCOME = 1
RESET_OUTCOME = 0


def status_for_outcome(outcome_code: int) -> ItemStatus:
    if outcome_code == NON_TERMINAL_OUTCOME:
        raise DomainValidationError("outcome 1 (running) is not a terminal result")
    if outcome_code == RESET_OUTCOME:
        return ItemStatus.RESOLVED_UNKNOWN
    if outcome_code not in LEGACY_CODE_TO_STATUS:
        return ItemStatus.RESOLVED_ERROR
    return from_legacy_code(outcome_code)


def can_transition_session(from_status: str, to_status: str) -> bool:
    return to_status in SESSION_TRANSITIONS.get(from_status, set())
