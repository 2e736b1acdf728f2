import pytest

from checkpool.domain.errors import DomainValidationError
from checkpool.domain.legacy_status import from_legacy_code, to_legacy_code
from checkpool.domain.lifecycle import can_transition_session, status_for_outcome
from checkpool.domain.models import ItemStatus, SessionStatus


@pytest.mark.unit
@pytest.mark.parametrize(
    "status",
    [
        ItemStatus.PENDING,
        ItemStatus.LEASED,
        ItemStatus.RESOLVED_SUCCESS,
        ItemStatus.RESOLVED_FAILURE,
        ItemStatus.RESOLVED_UNKNOWN,
    ],
)
def test_legacy_code_round_trip(status: ItemStatus) -> None:
    assert from_legacy_code(to_legacy_code(status)) == status


@pytest.mark.unit
def test_error_status_reads_back_as_unknown() -> None:
    assert to_legacy_code(ItemStatus.RESOLVED_ERROR) == 4
    assert from_legacy_code(4) == ItemStatus.RESOLVED_UNKNOWN


@pytest.mark.unit
def test_success_variant_code_maps_to_success() -> None:
    assert from_legacy_code(5) == ItemStatus.RESOLVED_SUCCESS


@pytest.mark.unit
def test_unknown_codes_and_statuses_are_rejected() -> None:
    with pytest.raises(DomainValidationError):
        from_legacy_code(9)
    with pytest.raises(DomainValidationError):
        to_legacy_code("checking")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("code", "expected"),
    [
        (0, ItemStatus.RESOLVED_UNKNOWN),
        (2, ItemStatus.RESOLVED_SUCCESS),
        (3, ItemStatus.RESOLVED_FAILURE),
        (4, ItemStatus.RESOLVED_UNKNOWN),
        (5, ItemStatus.RESOLVED_SUCCESS),
        (7, ItemStatus.RESOLVED_ERROR),
        (-1, ItemStatus.RESOLVED_ERROR),
    ],
)
def test_reported_outcome_maps_to_terminal_status(code: int, expected: ItemStatus) -> None:
    assert status_for_outcome(code) == expected


@pytest.mark.unit
def test_running_outcome_is_not_terminal() -> None:
    with pytest.raises(DomainValidationError):
        status_for_outcome(1)


@pytest.mark.unit
def test_session_transitions_follow_state_machine() -> None:
    assert can_transition_session(SessionStatus.PENDING, SessionStatus.RUNNING) is True
    assert can_transition_session(SessionStatus.RUNNING, SessionStatus.STOPPING) is True
    assert can_transition_session(SessionStatus.STOPPING, SessionStatus.STOPPED) is True
    assert can_transition_session(SessionStatus.STOPPED, SessionStatus.RUNNING) is False
    assert can_transition_session(SessionStatus.COMPLETED, SessionStatus.STOPPING) is False
