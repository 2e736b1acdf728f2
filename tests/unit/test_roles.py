import pytest

from checkpool.roles import SUPPORTED_ROLES, validate_role


@pytest.mark.unit
@pytest.mark.parametrize("role", SUPPORTED_ROLES)
def test_supported_role_is_accepted(role: str) -> None:
    validated = validate_role(role)
    assert validated.name == role


@pytest.mark.unit
def test_invalid_role_rejected_with_actionable_message() -> None:
    with pytest.raises(ValueError) as exc_info:
        validate_role("worker-unknown")

    message = str(exc_info.value)
    assert "Unsupported role 'worker-unknown'" in message
    assert "Supported roles:" in message
    assert "migrations are applied externally" in message


@pytest.mark.unit
def test_only_reclaim_role_drives_worker_loop() -> None:
    api = validate_role("api")
    reclaim = validate_role("worker-reclaim")

    assert api.runs_reclaim_loop is False
    assert reclaim.runs_reclaim_loop is True
    assert (api.default_port, reclaim.default_port) == (8000, 8100)
