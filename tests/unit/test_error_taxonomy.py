import pytest

from checkpool.domain.error_taxonomy import (
    CANONICAL_ERROR_CODES,
    classify_error,
    is_canonical_error_code,
    resolve_error_code,
)
from checkpool.domain.errors import DomainConflictError, DomainDependencyError, DomainValidationError


@pytest.mark.unit
def test_canonical_error_codes_are_enforced() -> None:
    assert is_canonical_error_code("item_not_leased") is True
    assert is_canonical_error_code("card_declined") is False


@pytest.mark.unit
def test_unknown_codes_resolve_to_internal_error() -> None:
    assert resolve_error_code("signature_expired") == "signature_expired"
    assert resolve_error_code("something_else") == "internal_error"


@pytest.mark.unit
def test_classification_separates_retry_fatal_and_conflict() -> None:
    assert classify_error("out_of_stock") == "retry_later"
    assert classify_error("rate_limited") == "retry_later"
    assert classify_error("bad_signature") == "fatal"
    assert classify_error("ip_not_allowed") == "fatal"
    assert classify_error("item_not_leased") == "conflict"
    assert classify_error("duplicate_item") == "conflict"


@pytest.mark.unit
def test_domain_errors_carry_canonical_codes() -> None:
    errors = [
        DomainValidationError("bad"),
        DomainDependencyError("down"),
        DomainConflictError("taken", error_code="item_not_found"),
    ]
    for error in errors:
        assert error.error_code in CANONICAL_ERROR_CODES
