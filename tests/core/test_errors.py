from __future__ import annotations

from uuid import uuid4

import pytest

from credential_service.core.errors import (
    AlreadyHasActiveCredential,
    AlreadyIssued,
    Conflict,
    CredentialServiceError,
    DuplicateAssignedNumber,
    DuplicateCredentialNumber,
    InvalidTransition,
    NotFound,
    RegistryUnavailable,
    SigningKeyUnavailable,
    SubmissionInvalid,
)


@pytest.mark.parametrize(
    "exc",
    [
        InvalidTransition(uuid4(), "SUBMITTED", "approve"),
        NotFound("case", uuid4()),
        Conflict("lost race"),
        AlreadyHasActiveCredential("citizen-1", "LICENSE"),
        AlreadyIssued(uuid4(), uuid4()),
        SubmissionInvalid("bad year"),
        RegistryUnavailable("timeout"),
        SigningKeyUnavailable("missing"),
        DuplicateCredentialNumber("VEHICLE", "MH12AB1234"),
        DuplicateAssignedNumber("VEHICLE", "MH12AB1234"),
    ],
)
def test_every_error_has_a_distinct_code(exc: CredentialServiceError) -> None:
    assert isinstance(exc, CredentialServiceError)
    assert exc.code != CredentialServiceError.code


def test_active_credential_violation_is_a_conflict() -> None:
    exc = AlreadyHasActiveCredential("citizen-1", "LICENSE")
    assert isinstance(exc, Conflict)
    assert exc.retryable is False
    assert "citizen-1" in str(exc)


def test_lost_race_conflict_is_retryable() -> None:
    assert Conflict("lost race").retryable is True
    assert RegistryUnavailable("timeout").retryable is True


def test_invalid_transition_carries_state() -> None:
    case_id = uuid4()
    exc = InvalidTransition(case_id, "DOC_VERIFIED", "approve")
    assert exc.case_id == case_id
    assert exc.status == "DOC_VERIFIED"
    assert exc.operation == "approve"
    assert "cannot approve" in str(exc)


def test_submission_invalid_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        raise SubmissionInvalid("year must be between 1885 and 2027")
