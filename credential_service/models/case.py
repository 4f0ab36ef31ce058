from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4


class CaseType(StrEnum):
    VEHICLE = "VEHICLE"
    LICENSE = "LICENSE"


class CaseStatus(StrEnum):
    SUBMITTED = "SUBMITTED"
    DOC_VERIFIED = "DOC_VERIFIED"
    TEST_SCHEDULED = "TEST_SCHEDULED"  # license only
    TEST_PASSED = "TEST_PASSED"  # license only
    TEST_FAILED = "TEST_FAILED"  # license only
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SCRAPPED = "SCRAPPED"  # vehicle only


class TestResult(StrEnum):
    __test__ = False  # not a pytest class

    PASS = "PASS"
    FAIL = "FAIL"


@dataclass(frozen=True, slots=True)
class Case:
    """One citizen's vehicle-registration or license application."""

    id: UUID
    subject_id: str
    office_id: str
    case_type: CaseType
    status: CaseStatus
    submitted_at: int
    details: dict[str, Any] = field(default_factory=dict)
    verified_by: str | None = None
    verified_at: int | None = None
    approved_by: str | None = None
    approved_at: int | None = None
    rejected_reason: str | None = None
    rejected_at: int | None = None
    test_scheduled_at: int | None = None
    test_result: TestResult | None = None
    test_attempts: int = 0
    assigned_number: str | None = None
    terminated_at: int | None = None

    @staticmethod
    def new(
        *,
        subject_id: str,
        office_id: str,
        case_type: CaseType,
        details: dict[str, Any],
        submitted_at: int,
    ) -> Case:
        return Case(
            id=uuid4(),
            subject_id=subject_id,
            office_id=office_id,
            case_type=case_type,
            status=CaseStatus.SUBMITTED,
            submitted_at=submitted_at,
            details=dict(details),
        )
