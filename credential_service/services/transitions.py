"""Case transition tables — the single source of truth for the workflow graph.

Every workflow operation resolves ``(case type, current status, operation)``
here before touching the registry.  If the pair is not in the table the
operation is illegal, full stop; no handler compares status strings on
its own.

  VEHICLE   SUBMITTED ─verify→ DOC_VERIFIED ─approve→ APPROVED ─scrap→ SCRAPPED
            SUBMITTED | DOC_VERIFIED ─reject→ REJECTED

  LICENSE   SUBMITTED ─verify→ DOC_VERIFIED ─schedule→ TEST_SCHEDULED
            TEST_SCHEDULED ─pass→ TEST_PASSED ─approve→ APPROVED
            TEST_SCHEDULED ─fail→ TEST_FAILED ─schedule→ TEST_SCHEDULED
            SUBMITTED | DOC_VERIFIED ─reject→ REJECTED
"""

from __future__ import annotations

from enum import StrEnum
from types import MappingProxyType
from uuid import UUID

from credential_service.core.errors import InvalidTransition
from credential_service.models.case import CaseStatus, CaseType


class Operation(StrEnum):
    VERIFY_DOCUMENTS = "verify_documents"
    REJECT = "reject"
    SCHEDULE_TEST = "schedule_test"
    RECORD_PASS = "record_test_pass"
    RECORD_FAIL = "record_test_fail"
    APPROVE = "approve"
    SCRAP = "scrap"


_S = CaseStatus
_Op = Operation

_VEHICLE: dict[tuple[CaseStatus, Operation], CaseStatus] = {
    (_S.SUBMITTED, _Op.VERIFY_DOCUMENTS): _S.DOC_VERIFIED,
    (_S.SUBMITTED, _Op.REJECT): _S.REJECTED,
    (_S.DOC_VERIFIED, _Op.REJECT): _S.REJECTED,
    (_S.DOC_VERIFIED, _Op.APPROVE): _S.APPROVED,
    (_S.APPROVED, _Op.SCRAP): _S.SCRAPPED,
}

_LICENSE: dict[tuple[CaseStatus, Operation], CaseStatus] = {
    (_S.SUBMITTED, _Op.VERIFY_DOCUMENTS): _S.DOC_VERIFIED,
    (_S.SUBMITTED, _Op.REJECT): _S.REJECTED,
    (_S.DOC_VERIFIED, _Op.REJECT): _S.REJECTED,
    (_S.DOC_VERIFIED, _Op.SCHEDULE_TEST): _S.TEST_SCHEDULED,
    (_S.TEST_FAILED, _Op.SCHEDULE_TEST): _S.TEST_SCHEDULED,
    (_S.TEST_SCHEDULED, _Op.RECORD_PASS): _S.TEST_PASSED,
    (_S.TEST_SCHEDULED, _Op.RECORD_FAIL): _S.TEST_FAILED,
    (_S.TEST_PASSED, _Op.APPROVE): _S.APPROVED,
}

TRANSITIONS = MappingProxyType(
    {
        CaseType.VEHICLE: MappingProxyType(_VEHICLE),
        CaseType.LICENSE: MappingProxyType(_LICENSE),
    }
)

# Statuses that carry an issued credential.
CREDENTIALED = frozenset({CaseStatus.APPROVED, CaseStatus.SCRAPPED})

# Decision outcomes reported to the citizen as final.  APPROVED is included
# even though a vehicle case can still move on to SCRAPPED.
TERMINAL = frozenset({CaseStatus.REJECTED, CaseStatus.SCRAPPED, CaseStatus.APPROVED})


def next_status(
    case_type: CaseType, status: CaseStatus, operation: Operation
) -> CaseStatus | None:
    return TRANSITIONS[case_type].get((status, operation))


def require_transition(
    case_id: UUID, case_type: CaseType, status: CaseStatus, operation: Operation
) -> CaseStatus:
    """Return the next status or raise InvalidTransition."""
    target = next_status(case_type, status, operation)
    if target is None:
        raise InvalidTransition(case_id, status.value, operation.value)
    return target


def predecessors(case_type: CaseType, operation: Operation) -> frozenset[CaseStatus]:
    """Statuses from which ``operation`` is legal for ``case_type``."""
    return frozenset(
        status for (status, op) in TRANSITIONS[case_type] if op is operation
    )
