"""Workflow Engine — moves cases along the transition table.

Every operation follows the same four steps:

  1. Read the case (committed state, outside any transaction).
  2. Resolve (case type, status, operation) in the transition table.
     Not in the table → InvalidTransition, nothing written.
  3. Write conditionally: "status = target WHERE id = :id AND status = :read".
     Zero rows matched → someone else moved the case first → Conflict.
  4. After commit, hand a notification to the dispatcher.

Step 3 is the only serialization point.  Two officers approving the same
case both pass step 2; the registry lets exactly one of them through.
A lost race is not retried: re-reading would only show the winner's state.

APPROVE AND SCRAP
-------------------
approve writes APPROVED and inserts the credential inside one registry
transaction.  If issuance fails (the subject already holds an active
license, a number collision that cannot be resolved) the APPROVED write
rolls back with it and the case stays where it was.  scrap does the same
for SCRAPPED plus revoking the credential.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from credential_service.core import metrics
from credential_service.core.context import bind, operation_context
from credential_service.core.errors import (
    AlreadyHasActiveCredential,
    Conflict,
    DuplicateAssignedNumber,
    DuplicateCredentialNumber,
    InvalidTransition,
    NotFound,
    SubmissionInvalid,
)
from credential_service.models.case import Case, CaseStatus, CaseType, TestResult
from credential_service.models.credential import Credential, CredentialStatus
from credential_service.models.submission import LicenseSubmission, VehicleSubmission
from credential_service.repos.registry import CaseRegistry
from credential_service.services.issuer import (
    Clock,
    CredentialIssuer,
    encode_payload,
    encode_qr,
    utc_now,
)
from credential_service.services.notifications import (
    NotificationDispatcher,
    NotificationEvent,
)
from credential_service.services.transitions import TERMINAL, Operation, require_transition

logger = logging.getLogger(__name__)

DEFAULT_REJECT_REASON = "Application rejected"
SCRAP_REASON = "Vehicle scrapped"
EXPIRY_REASON = "Validity period ended"
EXPIRY_BATCH_SIZE = 100

_SUBMISSION_CONTRACTS = {
    CaseType.VEHICLE: VehicleSubmission,
    CaseType.LICENSE: LicenseSubmission,
}

_CONFLICT_REASONS = {
    AlreadyHasActiveCredential: "active_credential",
    DuplicateAssignedNumber: "assigned_number",
    DuplicateCredentialNumber: "credential_number",
}


@dataclass(frozen=True, slots=True)
class Approval:
    """An approved case and the credential issued with it."""

    case: Case
    credential: Credential

    @property
    def payload(self) -> str:
        return encode_payload(self.credential)

    @property
    def qr_code(self) -> str:
        """PNG data URL for printing on the card."""
        return encode_qr(self.credential)


@contextmanager
def _observed(operation: str, **fields: object) -> Iterator[None]:
    with operation_context(operation, **fields):
        with metrics.OPERATION_DURATION.labels(operation=operation).time():
            yield


class WorkflowEngine:
    def __init__(
        self,
        registry: CaseRegistry,
        issuer: CredentialIssuer,
        dispatcher: NotificationDispatcher,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._registry = registry
        self._issuer = issuer
        self._dispatcher = dispatcher
        self._clock = clock

    # ------------------------------------------------------------------
    # Case operations
    # ------------------------------------------------------------------

    async def submit(
        self,
        subject_id: str,
        office_id: str,
        case_type: CaseType | str,
        fields: Mapping[str, Any],
    ) -> Case:
        with _observed("submit", actor=subject_id):
            if not subject_id or not subject_id.strip():
                raise SubmissionInvalid("subject_id is required")
            if not office_id or not office_id.strip():
                raise SubmissionInvalid("office_id is required")
            try:
                case_type = CaseType(case_type)
            except ValueError as exc:
                raise SubmissionInvalid(f"unknown case type {case_type!r}") from exc

            contract = _SUBMISSION_CONTRACTS[case_type]
            try:
                submission = contract.model_validate(dict(fields))
            except ValidationError as exc:
                logger.info(
                    "Rejected %s submission: %d error(s)",
                    case_type.value,
                    exc.error_count(),
                )
                raise SubmissionInvalid(str(exc)) from exc

            case = Case.new(
                subject_id=subject_id.strip(),
                office_id=office_id.strip(),
                case_type=case_type,
                details=submission.model_dump(),
                submitted_at=self._clock(),
            )
            bind(case_id=case.id)
            async with self._registry.transaction() as tx:
                await tx.insert_case(case)

            metrics.CASE_TRANSITIONS.labels(
                case_type=case_type.value, operation="submit", outcome="ok"
            ).inc()
            logger.info("Case submitted (%s)", case_type.value)
        await self._notify_case(case)
        return case

    async def verify_documents(self, case_id: UUID, verifier_id: str) -> Case:
        with _observed(Operation.VERIFY_DOCUMENTS, case_id=case_id, actor=verifier_id):
            case = await self._transition(
                case_id,
                Operation.VERIFY_DOCUMENTS,
                verified_by=verifier_id,
                verified_at=self._clock(),
            )
        await self._notify_case(case)
        return case

    async def reject(
        self, case_id: UUID, reason: str | None, rejected_by: str | None = None
    ) -> Case:
        reason = (reason or "").strip() or DEFAULT_REJECT_REASON
        with _observed(Operation.REJECT, case_id=case_id, actor=rejected_by):
            now = self._clock()
            case = await self._transition(
                case_id,
                Operation.REJECT,
                rejected_reason=reason,
                rejected_at=now,
                terminated_at=now,
            )
        await self._notify_case(case, reason=reason)
        return case

    async def schedule_test(
        self, case_id: UUID, test_date: int, scheduled_by: str | None = None
    ) -> Case:
        with _observed(Operation.SCHEDULE_TEST, case_id=case_id, actor=scheduled_by):
            case = await self._transition(
                case_id,
                Operation.SCHEDULE_TEST,
                test_scheduled_at=test_date,
                test_result=None,
            )
        await self._notify_case(case, test_date=str(test_date))
        return case

    async def record_test_result(
        self,
        case_id: UUID,
        result: TestResult | str,
        examiner_id: str | None = None,
    ) -> Case:
        try:
            result = TestResult(result)
        except ValueError as exc:
            raise SubmissionInvalid(f"unknown test result {result!r}") from exc
        operation = (
            Operation.RECORD_PASS if result is TestResult.PASS else Operation.RECORD_FAIL
        )
        with _observed(operation, case_id=case_id, actor=examiner_id):
            case = await self._transition(
                case_id,
                operation,
                test_result=result,
                attempts_increment=True,
            )
        await self._notify_case(case, attempt=str(case.test_attempts))
        return case

    async def approve(
        self,
        case_id: UUID,
        approver_id: str,
        assigned_number: str | None = None,
    ) -> Approval:
        if assigned_number is not None:
            assigned_number = assigned_number.strip().upper()
            if not assigned_number:
                raise SubmissionInvalid("assigned number must not be blank")

        with _observed(Operation.APPROVE, case_id=case_id, actor=approver_id):
            case = await self._load_case(case_id)
            self._require(case, Operation.APPROVE)
            now = self._clock()
            try:
                async with self._registry.transaction() as tx:
                    approved = await self._issuer.approve_with_number(
                        tx,
                        case,
                        assigned_number,
                        status=CaseStatus.APPROVED,
                        approved_by=approver_id,
                        approved_at=now,
                    )
                    if approved is None:
                        raise _lost_race(case, Operation.APPROVE)
                    credential = await self._issuer.issue(tx, approved)
            except Conflict as exc:
                self._record_conflict(case, Operation.APPROVE, exc)
                raise

            bind(credential_id=credential.id)
            self._record_ok(case, Operation.APPROVE)
            logger.info(
                "Case approved, credential %s issued", credential.credential_number
            )

        await self._notify_case(approved, credential_number=credential.credential_number)
        await self._notify_credential(credential, "ISSUED")
        return Approval(case=approved, credential=credential)

    async def scrap(self, case_id: UUID, scrapped_by: str | None = None) -> Case:
        with _observed(Operation.SCRAP, case_id=case_id, actor=scrapped_by):
            case = await self._load_case(case_id)
            self._require(case, Operation.SCRAP)
            now = self._clock()
            revoked: Credential | None = None
            try:
                async with self._registry.transaction() as tx:
                    scrapped = await tx.conditional_update(
                        case.id,
                        case.status,
                        status=CaseStatus.SCRAPPED,
                        terminated_at=now,
                    )
                    if scrapped is None:
                        raise _lost_race(case, Operation.SCRAP)
                    credential = await tx.get_credential_by_case(case.id)
                    if (
                        credential is not None
                        and credential.status is not CredentialStatus.REVOKED
                    ):
                        revoked = await tx.update_credential(
                            credential.id,
                            credential.status,
                            status=CredentialStatus.REVOKED,
                            status_reason=SCRAP_REASON,
                            updated_at=now,
                        )
                        if revoked is None:
                            raise Conflict(
                                f"credential {credential.id} changed during scrap"
                            )
            except Conflict as exc:
                self._record_conflict(case, Operation.SCRAP, exc)
                raise

            self._record_ok(case, Operation.SCRAP)
            logger.info("Case scrapped")

        await self._notify_case(scrapped)
        if revoked is not None:
            self._record_credential_change(revoked)
            await self._notify_credential(revoked, revoked.status.value)
        return scrapped

    # ------------------------------------------------------------------
    # Credential lifecycle
    # ------------------------------------------------------------------

    async def suspend_credential(
        self, credential_id: UUID, reason: str, actor: str | None = None
    ) -> Credential:
        return await self._change_credential(
            credential_id,
            "suspend_credential",
            allowed=(CredentialStatus.ACTIVE,),
            target=CredentialStatus.SUSPENDED,
            reason=reason,
            actor=actor,
        )

    async def reinstate_credential(
        self, credential_id: UUID, actor: str | None = None
    ) -> Credential:
        return await self._change_credential(
            credential_id,
            "reinstate_credential",
            allowed=(CredentialStatus.SUSPENDED,),
            target=CredentialStatus.ACTIVE,
            reason=None,
            actor=actor,
        )

    async def revoke_credential(
        self, credential_id: UUID, reason: str, actor: str | None = None
    ) -> Credential:
        return await self._change_credential(
            credential_id,
            "revoke_credential",
            allowed=(CredentialStatus.ACTIVE, CredentialStatus.SUSPENDED),
            target=CredentialStatus.REVOKED,
            reason=reason,
            actor=actor,
            terminate_case=True,
        )

    async def renew_credential(
        self, credential_id: UUID, actor: str | None = None
    ) -> Credential:
        with _observed("renew_credential", credential_id=credential_id, actor=actor):
            try:
                renewed = await self._issuer.renew(credential_id)
            except InvalidTransition:
                logger.warning("Credential not renewable")
                raise
            except Conflict as exc:
                metrics.REGISTRY_CONFLICTS.labels(reason=_conflict_reason(exc)).inc()
                logger.warning("Renewal conflict: %s", exc)
                raise
        await self._notify_credential(renewed, "RENEWED")
        return renewed

    async def expire_due_credentials(
        self, batch_size: int = EXPIRY_BATCH_SIZE
    ) -> list[Credential]:
        """Mark ACTIVE credentials past their expiry as EXPIRED.

        One batch per call; the maintenance worker calls it repeatedly until
        a short batch comes back.
        """
        with _observed("expire_due_credentials"):
            now = self._clock()
            expired: list[Credential] = []
            async with self._registry.transaction() as tx:
                for credential in await tx.list_due_for_expiry(now, batch_size):
                    updated = await tx.update_credential(
                        credential.id,
                        CredentialStatus.ACTIVE,
                        status=CredentialStatus.EXPIRED,
                        status_reason=EXPIRY_REASON,
                        updated_at=now,
                    )
                    # None: suspended or revoked since listing; leave it alone.
                    if updated is not None:
                        expired.append(updated)
            if expired:
                logger.info("Expired %d credential(s)", len(expired))

        for credential in expired:
            self._record_credential_change(credential)
            await self._notify_credential(credential, credential.status.value)
        return expired

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_case(self, case_id: UUID) -> Case:
        return await self._load_case(case_id)

    async def get_credential(self, credential_id: UUID) -> Credential:
        credential = await self._registry.get_credential(credential_id)
        if credential is None:
            raise NotFound("credential", credential_id)
        return credential

    async def credential_for_case(self, case_id: UUID) -> Credential | None:
        await self._load_case(case_id)
        return await self._registry.get_credential_by_case(case_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_case(self, case_id: UUID) -> Case:
        case = await self._registry.get_case(case_id)
        if case is None:
            raise NotFound("case", case_id)
        return case

    def _require(self, case: Case, operation: Operation) -> CaseStatus:
        try:
            return require_transition(case.id, case.case_type, case.status, operation)
        except InvalidTransition:
            metrics.CASE_TRANSITIONS.labels(
                case_type=case.case_type.value,
                operation=operation.value,
                outcome="invalid",
            ).inc()
            logger.warning(
                "Rejected %s on %s case in status %s",
                operation.value,
                case.case_type.value,
                case.status.value,
            )
            raise

    async def _transition(
        self,
        case_id: UUID,
        operation: Operation,
        *,
        attempts_increment: bool = False,
        **fields: Any,
    ) -> Case:
        """Single-write transition: everything except approve and scrap."""
        case = await self._load_case(case_id)
        target = self._require(case, operation)
        if attempts_increment:
            # Safe: the conditional write fails if the status moved since the read.
            fields["test_attempts"] = case.test_attempts + 1
        try:
            async with self._registry.transaction() as tx:
                updated = await tx.conditional_update(
                    case.id, case.status, status=target, **fields
                )
                if updated is None:
                    raise _lost_race(case, operation)
        except Conflict as exc:
            self._record_conflict(case, operation, exc)
            raise
        self._record_ok(case, operation)
        logger.info("Case %s → %s", case.status.value, target.value)
        return updated

    async def _change_credential(
        self,
        credential_id: UUID,
        operation: str,
        *,
        allowed: tuple[CredentialStatus, ...],
        target: CredentialStatus,
        reason: str | None,
        actor: str | None,
        terminate_case: bool = False,
    ) -> Credential:
        with _observed(operation, credential_id=credential_id, actor=actor):
            current = await self.get_credential(credential_id)
            bind(case_id=current.case_id)
            if current.status not in allowed:
                logger.warning(
                    "Rejected %s on credential in status %s",
                    operation,
                    current.status.value,
                )
                raise InvalidTransition(current.case_id, current.status.value, operation)

            now = self._clock()
            try:
                async with self._registry.transaction() as tx:
                    updated = await tx.update_credential(
                        current.id,
                        current.status,
                        status=target,
                        status_reason=reason,
                        updated_at=now,
                    )
                    if updated is None:
                        raise Conflict(f"credential {current.id} changed concurrently")
                    if terminate_case:
                        case = await tx.get_case(current.case_id)
                        if case is not None and case.terminated_at is None:
                            await tx.conditional_update(
                                case.id, case.status, terminated_at=now
                            )
            except Conflict as exc:
                metrics.REGISTRY_CONFLICTS.labels(reason=_conflict_reason(exc)).inc()
                logger.warning("%s conflict: %s", operation, exc)
                raise

            self._record_credential_change(updated)
            logger.info(
                "Credential %s → %s", current.status.value, updated.status.value
            )
        await self._notify_credential(updated, updated.status.value)
        return updated

    def _record_ok(self, case: Case, operation: Operation) -> None:
        metrics.CASE_TRANSITIONS.labels(
            case_type=case.case_type.value, operation=operation.value, outcome="ok"
        ).inc()

    def _record_conflict(self, case: Case, operation: Operation, exc: Conflict) -> None:
        metrics.CASE_TRANSITIONS.labels(
            case_type=case.case_type.value,
            operation=operation.value,
            outcome="conflict",
        ).inc()
        metrics.REGISTRY_CONFLICTS.labels(reason=_conflict_reason(exc)).inc()
        logger.warning("%s conflict: %s", operation.value, exc)

    def _record_credential_change(self, credential: Credential) -> None:
        metrics.CREDENTIAL_STATUS_CHANGES.labels(
            credential_type=credential.credential_type.value,
            status=credential.status.value,
        ).inc()

    async def _notify_case(self, case: Case, **details: str) -> None:
        await self._dispatcher.notify(
            NotificationEvent(
                kind="case_status",
                subject_id=case.subject_id,
                status=case.status.value,
                case_id=str(case.id),
                final=case.status in TERMINAL,
                details=details,
            )
        )

    async def _notify_credential(self, credential: Credential, status: str) -> None:
        await self._dispatcher.notify(
            NotificationEvent(
                kind="credential_status",
                subject_id=credential.subject_id,
                status=status,
                case_id=str(credential.case_id),
                credential_id=str(credential.id),
                details={"credential_number": credential.credential_number},
            )
        )


def _lost_race(case: Case, operation: Operation) -> Conflict:
    return Conflict(
        f"case {case.id} left status {case.status.value} before {operation.value} "
        "could be applied"
    )


def _conflict_reason(exc: Conflict) -> str:
    return _CONFLICT_REASONS.get(type(exc), "stale_status")
