"""PostgreSQL implementation of CaseRegistry."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credential_service.core.errors import (
    AlreadyHasActiveCredential,
    AlreadyIssued,
    Conflict,
    DuplicateAssignedNumber,
    DuplicateCredentialNumber,
    RegistryUnavailable,
)
from credential_service.db.tables import (
    UQ_ACTIVE_CREDENTIAL,
    UQ_CASE_ASSIGNED_NUMBER,
    UQ_CREDENTIAL_CASE,
    UQ_CREDENTIAL_NUMBER,
    CaseRow,
    CredentialRow,
)
from credential_service.models.case import Case, CaseStatus, CaseType, TestResult
from credential_service.models.credential import (
    Credential,
    CredentialStatus,
    CredentialType,
)

logger = logging.getLogger(__name__)

_KNOWN_CONSTRAINTS = (
    UQ_ACTIVE_CREDENTIAL,
    UQ_CASE_ASSIGNED_NUMBER,
    UQ_CREDENTIAL_CASE,
    UQ_CREDENTIAL_NUMBER,
)


class PgRegistryTransaction:
    """Satisfies the RegistryTransaction Protocol inside one session.begin()."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_case(self, case_id: UUID) -> Case | None:
        stmt = (
            select(CaseRow)
            .where(CaseRow.id == case_id)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_case(row)

    async def insert_case(self, case: Case) -> None:
        row = CaseRow(
            id=case.id,
            subject_id=case.subject_id,
            office_id=case.office_id,
            case_type=case.case_type.value,
            status=case.status.value,
            details_json=json.dumps(case.details, sort_keys=True),
            submitted_at=case.submitted_at,
            test_attempts=case.test_attempts,
        )
        self._session.add(row)
        await self._session.flush()

    async def conditional_update(
        self, case_id: UUID, expected_status: CaseStatus, **fields: Any
    ) -> Case | None:
        stmt = (
            update(CaseRow)
            .where(CaseRow.id == case_id)
            .where(CaseRow.status == expected_status.value)
            .values(**_case_values(fields))
            .execution_options(synchronize_session=False)
        )
        try:
            # SAVEPOINT: a constraint violation must not poison the outer transaction.
            async with self._session.begin_nested():
                result = await self._session.execute(stmt)
        except IntegrityError as exc:
            current = await self.get_case(case_id)
            case_type = current.case_type.value if current is not None else "case"
            raise _conflict_from(exc, case_type, fields) from exc
        if result.rowcount == 0:
            return None  # concurrent update won the race
        return await self.get_case(case_id)

    async def get_credential(self, credential_id: UUID) -> Credential | None:
        stmt = (
            select(CredentialRow)
            .where(CredentialRow.id == credential_id)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_credential(row)

    async def get_credential_by_case(self, case_id: UUID) -> Credential | None:
        stmt = (
            select(CredentialRow)
            .where(CredentialRow.case_id == case_id)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_credential(row)

    async def get_credential_by_number(
        self, credential_type: CredentialType, credential_number: str
    ) -> Credential | None:
        stmt = (
            select(CredentialRow)
            .where(CredentialRow.credential_type == credential_type.value)
            .where(CredentialRow.credential_number == credential_number)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_credential(row)

    async def insert_credential(self, credential: Credential) -> None:
        row = CredentialRow(
            id=credential.id,
            case_id=credential.case_id,
            subject_id=credential.subject_id,
            credential_type=credential.credential_type.value,
            credential_number=credential.credential_number,
            assigned_number=credential.assigned_number,
            issued_at=credential.issued_at,
            expires_at=credential.expires_at,
            public_fields_json=json.dumps(credential.public_fields, sort_keys=True),
            canonical_payload=credential.canonical_payload,
            signature=credential.signature,
            status=credential.status.value,
            status_reason=credential.status_reason,
            updated_at=credential.updated_at,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(row)
                await self._session.flush()
        except IntegrityError as exc:
            if _constraint_name(exc) == UQ_CREDENTIAL_CASE:
                existing = await self.get_credential_by_case(credential.case_id)
                if existing is not None:
                    raise AlreadyIssued(credential.case_id, existing.id) from exc
            raise _credential_conflict_from(exc, credential) from exc

    async def update_credential(
        self,
        credential_id: UUID,
        expected_status: CredentialStatus,
        **fields: Any,
    ) -> Credential | None:
        stmt = (
            update(CredentialRow)
            .where(CredentialRow.id == credential_id)
            .where(CredentialRow.status == expected_status.value)
            .values(**_credential_values(fields))
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session.begin_nested():
                result = await self._session.execute(stmt)
        except IntegrityError as exc:
            current = await self.get_credential(credential_id)
            if current is None:
                raise Conflict(str(exc.orig)) from exc
            raise _credential_conflict_from(exc, current) from exc
        if result.rowcount == 0:
            return None
        return await self.get_credential(credential_id)

    async def list_due_for_expiry(self, now: int, limit: int) -> list[Credential]:
        stmt = (
            select(CredentialRow)
            .where(CredentialRow.status == CredentialStatus.ACTIVE.value)
            .where(CredentialRow.expires_at.is_not(None))
            .where(CredentialRow.expires_at < now)
            .order_by(CredentialRow.expires_at, CredentialRow.id)
            .limit(limit)
            # Two sweepers never pick the same rows.
            .with_for_update(skip_locked=True)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_credential(row) for row in rows]


class PgCaseRegistry:
    """Satisfies the CaseRegistry Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PgRegistryTransaction]:
        """Commits on success, rolls back on exception.

        Connection loss and pool/statement timeouts become RegistryUnavailable
        (retryable); everything else propagates unchanged.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield PgRegistryTransaction(session)
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            logger.warning("Registry transaction failed: %s", exc.__class__.__name__)
            raise RegistryUnavailable(str(exc)) from exc

    async def get_case(self, case_id: UUID) -> Case | None:
        async with self._read() as tx:
            return await tx.get_case(case_id)

    async def get_credential(self, credential_id: UUID) -> Credential | None:
        async with self._read() as tx:
            return await tx.get_credential(credential_id)

    async def get_credential_by_case(self, case_id: UUID) -> Credential | None:
        async with self._read() as tx:
            return await tx.get_credential_by_case(case_id)

    async def get_credential_by_number(
        self, credential_type: CredentialType, credential_number: str
    ) -> Credential | None:
        async with self._read() as tx:
            return await tx.get_credential_by_number(credential_type, credential_number)

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[PgRegistryTransaction]:
        try:
            async with self._session_factory() as session:
                yield PgRegistryTransaction(session)
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            raise RegistryUnavailable(str(exc)) from exc


# ---------------------------------------------------------------------------
# Row <-> domain conversion
# ---------------------------------------------------------------------------


def _case_values(fields: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in fields.items():
        if key == "details":
            values["details_json"] = json.dumps(value, sort_keys=True)
        elif key in ("status", "test_result", "case_type") and value is not None:
            values[key] = value.value
        else:
            values[key] = value
    return values


def _credential_values(fields: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in fields.items():
        if key == "public_fields":
            values["public_fields_json"] = json.dumps(value, sort_keys=True)
        elif key in ("status", "credential_type"):
            values[key] = value.value
        else:
            values[key] = value
    return values


def _row_to_case(row: CaseRow) -> Case:
    return Case(
        id=row.id,
        subject_id=row.subject_id,
        office_id=row.office_id,
        case_type=CaseType(row.case_type),
        status=CaseStatus(row.status),
        submitted_at=row.submitted_at,
        details=json.loads(row.details_json or "{}"),
        verified_by=row.verified_by,
        verified_at=row.verified_at,
        approved_by=row.approved_by,
        approved_at=row.approved_at,
        rejected_reason=row.rejected_reason,
        rejected_at=row.rejected_at,
        test_scheduled_at=row.test_scheduled_at,
        test_result=TestResult(row.test_result) if row.test_result else None,
        test_attempts=row.test_attempts or 0,
        assigned_number=row.assigned_number,
        terminated_at=row.terminated_at,
    )


def _row_to_credential(row: CredentialRow) -> Credential:
    return Credential(
        id=row.id,
        case_id=row.case_id,
        subject_id=row.subject_id,
        credential_type=CredentialType(row.credential_type),
        credential_number=row.credential_number,
        assigned_number=row.assigned_number,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        public_fields=json.loads(row.public_fields_json or "{}"),
        canonical_payload=bytes(row.canonical_payload),
        signature=row.signature,
        status=CredentialStatus(row.status),
        status_reason=row.status_reason,
        updated_at=row.updated_at,
    )


# ---------------------------------------------------------------------------
# IntegrityError → typed Conflict
# ---------------------------------------------------------------------------


def _constraint_name(exc: IntegrityError) -> str | None:
    # asyncpg exposes constraint_name on the driver exception, which the
    # SQLAlchemy adapter keeps as the cause of exc.orig.
    for candidate in (exc.orig, getattr(exc.orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return name
    message = str(exc.orig)
    return next((name for name in _KNOWN_CONSTRAINTS if name in message), None)


def _conflict_from(
    exc: IntegrityError, case_type: str, fields: dict[str, Any]
) -> Conflict:
    name = _constraint_name(exc)
    if name == UQ_CASE_ASSIGNED_NUMBER:
        return DuplicateAssignedNumber(case_type, str(fields.get("assigned_number")))
    return Conflict(f"case update violated {name or 'a constraint'}")


def _credential_conflict_from(exc: IntegrityError, credential: Credential) -> Conflict:
    name = _constraint_name(exc)
    if name == UQ_ACTIVE_CREDENTIAL:
        return AlreadyHasActiveCredential(
            credential.subject_id, credential.credential_type.value
        )
    if name == UQ_CREDENTIAL_NUMBER:
        return DuplicateCredentialNumber(
            credential.credential_type.value, credential.credential_number
        )
    if name == UQ_CREDENTIAL_CASE:
        return Conflict(f"case {credential.case_id} already has a credential")
    return Conflict(f"credential write violated {name or 'a constraint'}")
