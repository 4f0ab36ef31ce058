"""Case Registry — durable store for cases and credentials.

Every write goes through a transaction (unit of work):

    async with registry.transaction() as tx:
        case = await tx.conditional_update(case_id, expected, status=...)
        await tx.insert_credential(credential)

Leaving the block normally commits; an exception rolls back everything
written inside it.  That is what makes approve-and-issue atomic.

CONDITIONAL UPDATES
---------------------
``conditional_update(id, expected_status, **fields)`` is
"UPDATE ... WHERE id = :id AND status = :expected".  It returns None when
zero rows matched, i.e. another writer changed the status first.  The
caller turns that into Conflict.  No application-level per-case locks.

UNIQUENESS
------------
Enforced by the store, not by a read in the engine:
  - one credential per case                        → AlreadyIssued
  - credential number unique per type              → DuplicateCredentialNumber
  - one ACTIVE credential per (subject, type)      → AlreadyHasActiveCredential
  - assigned number unique per case type           → DuplicateAssignedNumber
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import replace
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from credential_service.core.errors import (
    AlreadyHasActiveCredential,
    AlreadyIssued,
    DuplicateAssignedNumber,
    DuplicateCredentialNumber,
)
from credential_service.models.case import Case, CaseStatus
from credential_service.models.credential import (
    Credential,
    CredentialStatus,
    CredentialType,
)


@runtime_checkable
class RegistryTransaction(Protocol):
    async def get_case(self, case_id: UUID) -> Case | None: ...
    async def insert_case(self, case: Case) -> None: ...
    async def conditional_update(
        self, case_id: UUID, expected_status: CaseStatus, **fields: Any
    ) -> Case | None: ...
    async def get_credential(self, credential_id: UUID) -> Credential | None: ...
    async def get_credential_by_case(self, case_id: UUID) -> Credential | None: ...
    async def get_credential_by_number(
        self, credential_type: CredentialType, credential_number: str
    ) -> Credential | None: ...
    async def insert_credential(self, credential: Credential) -> None: ...
    async def update_credential(
        self,
        credential_id: UUID,
        expected_status: CredentialStatus,
        **fields: Any,
    ) -> Credential | None: ...
    async def list_due_for_expiry(self, now: int, limit: int) -> list[Credential]: ...


@runtime_checkable
class CaseRegistry(Protocol):
    def transaction(self) -> AbstractAsyncContextManager[RegistryTransaction]: ...
    async def get_case(self, case_id: UUID) -> Case | None: ...
    async def get_credential(self, credential_id: UUID) -> Credential | None: ...
    async def get_credential_by_case(self, case_id: UUID) -> Credential | None: ...
    async def get_credential_by_number(
        self, credential_type: CredentialType, credential_number: str
    ) -> Credential | None: ...


class _InMemoryTransaction:
    """Works on private copies of the registry maps; published on commit."""

    def __init__(
        self, cases: dict[UUID, Case], credentials: dict[UUID, Credential]
    ) -> None:
        self._cases = cases
        self._credentials = credentials

    async def get_case(self, case_id: UUID) -> Case | None:
        return self._cases.get(case_id)

    async def insert_case(self, case: Case) -> None:
        if case.id in self._cases:
            raise ValueError(f"case {case.id} already exists")
        self._cases[case.id] = case

    async def conditional_update(
        self, case_id: UUID, expected_status: CaseStatus, **fields: Any
    ) -> Case | None:
        current = self._cases.get(case_id)
        if current is None or current.status != expected_status:
            return None

        assigned = fields.get("assigned_number")
        if assigned is not None:
            for other in self._cases.values():
                if (
                    other.id != case_id
                    and other.case_type == current.case_type
                    and other.assigned_number == assigned
                ):
                    raise DuplicateAssignedNumber(current.case_type.value, assigned)

        updated = replace(current, **fields)
        self._cases[case_id] = updated
        return updated

    async def get_credential(self, credential_id: UUID) -> Credential | None:
        return self._credentials.get(credential_id)

    async def get_credential_by_case(self, case_id: UUID) -> Credential | None:
        return next(
            (c for c in self._credentials.values() if c.case_id == case_id), None
        )

    async def get_credential_by_number(
        self, credential_type: CredentialType, credential_number: str
    ) -> Credential | None:
        return next(
            (
                c
                for c in self._credentials.values()
                if c.credential_type == credential_type
                and c.credential_number == credential_number
            ),
            None,
        )

    async def insert_credential(self, credential: Credential) -> None:
        for other in self._credentials.values():
            if other.case_id == credential.case_id:
                raise AlreadyIssued(credential.case_id, other.id)
            if (
                other.credential_type == credential.credential_type
                and other.credential_number == credential.credential_number
            ):
                raise DuplicateCredentialNumber(
                    credential.credential_type.value, credential.credential_number
                )
        if credential.status is CredentialStatus.ACTIVE:
            self._check_single_active(credential)
        self._credentials[credential.id] = credential

    async def update_credential(
        self,
        credential_id: UUID,
        expected_status: CredentialStatus,
        **fields: Any,
    ) -> Credential | None:
        current = self._credentials.get(credential_id)
        if current is None or current.status != expected_status:
            return None
        updated = replace(current, **fields)
        if (
            updated.status is CredentialStatus.ACTIVE
            and current.status is not CredentialStatus.ACTIVE
        ):
            self._check_single_active(updated)
        self._credentials[credential_id] = updated
        return updated

    async def list_due_for_expiry(self, now: int, limit: int) -> list[Credential]:
        due = [
            c
            for c in self._credentials.values()
            if c.status is CredentialStatus.ACTIVE and c.is_expired_at(now)
        ]
        due.sort(key=lambda c: (c.expires_at, str(c.id)))
        return due[:limit]

    def _check_single_active(self, credential: Credential) -> None:
        for other in self._credentials.values():
            if (
                other.id != credential.id
                and other.status is CredentialStatus.ACTIVE
                and other.subject_id == credential.subject_id
                and other.credential_type == credential.credential_type
            ):
                raise AlreadyHasActiveCredential(
                    credential.subject_id, credential.credential_type.value
                )


class InMemoryCaseRegistry:
    """In-memory registry for tests and local dev — no database needed.

    Transactions are serialized by one asyncio.Lock, so the check-then-insert
    uniqueness checks inside a transaction behave like a SERIALIZABLE
    transaction.  Reads outside a transaction see committed state only.
    """

    def __init__(self) -> None:
        self._cases: dict[UUID, Case] = {}
        self._credentials: dict[UUID, Credential] = {}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryTransaction]:
        async with self._lock:
            tx = _InMemoryTransaction(dict(self._cases), dict(self._credentials))
            yield tx
            # Only reached when the block did not raise.
            self._cases = tx._cases
            self._credentials = tx._credentials

    async def get_case(self, case_id: UUID) -> Case | None:
        return self._cases.get(case_id)

    async def get_credential(self, credential_id: UUID) -> Credential | None:
        return self._credentials.get(credential_id)

    async def get_credential_by_case(self, case_id: UUID) -> Credential | None:
        return next(
            (c for c in self._credentials.values() if c.case_id == case_id), None
        )

    async def get_credential_by_number(
        self, credential_type: CredentialType, credential_number: str
    ) -> Credential | None:
        return next(
            (
                c
                for c in self._credentials.values()
                if c.credential_type == credential_type
                and c.credential_number == credential_number
            ),
            None,
        )

    def credentials_for_case(self, case_id: UUID) -> list[Credential]:
        """All credentials referencing ``case_id`` (invariant checks in tests)."""
        return [c for c in self._credentials.values() if c.case_id == case_id]

    def all_credentials(self) -> list[Credential]:
        return list(self._credentials.values())

    def all_cases(self) -> list[Case]:
        return list(self._cases.values())
