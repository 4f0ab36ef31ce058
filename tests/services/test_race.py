"""Concurrent approvals.

The in-memory registry never yields inside get_case, so two coroutines
would simply run one after the other.  _BarrierRegistry holds every
reader at a barrier until all of them have read, which forces the
interleaving a real database produces: both callers see the same status,
both pass validation, and only the conditional write decides the winner.
"""

from __future__ import annotations

import asyncio

from credential_service.core.errors import AlreadyHasActiveCredential, Conflict
from credential_service.models.case import CaseStatus, CaseType, TestResult
from credential_service.models.credential import CredentialStatus
from credential_service.repos.registry import InMemoryCaseRegistry
from credential_service.services.issuer import CredentialIssuer
from credential_service.services.notifications import NotificationDispatcher
from credential_service.services.task_queue import InMemoryTaskQueue
from credential_service.services.workflow import Approval, WorkflowEngine
from tests.conftest import START, vehicle_fields


class _BarrierRegistry(InMemoryCaseRegistry):
    def __init__(self) -> None:
        super().__init__()
        self.barrier: asyncio.Barrier | None = None

    async def get_case(self, case_id):
        case = await super().get_case(case_id)
        if self.barrier is not None:
            await self.barrier.wait()
        return case


def _engine(signing_key, clock) -> tuple[WorkflowEngine, _BarrierRegistry]:
    registry = _BarrierRegistry()
    issuer = CredentialIssuer(signing_key, registry, clock=clock)
    engine = WorkflowEngine(
        registry, issuer, NotificationDispatcher(InMemoryTaskQueue()), clock=clock
    )
    return engine, registry


def test_concurrent_approvals_have_one_winner(signing_key, clock) -> None:
    engine, registry = _engine(signing_key, clock)

    async def scenario():
        case = await engine.submit("citizen-1", "RTO", CaseType.VEHICLE, vehicle_fields())
        await engine.verify_documents(case.id, "officer-1")

        registry.barrier = asyncio.Barrier(2)
        results = await asyncio.gather(
            engine.approve(case.id, "approver-1", "MH12AB1234"),
            engine.approve(case.id, "approver-2", "MH12AB1234"),
            return_exceptions=True,
        )
        registry.barrier = None
        return case, results

    case, results = asyncio.run(scenario())

    wins = [r for r in results if isinstance(r, Approval)]
    losses = [r for r in results if isinstance(r, Conflict)]
    assert len(wins) == 1
    assert len(losses) == 1
    assert len(registry.credentials_for_case(case.id)) == 1
    stored = registry.all_cases()[0]
    assert stored.status is CaseStatus.APPROVED
    assert stored.approved_by == wins[0].case.approved_by


def test_concurrent_approvals_with_generated_numbers(signing_key, clock) -> None:
    engine, registry = _engine(signing_key, clock)

    async def scenario():
        case = await engine.submit("citizen-1", "RTO", CaseType.VEHICLE, vehicle_fields())
        await engine.verify_documents(case.id, "officer-1")
        registry.barrier = asyncio.Barrier(2)
        return await asyncio.gather(
            engine.approve(case.id, "approver-1"),
            engine.approve(case.id, "approver-2"),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    assert sum(isinstance(r, Approval) for r in results) == 1
    assert sum(isinstance(r, Conflict) for r in results) == 1
    assert len(registry.all_credentials()) == 1


def test_concurrent_licenses_for_one_subject(signing_key, clock) -> None:
    """Two different cases, same citizen: the store admits one ACTIVE license."""
    engine, registry = _engine(signing_key, clock)

    async def passed(subject_id: str):
        case = await engine.submit(subject_id, "RTO", CaseType.LICENSE, {})
        await engine.verify_documents(case.id, "officer-1")
        await engine.schedule_test(case.id, START + 86_400)
        return await engine.record_test_result(case.id, TestResult.PASS)

    async def scenario():
        first = await passed("citizen-A")
        second = await passed("citizen-A")
        registry.barrier = asyncio.Barrier(2)
        results = await asyncio.gather(
            engine.approve(first.id, "approver-1", "DL1"),
            engine.approve(second.id, "approver-2", "DL2"),
            return_exceptions=True,
        )
        return results

    results = asyncio.run(scenario())

    assert sum(isinstance(r, Approval) for r in results) == 1
    assert sum(isinstance(r, AlreadyHasActiveCredential) for r in results) == 1
    active = [
        c for c in registry.all_credentials() if c.status is CredentialStatus.ACTIVE
    ]
    assert len(active) == 1
    statuses = sorted(c.status.value for c in registry.all_cases())
    assert statuses == ["APPROVED", "TEST_PASSED"]
