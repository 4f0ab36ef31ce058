from __future__ import annotations

import asyncio
import logging

import pytest

from credential_service import worker
from credential_service.models.case import CaseType, TestResult
from credential_service.models.credential import CredentialStatus
from credential_service.services.task_queue import (
    MAINTENANCE_QUEUE,
    NOTIFICATIONS_QUEUE,
    Task,
    task_queue,
)
from tests.conftest import START, license_fields


@pytest.fixture
def patched_engine(engine, monkeypatch):
    monkeypatch.setattr(worker, "workflow_engine", lambda: engine)
    return engine


def test_handlers_registered_for_both_queues() -> None:
    assert worker.HANDLERS[NOTIFICATIONS_QUEUE] is worker.handle_notification
    assert worker.HANDLERS[MAINTENANCE_QUEUE] is worker.handle_maintenance


def test_expiry_sweep_task(patched_engine, registry, clock, caplog) -> None:
    async def scenario():
        case = await patched_engine.submit(
            "citizen-1", "RTO", CaseType.LICENSE, license_fields()
        )
        await patched_engine.verify_documents(case.id, "officer-1")
        await patched_engine.schedule_test(case.id, START + 86_400)
        await patched_engine.record_test_result(case.id, TestResult.PASS)
        approval = await patched_engine.approve(case.id, "approver-1")
        clock.now = approval.credential.expires_at + 1
        await worker.handle_maintenance({"task": worker.EXPIRE_CREDENTIALS})
        return await registry.get_credential(approval.credential.id)

    with caplog.at_level(logging.INFO, logger="credential_service.worker"):
        stored = asyncio.run(scenario())
    assert stored.status is CredentialStatus.EXPIRED
    assert "1 credential(s) expired" in caplog.text


def test_sweep_with_nothing_due(patched_engine, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="credential_service.worker"):
        asyncio.run(worker.handle_maintenance({"task": worker.EXPIRE_CREDENTIALS}))
    assert "0 credential(s) expired" in caplog.text


def test_unknown_maintenance_task_rejected(patched_engine) -> None:
    with pytest.raises(ValueError, match="unknown maintenance task"):
        asyncio.run(worker.handle_maintenance({"task": "vacuum"}))


def test_notification_is_logged(caplog) -> None:
    payload = {
        "kind": "case_status",
        "subject_id": "citizen-1",
        "status": "REJECTED",
        "final": True,
    }
    with caplog.at_level(logging.INFO, logger="credential_service.worker"):
        asyncio.run(worker.handle_notification(payload))
    assert "Notify subject=citizen-1: case_status REJECTED (final)" in caplog.text


def test_dispatch_logs_failing_handler(monkeypatch, caplog) -> None:
    async def broken(payload: dict) -> None:
        raise RuntimeError("gateway down")

    monkeypatch.setitem(worker.HANDLERS, NOTIFICATIONS_QUEUE, broken)
    task = Task.new(NOTIFICATIONS_QUEUE, {"status": "APPROVED"})

    assert asyncio.run(worker.dispatch(task)) is False
    assert f"Task {task.id} on [notifications] failed" in caplog.text


def test_dispatch_without_handler() -> None:
    assert asyncio.run(worker.dispatch(Task.new("unknown", {}))) is False


def test_run_worker_sweeps_and_dispatches_until_stopped(
    patched_engine, monkeypatch
) -> None:
    seen: list[dict] = []
    sweeps: list[dict] = []

    async def scenario():
        stop = asyncio.Event()

        async def record_notification(payload: dict) -> None:
            seen.append(payload)
            stop.set()

        async def record_sweep(payload: dict) -> None:
            sweeps.append(payload)

        monkeypatch.setitem(worker.HANDLERS, NOTIFICATIONS_QUEUE, record_notification)
        monkeypatch.setitem(worker.HANDLERS, MAINTENANCE_QUEUE, record_sweep)
        await task_queue.enqueue(NOTIFICATIONS_QUEUE, {"status": "SUBMITTED"})
        await asyncio.wait_for(worker.run_worker(stop), timeout=5)

    asyncio.run(scenario())
    assert seen == [{"status": "SUBMITTED"}]
    assert sweeps == [{"task": worker.EXPIRE_CREDENTIALS}]
