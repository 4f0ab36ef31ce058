"""Background worker process.

RUN:  python -m credential_service.worker

Two queues:

  notifications  case and credential status events enqueued by the
                 workflow engine after commit.  Delivery (email, SMS)
                 belongs to an external gateway; the worker hands the
                 event over and logs it.

  maintenance    housekeeping.  The worker enqueues an expiry sweep on a
                 fixed interval; the sweep marks ACTIVE credentials past
                 their expiry as EXPIRED, one batch at a time.

STARTUP
---------
The signing key is loaded before the loop starts.  A missing or short
CREDENTIAL_SIGNING_KEY raises SigningKeyUnavailable and the process
exits: no issuance or verification may run without a key.

THE WORKER LOOP
----------------
Each pass: enqueue the expiry sweep when it is due, then take at most one
task from every registered queue and dispatch it.  A failing handler is
logged and the loop moves on (at-most-once delivery).  SIGTERM or SIGINT
sets the stop event; the pass in progress finishes first.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Callable, Coroutine
from functools import cache
from typing import Any

from credential_service.core import metrics
from credential_service.core.config import SETTINGS
from credential_service.core.logging import setup_logging
from credential_service.db.engine import async_session_factory, lifespan_db
from credential_service.db.redis import lifespan_redis
from credential_service.repos.pg_registry import PgCaseRegistry
from credential_service.repos.registry import CaseRegistry, InMemoryCaseRegistry
from credential_service.services.issuer import CredentialIssuer
from credential_service.services.notifications import NotificationDispatcher
from credential_service.services.signing import SigningKey
from credential_service.services.task_queue import (
    MAINTENANCE_QUEUE,
    NOTIFICATIONS_QUEUE,
    Task,
    task_queue,
)
from credential_service.services.workflow import EXPIRY_BATCH_SIZE, WorkflowEngine

TaskHandler = Callable[[dict], Coroutine[Any, Any, None]]

logger = logging.getLogger("credential_service.worker")

EXPIRY_SWEEP_INTERVAL_SECONDS = 3600
EXPIRE_CREDENTIALS = "expire_credentials"


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_registry() -> CaseRegistry:
    if async_session_factory is not None:
        return PgCaseRegistry(async_session_factory)
    logger.warning("No DATABASE_URL configured — state is lost on exit")
    return InMemoryCaseRegistry()


@cache
def workflow_engine() -> WorkflowEngine:
    """The process-wide engine; raises SigningKeyUnavailable without a key."""
    key = SigningKey.from_settings(SETTINGS)
    registry = build_registry()
    issuer = CredentialIssuer.from_settings(SETTINGS, key, registry)
    return WorkflowEngine(registry, issuer, NotificationDispatcher(task_queue))


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


# ---------------------------------------------------------------------------
# Task handlers
# ---------------------------------------------------------------------------


@register_handler(NOTIFICATIONS_QUEUE)
async def handle_notification(payload: dict) -> None:
    """Hand a status event to the delivery gateway."""
    logger.info(
        "Notify subject=%s: %s %s%s",
        payload.get("subject_id"),
        payload.get("kind"),
        payload.get("status"),
        " (final)" if payload.get("final") else "",
    )


@register_handler(MAINTENANCE_QUEUE)
async def handle_maintenance(payload: dict) -> None:
    task = payload.get("task")
    if task != EXPIRE_CREDENTIALS:
        raise ValueError(f"unknown maintenance task {task!r}")

    engine = workflow_engine()
    total = 0
    while True:
        expired = await engine.expire_due_credentials(EXPIRY_BATCH_SIZE)
        total += len(expired)
        if len(expired) < EXPIRY_BATCH_SIZE:
            break
    logger.info("Expiry sweep finished: %d credential(s) expired", total)


# ---------------------------------------------------------------------------
# Main worker loop
# ---------------------------------------------------------------------------


async def dispatch(task: Task) -> bool:
    """Run one task's handler.  False when there is none or it raised."""
    handler = HANDLERS.get(task.queue)
    if handler is None:
        logger.error("No handler for [%s]; dropping task %s", task.queue, task.id)
        return False
    try:
        await handler(task.payload)
    except Exception:
        # No dead-letter queue: the next sweep or status change
        # supersedes a lost task.
        logger.exception("Task %s on [%s] failed", task.id, task.queue)
        return False
    logger.info(
        "Task %s on [%s] completed (queued %.1fs)",
        task.id,
        task.queue,
        time.time() - task.enqueued_at,
    )
    return True


async def run_worker(stop: asyncio.Event | None = None) -> None:
    """Serve every registered queue until ``stop`` is set."""
    workflow_engine()  # fail fast on a missing signing key
    stop = stop or asyncio.Event()
    queues = sorted(HANDLERS)
    logger.info("Worker listening on %s", ", ".join(queues))

    next_sweep = time.monotonic()
    while not stop.is_set():
        if time.monotonic() >= next_sweep:
            await task_queue.enqueue(MAINTENANCE_QUEUE, {"task": EXPIRE_CREDENTIALS})
            next_sweep = time.monotonic() + EXPIRY_SWEEP_INTERVAL_SECONDS

        idle = True
        for queue_name in queues:
            metrics.QUEUE_DEPTH.labels(queue_name=queue_name).set(
                await task_queue.queue_length(queue_name)
            )
            task = await task_queue.dequeue(queue_name, timeout=1)
            if task is not None:
                idle = False
                await dispatch(task)

        if idle and SETTINGS.redis_url is None:
            # The in-process queue never blocks; wait here instead.
            try:
                await asyncio.wait_for(stop.wait(), timeout=1)
            except TimeoutError:
                pass

    logger.info("Worker stopped")


async def main() -> None:
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    async with lifespan_db(), lifespan_redis():
        await run_worker(stop)


if __name__ == "__main__":
    asyncio.run(main())
