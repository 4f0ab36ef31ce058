"""Work handed from the workflow engine to the background worker.

  engine  ──LPUSH──▶  credential_service:tasks:<queue>  ──BRPOP──▶  worker

Two queues are in use: ``notifications`` (status events produced after a
commit) and ``maintenance`` (the periodic expiry sweep).  A Redis list is
FIFO when pushed on the left and popped on the right; BRPOP blocks so an
idle worker waits on Redis instead of polling.

Without REDIS_URL the module falls back to an in-process queue.  That is
only useful for tests and single-process development: the worker and the
engine must share a process to see each other's tasks.

DELIVERY
---------
At-most-once.  A task popped by a worker that then dies is gone.  Nothing
downstream depends on a single task: case and credential state is
committed before the notification is queued, and every expiry sweep
re-reads what is due.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from typing import Protocol, runtime_checkable

from credential_service.db.redis import redis_pool

logger = logging.getLogger(__name__)

NOTIFICATIONS_QUEUE = "notifications"
MAINTENANCE_QUEUE = "maintenance"


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    queue: str
    payload: dict
    enqueued_at: float = 0.0  # epoch seconds; for queue-latency logging

    @staticmethod
    def new(queue: str, payload: dict) -> Task:
        return Task(
            id=str(uuid.uuid4()), queue=queue, payload=payload, enqueued_at=time.time()
        )


@runtime_checkable
class TaskQueue(Protocol):
    async def enqueue(self, queue: str, payload: dict) -> Task: ...
    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None: ...
    async def queue_length(self, queue: str) -> int: ...


class InMemoryTaskQueue:
    """Per-queue deques; ``dequeue`` never blocks."""

    def __init__(self) -> None:
        self._queues: dict[str, deque[Task]] = {}

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task.new(queue, payload)
        self._queues.setdefault(queue, deque()).append(task)
        return task

    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None:
        pending = self._queues.get(queue)
        return pending.popleft() if pending else None

    async def queue_length(self, queue: str) -> int:
        return len(self._queues.get(queue, ()))


class RedisTaskQueue:
    KEY_PREFIX = "credential_service:tasks:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    def _key(self, queue: str) -> str:
        return f"{self.KEY_PREFIX}{queue}"

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task.new(queue, payload)
        await self._redis.lpush(self._key(queue), json.dumps(asdict(task)))
        return task

    async def dequeue(self, queue: str, timeout: int = 5) -> Task | None:
        popped = await self._redis.brpop(self._key(queue), timeout=timeout)
        if popped is None:
            return None
        _, raw = popped
        try:
            return Task(**json.loads(raw))
        except (ValueError, TypeError):
            # Not ours or from an incompatible release; it can never succeed.
            logger.error("Dropping malformed task on [%s]: %.200s", queue, raw)
            return None

    async def queue_length(self, queue: str) -> int:
        return await self._redis.llen(self._key(queue))


if redis_pool is not None:
    task_queue: TaskQueue = RedisTaskQueue(redis_pool)
else:
    task_queue = InMemoryTaskQueue()
