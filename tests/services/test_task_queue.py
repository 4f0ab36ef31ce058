"""Task queue contract: FIFO per queue, queues independent, None when empty.

The Redis queue runs against a fake client holding plain lists.
"""

from __future__ import annotations

import asyncio

from credential_service.services.task_queue import (
    MAINTENANCE_QUEUE,
    NOTIFICATIONS_QUEUE,
    InMemoryTaskQueue,
    RedisTaskQueue,
    TaskQueue,
)


def test_in_memory_queue_satisfies_protocol() -> None:
    assert isinstance(InMemoryTaskQueue(), TaskQueue)


def test_queue_is_fifo() -> None:
    queue = InMemoryTaskQueue()

    async def scenario():
        await queue.enqueue(NOTIFICATIONS_QUEUE, {"n": 1})
        await queue.enqueue(NOTIFICATIONS_QUEUE, {"n": 2})
        first = await queue.dequeue(NOTIFICATIONS_QUEUE)
        second = await queue.dequeue(NOTIFICATIONS_QUEUE)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.payload == {"n": 1}
    assert second.payload == {"n": 2}
    assert first.id != second.id


def test_queues_are_independent() -> None:
    queue = InMemoryTaskQueue()

    async def scenario():
        await queue.enqueue(MAINTENANCE_QUEUE, {"task": "expire_credentials"})
        return (
            await queue.queue_length(MAINTENANCE_QUEUE),
            await queue.dequeue(NOTIFICATIONS_QUEUE),
        )

    length, task = asyncio.run(scenario())
    assert length == 1
    assert task is None


def test_dequeue_empty_returns_none() -> None:
    assert asyncio.run(InMemoryTaskQueue().dequeue("nothing-here")) is None


class _FakeRedis:
    """Just the list commands RedisTaskQueue uses."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}

    async def lpush(self, key: str, value: str) -> int:
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def brpop(self, key: str, timeout: int = 0):
        items = self.lists.get(key)
        if not items:
            return None
        return key, items.pop()

    async def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))


def test_redis_queue_round_trips_tasks() -> None:
    redis = _FakeRedis()
    queue = RedisTaskQueue(redis)

    async def scenario():
        sent = await queue.enqueue(NOTIFICATIONS_QUEUE, {"status": "APPROVED"})
        length = await queue.queue_length(NOTIFICATIONS_QUEUE)
        return sent, length, await queue.dequeue(NOTIFICATIONS_QUEUE)

    sent, length, received = asyncio.run(scenario())
    assert length == 1
    assert received == sent
    assert list(redis.lists) == ["credential_service:tasks:notifications"]


def test_redis_queue_drops_malformed_entry(caplog) -> None:
    redis = _FakeRedis()
    redis.lists["credential_service:tasks:maintenance"] = ["{not json"]

    task = asyncio.run(RedisTaskQueue(redis).dequeue(MAINTENANCE_QUEUE))

    assert task is None
    assert "Dropping malformed task" in caplog.text
    assert redis.lists["credential_service:tasks:maintenance"] == []
