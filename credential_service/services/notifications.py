"""Notification dispatch: tell the citizen what happened to their case.

The workflow engine calls ``notify`` after its transaction commits.  The
dispatcher only enqueues; delivery (email, SMS) is the worker's job and
lives outside this service.  A failed enqueue is logged and counted,
never raised: the case state is already durable and the citizen can
always look it up.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from redis.exceptions import RedisError

from credential_service.core import metrics
from credential_service.services.task_queue import NOTIFICATIONS_QUEUE, TaskQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    """One thing worth telling a subject about.

    kind:    "case_status" or "credential_status".
    status:  The new case or credential status.
    final:   True for decision outcomes (APPROVED, REJECTED, SCRAPPED).
    """

    kind: str
    subject_id: str
    status: str
    case_id: str | None = None
    credential_id: str | None = None
    final: bool = False
    details: dict[str, str] = field(default_factory=dict)


class NotificationDispatcher:
    def __init__(self, queue: TaskQueue) -> None:
        self._queue = queue

    async def notify(self, event: NotificationEvent) -> None:
        try:
            task = await self._queue.enqueue(NOTIFICATIONS_QUEUE, asdict(event))
        except (RedisError, OSError):
            metrics.NOTIFICATION_FAILURES.inc()
            logger.warning(
                "Notification dropped: %s %s for subject %s",
                event.kind,
                event.status,
                event.subject_id,
                exc_info=True,
            )
            return
        logger.debug("Queued notification task=%s %s", task.id, event.status)
