"""Redis pool for the task queue.

Redis carries only background work here: notification events and expiry
sweep triggers.  Cases and credentials live in Postgres, so Redis being
down degrades notifications and nothing else.  Hence the asymmetry with
lifespan_db(): an unreachable Redis is logged, not fatal.

REDIS_URL unset means no pool; the task queue uses its in-process fallback.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from credential_service.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,  # task JSON as str
        max_connections=10,
        health_check_interval=30,
        # BRPOP blocks up to its own timeout; keep the socket timeout above it.
        socket_timeout=10,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis() -> AsyncIterator[None]:
    if redis_pool is None:
        logger.info("No REDIS_URL configured; task queue is in-process")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
    except RedisError:
        logger.exception("Redis unreachable on startup; notifications will be dropped")
    else:
        logger.info("Redis reachable")

    try:
        yield
    finally:
        await redis_pool.aclose()
        logger.info("Redis pool closed")
