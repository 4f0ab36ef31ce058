"""Async SQLAlchemy engine for the PostgreSQL case registry.

With DATABASE_URL set (postgresql+asyncpg://...) this module exports an
engine and a session factory; PgCaseRegistry opens one session per
registry transaction.  Without it both are None and the worker builds the
in-memory registry instead.

Pool sizing is for one worker process.  ``pool_timeout`` is short on
purpose: a saturated pool should surface as RegistryUnavailable to the
caller rather than park the coroutine.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from credential_service.core.config import SETTINGS
from credential_service.core.errors import RegistryUnavailable

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


if SETTINGS.database_url:
    engine = create_async_engine(
        SETTINGS.database_url,
        echo=SETTINGS.is_dev,
        pool_size=5,
        max_overflow=5,
        pool_timeout=5,
        pool_pre_ping=True,  # drop connections Postgres closed while idle
    )
    async_session_factory: async_sessionmaker[AsyncSession] | None = (
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    )
else:
    engine = None
    async_session_factory = None


@asynccontextmanager
async def lifespan_db() -> AsyncIterator[None]:
    """Check the database is reachable, and dispose of the pool on exit.

    Unlike Redis, an unreachable database is fatal: there is nowhere to
    put cases, so the worker should crash and be restarted.
    """
    if engine is None:
        logger.info("No DATABASE_URL configured; cases live in memory")
        yield
        return

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (OSError, SQLAlchemyError) as exc:
        raise RegistryUnavailable(f"database unreachable: {exc}") from exc
    logger.info("Database reachable: %s", engine.url.render_as_string())

    try:
        yield
    finally:
        await engine.dispose()
        logger.info("Database engine disposed")
