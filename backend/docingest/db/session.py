"""
Database engine + transactional sessions for the ingestion pipeline.

Flow:
  1. A pipeline component asks for get_session().
  2. A connection is checked out and a transaction begun.
  3. The block commits on clean exit, rolls back on any exception, and the
     connection is returned to the pool.

Every multi-statement write in this pipeline (delete chunks + update
document + insert chunks) runs inside ONE get_session() block, which is
what makes chunk replacement atomic.

asyncpg connections belong to the event loop that opened them. Callers that
run a fresh loop per unit of work (Celery tasks) must dispose the engine
before that loop closes.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docingest.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    # The scheduler idles between ticks; ping so a dropped connection
    # does not surface as a processing failure.
    pool_pre_ping=True,
    pool_recycle=1800,
    echo=settings.db_echo_sql,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,   # repository returns ORM rows after commit
    autoflush=False,
)


# ---------------------------------------------------------------------------
# Transactional session
# ---------------------------------------------------------------------------

@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Session wrapped in a single transaction.

    Usage:
        async with get_session() as db:
            await db.execute(...)
    """
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Startup check
# ---------------------------------------------------------------------------

async def check_db_health() -> dict[str, Any]:
    """
    Ping the database and confirm the pgvector extension is installed.

    Returns {"status": "ok"} or {"status": "error", "detail": ...}; the
    caller decides whether that is fatal.
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            has_vector = (
                await conn.execute(
                    text("SELECT 1 FROM pg_extension WHERE extname = 'vector'")
                )
            ).scalar() is not None
    except Exception as exc:
        logger.error("DB health check failed | error=%s", exc)
        return {"status": "error", "detail": str(exc)}

    if not has_vector:
        logger.error("DB health check failed | pgvector extension missing")
        return {"status": "error", "detail": "pgvector extension is not installed"}

    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Cross-process mutual exclusion
# ---------------------------------------------------------------------------

@asynccontextmanager
async def try_advisory_lock(key: int) -> AsyncGenerator[bool, None]:
    """
    Non-blocking PostgreSQL session advisory lock.

    Yields True when this caller holds `key`, False when another connection
    does. The lock lives on a dedicated AUTOCOMMIT connection, so no
    transaction stays open while it is held, and PostgreSQL releases it
    when the connection closes (e.g. the worker process is killed).

    Usage:
        async with try_advisory_lock(PROCESSING_LOCK_KEY) as acquired:
            if not acquired:
                return
            ...
    """
    async with engine.connect() as conn:
        conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
        acquired = bool(
            (await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})).scalar()
        )
        try:
            yield acquired
        finally:
            if acquired:
                await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
