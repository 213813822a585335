"""
Database session management.

Two entry points:
  get_db()          FastAPI dependency — one session per request, committed
                    when the route returns, rolled back if it raises.
  session_scope()   async context manager for workers and repositories —
                    one short transaction per unit of work.

The processing pipeline deliberately uses many short transactions instead
of one long one: status PROCESSING must be visible to other readers before
extraction starts, and each chunk row is durable as soon as it is embedded.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
    pool_recycle=settings.db_pool_recycle_seconds,
    echo=settings.db_echo_sql,
)

# Session factory: expire_on_commit=False keeps ORM objects usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ---------------------------------------------------------------------------
# Request-scoped session (FastAPI Depends)
# ---------------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a request-scoped session.

    Example:
        @router.get("/documents/{document_id}")
        async def read_document(db: AsyncSession = Depends(get_db)): ...
    """
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session
            # Committed by the begin() block unless the route raised


# ---------------------------------------------------------------------------
# Unit-of-work scope for background code
# ---------------------------------------------------------------------------

@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session and a transaction; commit on success, roll back on error."""
    async with (factory or AsyncSessionLocal)() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """SELECT 1 against the pool; backs the /ready route and startup log."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("Database ping failed | %s", exc)
        return {"status": "error", "detail": str(exc)}
