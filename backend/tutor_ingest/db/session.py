"""
Database engine and session factory.

Nothing is created at import time: main.py builds one engine during the
application lifespan and hands the session factory to the repositories.

    engine          = build_engine(settings)
    session_factory = build_session_factory(engine)

    async with get_session(session_factory) as session:
        ...                      # commits on exit, rolls back on error
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from tutor_ingest.core.config import Settings

logger = logging.getLogger(__name__)


def build_engine(settings: "Settings") -> AsyncEngine:
    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,
        echo=settings.db_echo_sql,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def get_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """One short transaction. Each pipeline write opens its own scope."""
    async with session_factory() as session:
        async with session.begin():
            yield session


async def check_db_health(engine: AsyncEngine) -> dict:
    """Ping the database; used by /ready."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
