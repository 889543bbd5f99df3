"""
Async engine and transactional sessions.

Repositories open one short-lived transaction per operation through
`session_scope()`. Document pipelines outlive the request that started them,
so nothing here is tied to a request.
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

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=settings.db_echo_sql,
)

# Records are copied out of ORM rows inside the transaction, but status
# updates re-read the row, so keep attributes loaded after commit.
SessionFactory = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Commit on clean exit, roll back on error. `factory` lets workers bind another engine."""
    async with (factory or SessionFactory)() as session:
        async with session.begin():
            yield session


async def check_db_health() -> dict:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("DB health check failed | error=%s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok"}
