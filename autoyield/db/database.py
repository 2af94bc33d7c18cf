"""
Async engine and sessions.

Production runs PostgreSQL through asyncpg. Tables are created here only
in debug mode; production schemas are managed outside the service.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..core.config import get_settings
from .models import Base

logger = logging.getLogger(__name__)
settings = get_settings()

engine = create_async_engine(
    str(settings.database_url),
    echo=False,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_pool_max_overflow,
    pool_timeout=settings.db_pool_timeout,
    pool_recycle=settings.db_pool_recycle,
    # Connections can sit idle between cron runs
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One unit of work: commit when the block exits cleanly, else roll back."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one transactional session per request."""
    async with session_scope() as session:
        yield session


async def check_db_connection(session: AsyncSession) -> None:
    await session.execute(text("SELECT 1"))


async def ping_database() -> bool:
    """True when a trivial round trip succeeds."""
    try:
        async with AsyncSessionLocal() as session:
            await check_db_connection(session)
    except Exception as e:
        logger.warning(f"Database ping failed: {e}")
        return False
    return True


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
