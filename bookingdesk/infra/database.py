"""
Database engine and session scopes.

A session here backs exactly one SchedulingStore unit of work. Nothing is
committed implicitly: the store commits when its operation succeeds, and
whatever is left uncommitted when the scope ends is rolled back. A failed
commit therefore surfaces in SqlSchedulingStore instead of at scope exit.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from bookingdesk.config import settings
from bookingdesk.models.database import Base

logger = logging.getLogger(__name__)


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

# expire_on_commit=False: scans read appointment and message fields
# after the commit that recorded them
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """
    One session per unit of work.

    Usage:
        async with session_scope() as session:
            store = SqlSchedulingStore(session)
            ...
            await store.commit()

    Yields:
        AsyncSession: Session with no implicit commit
    """
    session = async_session_factory()
    try:
        yield session
    finally:
        if session.in_transaction():
            await session.rollback()
        await session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: a session scoped to the request."""
    async with session_scope() as session:
        yield session


async def init_db() -> None:
    """
    Create all tables.

    Development only. Production schemas are managed by migrations.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def close_db() -> None:
    """Dispose of the connection pool."""
    await engine.dispose()


async def check_db_health() -> bool:
    """
    Check database connectivity for the readiness probe.

    Returns:
        bool: True if a trivial query succeeds
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return False
