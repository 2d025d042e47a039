"""Async database session management for SQLAlchemy 2.0+.

PostgreSQL (asyncpg) in production; SQLite (aiosqlite) for tests and local
development, where the atomic procedures are absent.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from typing_extensions import Annotated

from offerquota.app.core.config import settings
from offerquota.app.core.logging import get_logger

logger = get_logger(__name__)

# Global session maker instance
_AsyncSessionLocal = None


@lru_cache(maxsize=1)
def get_async_engine(database_url: str | None = None) -> AsyncEngine:
    """Get or create the async database engine (cached singleton).

    Args:
        database_url: Optional database URL. Uses settings if not provided.

    Returns:
        AsyncEngine instance
    """
    url = database_url or settings.database_url

    if "sqlite" in url.lower():
        engine = create_async_engine(url, echo=False, future=True)
        logger.info("Created SQLite async engine")
    else:
        engine = create_async_engine(
            url,
            echo=False,
            future=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=settings.db_pool_pre_ping,
            connect_args={"command_timeout": settings.db_command_timeout},
        )
        logger.info(
            f"Created PostgreSQL async engine (pool_size={settings.db_pool_size}, "
            f"max_overflow={settings.db_max_overflow})"
        )
    return engine


def get_async_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the async session maker bound to the cached engine."""
    global _AsyncSessionLocal
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _AsyncSessionLocal


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Async context manager for database sessions.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(...)
    """
    session_maker = get_async_session_maker()
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def close_async_engine() -> None:
    """Close the async engine.

    Call this on application shutdown to release database connections.
    """
    global _AsyncSessionLocal

    engine = get_async_engine()
    try:
        await engine.dispose()
        logger.debug("Async engine disposed successfully")
    except RuntimeError:
        # Event loop mismatch in test scenarios; connections are already gone
        logger.debug("Engine dispose encountered RuntimeError (event loop mismatch)")

    get_async_engine.cache_clear()
    _AsyncSessionLocal = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions.

    Quota operations commit their own units of work; anything left pending
    when the request fails is rolled back here.
    """
    async with get_async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# Type alias for FastAPI dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_db)]
