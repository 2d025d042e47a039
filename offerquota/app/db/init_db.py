"""Database initialization utilities."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from offerquota.app.core.logging import get_logger
from offerquota.app.db.async_session import get_async_engine
from offerquota.app.db.base import Base
from offerquota.app.db.procedures import ALL_PROCEDURES

logger = get_logger(__name__)


async def install_procedures(engine: AsyncEngine | None = None) -> int:
    """Create or replace the atomic quota functions.

    Only PostgreSQL supports them. On any other dialect nothing is installed
    and the usage service runs its fallback path.

    Returns:
        Number of functions installed
    """
    if engine is None:
        engine = get_async_engine()

    if engine.dialect.name != "postgresql":
        logger.warning(
            f"Skipping atomic quota procedures on dialect '{engine.dialect.name}'; "
            "usage checks will use the fallback path"
        )
        return 0

    async with engine.begin() as conn:
        for name, ddl in ALL_PROCEDURES.items():
            await conn.execute(text(ddl))
            logger.debug(f"Installed procedure {name}")
    logger.info(f"Installed {len(ALL_PROCEDURES)} atomic quota procedures")
    return len(ALL_PROCEDURES)


async def init_database(engine: AsyncEngine | None = None, with_procedures: bool = True) -> None:
    """Create all tables and, on PostgreSQL, the atomic procedures."""
    if engine is None:
        engine = get_async_engine()

    # Import models to register them with the metadata
    from offerquota.app.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if with_procedures:
        await install_procedures(engine)


async def drop_all_tables(engine: AsyncEngine | None = None) -> None:
    """Drop all database tables.

    WARNING: This will delete all data!
    """
    if engine is None:
        engine = get_async_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def verify_connection(engine: AsyncEngine | None = None) -> bool:
    """Verify that the database is reachable."""
    if engine is None:
        engine = get_async_engine()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
