"""Database engine and session management (SQLAlchemy async)."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.config.settings import settings
from src.database.base import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Open a session that commits on success and rolls back on error.

    Routers commit explicitly before responding; the final commit here only
    flushes whatever a handler left pending.
    """
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the engine and session factory, check connectivity and create missing tables.

    Tables for users, auth sessions and OIDC authorization requests come from
    the models registered on ``Base.metadata``; existing tables are left alone.
    """
    global _engine, _async_session_factory

    try:
        logger.info(f"Connecting to database at {settings.postgres_url.split('@')[-1]}")

        _engine = create_async_engine(
            settings.postgres_url,
            echo=settings.postgres_echo,
            pool_size=settings.postgres_pool_size,
            max_overflow=settings.postgres_max_overflow,
            pool_timeout=settings.postgres_pool_timeout,
            pool_recycle=settings.postgres_pool_recycle,
            pool_pre_ping=True,
        )
        _async_session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)

        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if settings.postgres_create_tables:
                await conn.run_sync(Base.metadata.create_all)
                logger.info(f"Database schema ready ({', '.join(sorted(Base.metadata.tables))})")

        logger.info("Database connection successful")

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_db() -> None:
    """Dispose of the engine."""
    global _engine, _async_session_factory

    if _engine is not None:
        logger.info("Closing database connection")
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
