"""
PostgreSQL Async Database Client

Uses SQLAlchemy 2.0 with asyncpg for async database operations.
"""

from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from src.config import get_settings

logger = structlog.get_logger()

# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]


async def init_db(database_url: str | None = None) -> None:
    """Initialize the database connection pool."""
    global _engine, _session_factory

    settings = get_settings()
    database_url = database_url or str(settings.database_url)

    engine_kwargs: dict[str, object] = {
        "echo": settings.log_level == "DEBUG",
    }
    if settings.db_pool_mode == "null":
        engine_kwargs["poolclass"] = NullPool
    else:
        # QueuePool-backed defaults for long-running container workloads.
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_pool_max_overflow))
        engine_kwargs["pool_timeout"] = max(1, int(settings.db_pool_timeout_seconds))
        engine_kwargs["pool_recycle"] = max(60, int(settings.db_pool_recycle_seconds))
        engine_kwargs["pool_pre_ping"] = True

    _engine = create_async_engine(
        database_url,
        **engine_kwargs,
    )
    _session_factory = build_session_factory(_engine)

    logger.info(
        "Database connection pool initialized",
        url=database_url[:50] + "...",
        pool_mode=settings.db_pool_mode,
    )


async def close_db() -> None:
    """Close the database connection pool."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection pool closed")


def get_async_engine() -> AsyncEngine:
    """Get the async engine instance."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def build_session_scope(factory: async_sessionmaker[AsyncSession]) -> SessionScope:
    """
    Wrap a session factory into a unit-of-work context manager.

    The session commits when the block exits normally and rolls back on any
    exception, so a block is exactly one atomic transaction.
    """

    @asynccontextmanager
    async def session_scope() -> AsyncGenerator[AsyncSession, None]:
        session = factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    return session_scope


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session.

    Usage:
        async with get_db_session() as session:
            result = await session.execute(...)
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with build_session_scope(_session_factory)() as session:
        yield session
