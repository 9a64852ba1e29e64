"""Async database engine and session factory.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for development.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from config.database import DatabaseSettings, get_database_settings

logger = logging.getLogger(__name__)


# Global engine instance (lazy initialization)
_async_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine(settings: Optional[DatabaseSettings] = None) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine.

    Args:
        settings: Database settings. If None, loads from environment.

    Returns:
        AsyncEngine: Configured async engine instance.
    """
    settings = settings or get_database_settings()

    logger.info(
        "Creating async database engine",
        extra={"extra_data": {
            "driver": settings.driver,
            "database": settings.name if settings.is_postgres else str(settings.sqlite_path),
        }}
    )

    if settings.is_sqlite:
        pool_class = NullPool
        pool_kwargs = {}
    else:
        pool_class = AsyncAdaptedQueuePool
        pool_kwargs = {
            "pool_size": settings.pool_size,
            "max_overflow": settings.max_overflow,
            "pool_timeout": settings.pool_timeout,
            "pool_recycle": settings.pool_recycle,
            "pool_pre_ping": settings.pool_pre_ping,
        }

    engine = create_async_engine(
        settings.async_url,
        echo=settings.echo_sql,
        poolclass=pool_class,
        connect_args=settings.get_connect_args(),
        **pool_kwargs,
    )

    if settings.is_sqlite:
        _enable_sqlite_foreign_keys(engine)

    return engine


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def get_session_factory(
    engine: Optional[AsyncEngine] = None,
    settings: Optional[DatabaseSettings] = None
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to ``engine``."""
    engine = engine or get_async_engine(settings)

    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_async_engine(settings: Optional[DatabaseSettings] = None) -> AsyncEngine:
    """Get or create the global async engine instance."""
    global _async_engine

    if _async_engine is None:
        _async_engine = create_engine(settings)

    return _async_engine


def get_async_session_factory(
    settings: Optional[DatabaseSettings] = None
) -> async_sessionmaker[AsyncSession]:
    """Get or create the global async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        _async_session_factory = get_session_factory(get_async_engine(settings))

    return _async_session_factory


@asynccontextmanager
async def get_session(
    settings: Optional[DatabaseSettings] = None
) -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session as a context manager.

    The RBAC services commit their own units of work; anything left pending
    when the block raises is rolled back.

    Usage:
        async with get_session() as session:
            result = await RoleHierarchy(session).get_role(role_id)
    """
    session_factory = get_async_session_factory(settings)
    session = session_factory()

    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_database(settings: Optional[DatabaseSettings] = None) -> None:
    """
    Create all tables that do not exist yet.

    Args:
        settings: Optional database settings.
    """
    settings = settings or get_database_settings()
    engine = get_async_engine(settings)

    # Import models to ensure they're registered
    from database.models import Base
    import rbac.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Database initialized ({'sqlite' if settings.is_sqlite else settings.driver})")


async def close_database() -> None:
    """Dispose of the global engine."""
    global _async_engine, _async_session_factory

    if _async_engine is not None:
        logger.info("Closing database engine")
        await _async_engine.dispose()
        _async_engine = None
        _async_session_factory = None
