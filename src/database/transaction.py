"""
Unit-of-work helpers.

Every helper accepts either a synchronous ``Session`` or an ``AsyncSession``:
results of session calls are awaited only when they are awaitable.

Usage:
    async with atomic(db):
        role = await scalar_one_or_none(db, select(Role).where(...).with_for_update())
        role.user_count = count
    # committed here, rolled back if the block raised
"""

import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.exc import SQLAlchemyError

from rbac.exceptions import StorageError

logger = logging.getLogger(__name__)


async def maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


async def execute(db, stmt):
    """Run one statement, surfacing driver failures as StorageError."""
    try:
        return await maybe_await(db.execute(stmt))
    except SQLAlchemyError as e:
        logger.error(f"Statement failed: {e}")
        raise StorageError(f"Statement failed: {e.__class__.__name__}") from e


async def scalar(db, stmt) -> Any:
    result = await execute(db, stmt)
    return result.scalar()


async def scalar_one_or_none(db, stmt) -> Any:
    result = await execute(db, stmt)
    return result.scalar_one_or_none()


async def scalars(db, stmt) -> list:
    result = await execute(db, stmt)
    return list(result.scalars().all())


async def flush(db) -> None:
    try:
        await maybe_await(db.flush())
    except SQLAlchemyError as e:
        logger.error(f"Flush failed: {e}")
        raise StorageError(f"Flush failed: {e.__class__.__name__}") from e


@asynccontextmanager
async def atomic(db) -> AsyncGenerator[Any, None]:
    """
    Run the enclosed statements as one unit of work.

    Commits on clean exit. Any exception rolls the session back; SQLAlchemy
    errors are re-raised as StorageError, everything else propagates as-is.
    """
    try:
        yield db
        await maybe_await(db.commit())
    except SQLAlchemyError as e:
        await maybe_await(db.rollback())
        logger.error(f"Transaction rolled back: {e}", exc_info=True)
        raise StorageError(f"Transaction failed: {e.__class__.__name__}") from e
    except Exception as e:
        await maybe_await(db.rollback())
        logger.debug(f"Transaction rolled back due to: {e.__class__.__name__}")
        raise
