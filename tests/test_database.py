"""Tests for the database engine and unit-of-work helpers."""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select, text
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from config.database import DatabaseSettings
from database.models import User
from database.transaction import atomic, execute, maybe_await
from rbac.exceptions import StorageError


class TestCreateEngine:
    """Tests for create_engine function."""

    def test_sqlite_uses_null_pool(self):
        """SQLite should use NullPool and get the foreign key pragma."""
        with patch("database.engine.create_async_engine") as mock_create:
            with patch("database.engine._enable_sqlite_foreign_keys") as mock_fk:
                mock_engine = MagicMock()
                mock_create.return_value = mock_engine

                from database.engine import create_engine

                engine = create_engine(DatabaseSettings(_env_file=None, driver="sqlite+aiosqlite"))

                assert engine is mock_engine
                call_kwargs = mock_create.call_args[1]
                assert call_kwargs["poolclass"] is NullPool
                assert "pool_size" not in call_kwargs
                assert "sqlite+aiosqlite" in mock_create.call_args[0][0]
                mock_fk.assert_called_once_with(mock_engine)

    def test_postgres_uses_queue_pool(self):
        """PostgreSQL should use a sized async queue pool."""
        with patch("database.engine.create_async_engine") as mock_create:
            with patch("database.engine._enable_sqlite_foreign_keys") as mock_fk:
                mock_create.return_value = MagicMock()

                from database.engine import create_engine

                settings = DatabaseSettings(
                    _env_file=None,
                    driver="postgresql+asyncpg",
                    host="localhost",
                    name="testdb",
                    pool_size=5,
                    echo_sql=True,
                )
                create_engine(settings)

                call_kwargs = mock_create.call_args[1]
                assert call_kwargs["poolclass"] is AsyncAdaptedQueuePool
                assert call_kwargs["pool_size"] == 5
                assert call_kwargs["echo"] is True
                mock_fk.assert_not_called()

    def test_global_engine_is_cached(self):
        with patch("database.engine.create_async_engine") as mock_create:
            with patch("database.engine._enable_sqlite_foreign_keys"):
                mock_create.return_value = MagicMock()

                from database.engine import get_async_engine

                settings = DatabaseSettings(_env_file=None)
                assert get_async_engine(settings) is get_async_engine(settings)
                assert mock_create.call_count == 1


class TestSessionLifecycle:
    """Tests against a real SQLite file."""

    async def test_init_database_creates_tables(self, tmp_path):
        from database.engine import close_database, get_session, init_database

        settings = DatabaseSettings(_env_file=None, sqlite_path=tmp_path / "rbac.db")
        try:
            await init_database(settings)

            async with get_session(settings) as session:
                tables = (await session.execute(
                    text("SELECT name FROM sqlite_master WHERE type = 'table'")
                )).scalars().all()
                foreign_keys = (await session.execute(text("PRAGMA foreign_keys"))).scalar()

            assert {"users", "roles", "permissions", "role_permissions", "user_role_assignments"} <= set(tables)
            assert foreign_keys == 1
        finally:
            await close_database()

    async def test_session_rolls_back_on_error(self, tmp_path):
        from database.engine import close_database, get_session, init_database

        settings = DatabaseSettings(_env_file=None, sqlite_path=tmp_path / "rbac.db")
        try:
            await init_database(settings)

            with pytest.raises(RuntimeError):
                async with get_session(settings) as session:
                    session.add(User(email="pending@example.com"))
                    await session.flush()
                    raise RuntimeError("boom")

            async with get_session(settings) as session:
                assert (await session.execute(select(User))).scalars().all() == []
        finally:
            await close_database()


class TestAtomic:
    """Tests for the unit-of-work context manager."""

    async def test_commits_on_clean_exit(self, db_session):
        async with atomic(db_session):
            db_session.add(User(email="kept@example.com"))

        db_session.rollback()
        assert db_session.execute(select(User.email)).scalars().all() == ["kept@example.com"]

    async def test_integrity_error_becomes_storage_error(self, db_session, make_user):
        make_user(email="taken@example.com")

        with pytest.raises(StorageError):
            async with atomic(db_session):
                db_session.add(User(email="taken@example.com"))

        assert db_session.execute(select(User)).scalars().all() != []

    async def test_other_errors_roll_back_and_propagate(self, db_session):
        with pytest.raises(ValueError):
            async with atomic(db_session):
                db_session.add(User(email="lost@example.com"))
                db_session.flush()
                raise ValueError("rejected")

        assert db_session.execute(select(User)).scalars().all() == []

    async def test_execute_wraps_driver_errors(self, db_session):
        with pytest.raises(StorageError) as exc_info:
            await execute(db_session, text("SELECT * FROM missing_table"))

        assert exc_info.value.code.value == "storage_error"

    async def test_maybe_await_passes_plain_values(self):
        async def coro():
            return 2

        assert await maybe_await(1) == 1
        assert await maybe_await(coro()) == 2
