"""Pytest configuration and fixtures for the RBAC test suite."""

import os
from itertools import count

import pytest

# Set test environment BEFORE any other imports
os.environ.setdefault("DB_DRIVER", "sqlite+aiosqlite")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import RBACSettings
from database.models import Base, User
from rbac import models as rbac_models  # noqa: F401
from rbac.assignments import AssignmentEngine
from rbac.catalog import PermissionCatalog
from rbac.grants import RoleGrantService
from rbac.hierarchy import RoleHierarchy
from rbac.resolver import PermissionResolver
from rbac.schemas import PermissionCreate, RoleCreate


def _reset_db_modules():
    """Reset database module globals to ensure clean state."""
    import database.engine as module
    module._async_engine = None
    module._async_session_factory = None


@pytest.fixture(autouse=True)
def reset_database_globals():
    """Reset database module globals before and after each test."""
    _reset_db_modules()
    yield
    _reset_db_modules()


@pytest.fixture
def settings():
    """Settings with defaults only; the environment is not consulted."""
    return RBACSettings(_env_file=None)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Synchronous session on a fresh in-memory database."""
    factory = sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False)
    session = factory()
    yield session
    session.rollback()
    session.close()


# =============================================================================
# SERVICES
# =============================================================================

@pytest.fixture
def hierarchy(db_session, settings):
    return RoleHierarchy(db_session, settings)


@pytest.fixture
def catalog(db_session, settings):
    return PermissionCatalog(db_session, settings)


@pytest.fixture
def grants(db_session):
    return RoleGrantService(db_session)


@pytest.fixture
def engine(db_session, settings):
    return AssignmentEngine(db_session, settings=settings)


@pytest.fixture
def resolver(db_session, settings):
    return PermissionResolver(db_session, settings)


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_user(db_session):
    """Insert a user row and return it."""
    sequence = count(1)

    def _make(email=None, is_active=True, first_name="Test", last_name=None):
        n = next(sequence)
        user = User(
            email=email or f"user{n}@example.com",
            first_name=first_name,
            last_name=last_name or f"User{n}",
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def make_role(hierarchy):
    """Create a role through the hierarchy service and return it."""

    async def _make(name, **fields):
        fields.setdefault("display_name", name.replace("_", " ").title())
        result = await hierarchy.create_role(RoleCreate(name=name, **fields))
        assert result.success, result.errors
        return result.data

    return _make


@pytest.fixture
def make_permission(catalog):
    """Create a permission through the catalog and return it."""

    async def _make(name, **fields):
        fields.setdefault("display_name", name.replace(".", " ").title())
        result = await catalog.create_permission(PermissionCreate(name=name, **fields))
        assert result.success, result.errors
        return result.data

    return _make
