"""Database configuration using Pydantic Settings.

PostgreSQL is the production store; SQLite backs development and tests.
Every field can be overridden with a ``DB_`` prefixed environment variable.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """
    Connection settings for the relational store behind the RBAC core.

    Example environment variables:
        DB_DRIVER=postgresql+asyncpg
        DB_HOST=db.internal
        DB_NAME=backoffice
        DB_USER=rbac
        DB_PASSWORD=secret
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    driver: str = Field(
        default="sqlite+aiosqlite",
        description="SQLAlchemy async driver (postgresql+asyncpg or sqlite+aiosqlite)"
    )

    # PostgreSQL
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    name: str = Field(default="backoffice", description="Database name")
    user: str = Field(default="", description="Database user")
    password: str = Field(default="", description="Database password")

    # SQLite
    sqlite_path: Path = Field(
        default=Path("data/backoffice.db"),
        description="Path to the SQLite database file"
    )

    # Pool
    pool_size: int = Field(default=10, ge=1, le=100, description="Persistent connections in the pool")
    max_overflow: int = Field(default=20, ge=0, le=100, description="Connections allowed above pool_size")
    pool_timeout: int = Field(default=30, ge=1, description="Seconds to wait for a pooled connection")
    pool_recycle: int = Field(default=1800, ge=60, description="Seconds before a connection is recycled")
    pool_pre_ping: bool = Field(default=True, description="Ping connections before handing them out")

    echo_sql: bool = Field(default=False, description="Log every SQL statement")
    query_timeout: int = Field(default=30, ge=1, description="Statement timeout in seconds")

    @computed_field
    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite."""
        return "sqlite" in self.driver.lower()

    @computed_field
    @property
    def is_postgres(self) -> bool:
        """Check if using PostgreSQL."""
        return "postgres" in self.driver.lower()

    def _auth_fragment(self) -> str:
        if not self.user:
            return ""
        if self.password:
            return f"{self.user}:{self.password}@"
        return f"{self.user}@"

    @computed_field
    @property
    def async_url(self) -> str:
        """Database URL for the async engine."""
        if self.is_sqlite:
            return f"sqlite+aiosqlite:///{self.sqlite_path.absolute()}"
        return f"{self.driver}://{self._auth_fragment()}{self.host}:{self.port}/{self.name}"

    def get_connect_args(self) -> dict:
        """Driver specific connection arguments."""
        if self.is_sqlite:
            return {"check_same_thread": False, "timeout": self.query_timeout}
        return {"command_timeout": self.query_timeout}


@lru_cache
def get_database_settings() -> DatabaseSettings:
    """
    Get cached database settings instance.

    Returns:
        DatabaseSettings: Cached settings loaded from environment.
    """
    return DatabaseSettings()
