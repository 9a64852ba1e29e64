"""Application settings using Pydantic Settings.

Centralized configuration for the RBAC authorization core.

All values can be overridden with environment variables prefixed with
``RBAC_`` (for example ``RBAC_BULK_ASSIGN_LIMIT=50``).
"""

import logging
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class RBACSettings(BaseSettings):
    """Authorization core settings."""

    model_config = SettingsConfigDict(
        env_prefix="RBAC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Hierarchy
    hierarchy_max_depth: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Hard cap on ancestor walks (hierarchy lookup, cycle check, inheritance)"
    )

    # Batch operations
    bulk_assign_limit: int = Field(
        default=100,
        ge=1,
        description="Maximum number of tuples accepted by a bulk role assignment"
    )

    # Pagination
    default_page_size: int = Field(default=10, ge=1, description="Default page size for searches")
    role_users_page_size: int = Field(default=50, ge=1, description="Default page size for role members")
    max_page_size: int = Field(default=100, ge=1, description="Upper bound for any page size")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON formatted logs")

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    def clamp_page_size(self, page_size: int) -> int:
        """Bound a caller supplied page size to [1, max_page_size]."""
        return max(1, min(page_size, self.max_page_size))


@lru_cache
def get_settings() -> RBACSettings:
    """
    Get cached RBAC settings instance.

    Returns:
        RBACSettings: Cached settings loaded from environment.
    """
    return RBACSettings()
