"""Configuration module for the RBAC core."""

from .database import DatabaseSettings, get_database_settings
from .logging_config import configure_logging, get_logger
from .settings import RBACSettings, get_settings

__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "RBACSettings",
    "get_settings",
    "configure_logging",
    "get_logger",
]
