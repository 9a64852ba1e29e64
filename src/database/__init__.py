"""
Database layer for the RBAC core.

This module provides:
- Declarative base, portable JSON type and the users table
- Async engine and session factory
- Unit-of-work helpers that work with sync and async sessions
"""

from .models import JSONB, Base, User
from .transaction import atomic, execute, flush, maybe_await

__all__ = [
    "Base",
    "JSONB",
    "User",
    "atomic",
    "execute",
    "flush",
    "maybe_await",
]
