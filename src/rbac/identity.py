"""
Identity collaborator.

The assignment engine only needs to know whether a user exists; anything
else about users belongs to the authentication service.
"""

from typing import Optional, Protocol
from uuid import UUID

from sqlalchemy import select

from database.models import User
from database.transaction import scalar_one_or_none


class UserDirectory(Protocol):
    async def find_user_by_id(self, user_id: UUID) -> Optional[User]:
        ...


class SqlUserDirectory:
    """User lookups against the ``users`` table."""

    def __init__(self, db):
        self.db = db

    async def find_user_by_id(self, user_id: UUID) -> Optional[User]:
        return await scalar_one_or_none(self.db, select(User).where(User.user_id == user_id))
