"""
Shared invariant maintenance for the RBAC services.

Helpers here run inside a caller's unit of work and never commit:
- derived counters are recomputed from the authoritative rows
- primary-role succession after a primary assignment goes away
- default-role exclusivity
- bounded ancestor walks over the parent-pointer tree
"""

import time
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_, select

from config.logging_config import get_logger
from database.transaction import flush, scalar, scalar_one_or_none, scalars

from .models import Permission, Role, RolePermission, UserRoleAssignment

logger = get_logger(__name__)


def tombstone_name(name: str, entity_id: UUID) -> str:
    """Mangled name that frees the unique slot of a soft-deleted row."""
    return f"{name}_deleted_{int(time.time())}_{entity_id.hex[:8]}"


def assignment_is_current(now: datetime):
    """SQL condition: assignment is flagged active and not past its expiry."""
    return and_(
        UserRoleAssignment.is_active.is_(True),
        or_(UserRoleAssignment.expires_at.is_(None), UserRoleAssignment.expires_at > now),
    )


def grant_is_current(now: datetime):
    """SQL condition: grant is flagged active and not past its expiry."""
    return and_(
        RolePermission.is_active.is_(True),
        or_(RolePermission.expires_at.is_(None), RolePermission.expires_at > now),
    )


async def lock_role(db, role_id: UUID) -> Optional[Role]:
    """Load a role row with SELECT ... FOR UPDATE."""
    stmt = select(Role).where(Role.role_id == role_id).with_for_update()
    return await scalar_one_or_none(db, stmt)


async def lock_permission(db, permission_id: UUID) -> Optional[Permission]:
    stmt = select(Permission).where(Permission.permission_id == permission_id).with_for_update()
    return await scalar_one_or_none(db, stmt)


async def recompute_user_count(db, role_id: UUID) -> int:
    """Set ``roles.user_count`` to the number of active assignments."""
    await flush(db)
    role = await lock_role(db, role_id)
    if role is None:
        return 0

    count = await scalar(
        db,
        select(func.count())
        .select_from(UserRoleAssignment)
        .where(
            UserRoleAssignment.role_id == role_id,
            UserRoleAssignment.is_active.is_(True),
        ),
    )
    role.user_count = count or 0
    await flush(db)
    return role.user_count


async def recompute_usage_count(db, permission_id: UUID) -> int:
    """Set ``permissions.usage_count`` to the number of active grants."""
    await flush(db)
    permission = await lock_permission(db, permission_id)
    if permission is None:
        return 0

    count = await scalar(
        db,
        select(func.count())
        .select_from(RolePermission)
        .where(
            RolePermission.permission_id == permission_id,
            RolePermission.is_active.is_(True),
        ),
    )
    permission.usage_count = count or 0
    await flush(db)
    return permission.usage_count


async def current_primary_assignments(db, user_id: UUID) -> List[UserRoleAssignment]:
    stmt = select(UserRoleAssignment).where(
        UserRoleAssignment.user_id == user_id,
        UserRoleAssignment.is_active.is_(True),
        UserRoleAssignment.is_primary.is_(True),
    )
    return await scalars(db, stmt)


async def demote_primary(db, user_id: UUID, keep_assignment_id: Optional[int] = None) -> int:
    """Clear the primary flag on the user's active assignments except one."""
    demoted = 0
    for assignment in await current_primary_assignments(db, user_id):
        if assignment.assignment_id == keep_assignment_id:
            continue
        assignment.is_primary = False
        demoted += 1
    if demoted:
        await flush(db)
    return demoted


async def promote_oldest_to_primary(db, user_id: UUID, now: Optional[datetime] = None) -> Optional[UserRoleAssignment]:
    """
    Make the oldest remaining current assignment the user's primary.

    No-op when the user still has a current primary assignment. Returns the
    promoted assignment, or None when nothing was promoted.
    """
    now = now or datetime.utcnow()
    await flush(db)

    existing = await scalar_one_or_none(
        db,
        select(UserRoleAssignment)
        .where(
            UserRoleAssignment.user_id == user_id,
            UserRoleAssignment.is_primary.is_(True),
            assignment_is_current(now),
        )
        .limit(1),
    )
    if existing is not None:
        return None

    successor = await scalar_one_or_none(
        db,
        select(UserRoleAssignment)
        .where(
            UserRoleAssignment.user_id == user_id,
            assignment_is_current(now),
        )
        .order_by(UserRoleAssignment.assigned_at.asc(), UserRoleAssignment.assignment_id.asc())
        .limit(1),
    )
    if successor is None:
        return None

    successor.is_primary = True
    await flush(db)
    logger.info(
        f"Promoted assignment {successor.assignment_id} to primary",
        extra={"extra_data": {"user_id": str(user_id), "role_id": str(successor.role_id)}},
    )
    return successor


async def clear_default_roles(db, exclude_role_id: Optional[UUID] = None) -> int:
    """Clear ``is_default`` on every role except ``exclude_role_id``."""
    stmt = select(Role).where(Role.is_default.is_(True))
    if exclude_role_id is not None:
        stmt = stmt.where(Role.role_id != exclude_role_id)

    cleared = 0
    for role in await scalars(db, stmt.with_for_update()):
        role.is_default = False
        cleared += 1
    if cleared:
        await flush(db)
    return cleared


async def ancestor_chain(db, role_id: UUID, max_depth: int) -> List[Role]:
    """
    Return ``[role, parent, grandparent, ...]``, at most ``max_depth`` long.

    Stops early on a missing row or a revisited id, so a corrupted chain
    still terminates.
    """
    chain: List[Role] = []
    seen = set()
    current_id = role_id

    while current_id is not None and len(chain) < max_depth:
        if current_id in seen:
            logger.error(f"Cycle detected in role hierarchy at {current_id}")
            break
        seen.add(current_id)

        role = await scalar_one_or_none(db, select(Role).where(Role.role_id == current_id))
        if role is None:
            break
        chain.append(role)
        current_id = role.parent_role_id

    return chain


async def would_create_cycle(db, role_id: UUID, new_parent_id: UUID, max_depth: int) -> bool:
    """True if making ``new_parent_id`` the parent of ``role_id`` closes a loop."""
    if role_id == new_parent_id:
        return True

    seen = set()
    current_id: Optional[UUID] = new_parent_id
    depth = 0
    while current_id is not None and depth < max_depth:
        if current_id == role_id or current_id in seen:
            return True
        seen.add(current_id)
        current_id = await scalar(db, select(Role.parent_role_id).where(Role.role_id == current_id))
        depth += 1
    return False
