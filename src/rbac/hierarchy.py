"""
Role hierarchy service.

Roles form a parent-pointer tree: each role has at most one parent, and the
chain of parents must never loop back. Cycle checks and lookups walk the
chain with a hard depth cap, so even a corrupted chain terminates.

At most one role is the default role at any time; setting a new default
clears the flag everywhere else within the same unit of work.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import func, or_, select

from config.logging_config import get_logger
from config.settings import RBACSettings, get_settings
from database.transaction import atomic, flush, scalar, scalar_one_or_none, scalars

from .exceptions import RBACErrorCode
from .invariants import (
    ancestor_chain,
    clear_default_roles,
    grant_is_current,
    lock_role,
    promote_oldest_to_primary,
    recompute_usage_count,
    recompute_user_count,
    tombstone_name,
    would_create_cycle,
)
from .models import Role, RolePermission, UserRoleAssignment
from .results import Page, ServiceResult
from .schemas import RoleCreate, RoleDelete, RoleSearch, RoleUpdate

logger = get_logger(__name__)

ROLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*[a-z0-9]$")

_SORT_COLUMNS = {
    "name": Role.name,
    "display_name": Role.display_name,
    "priority": Role.priority,
    "created_at": Role.created_at,
    "user_count": Role.user_count,
}


class RoleHierarchy:
    """Database-backed role management."""

    def __init__(self, db, settings: Optional[RBACSettings] = None):
        self.db = db
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def find_role(self, role_id: UUID, include_deleted: bool = False) -> Optional[Role]:
        stmt = select(Role).where(Role.role_id == role_id)
        if not include_deleted:
            stmt = stmt.where(Role.deleted_at.is_(None))
        return await scalar_one_or_none(self.db, stmt)

    async def get_role(
        self,
        role_id: UUID,
        include_parent: bool = False,
        include_children: bool = False,
    ) -> Optional[dict]:
        """Serialized view of a role, optionally with its parent and children."""
        role = await self.find_role(role_id)
        if role is None:
            return None

        view = role.to_dict()
        if include_parent:
            parent = await self.find_role(role.parent_role_id) if role.parent_role_id else None
            view["parent"] = parent.to_dict() if parent else None
        if include_children:
            children = await self.get_children(role.role_id, include_inactive=True)
            view["children"] = [child.to_dict() for child in children]
        return view

    async def get_role_by_name(self, name: str) -> Optional[Role]:
        stmt = select(Role).where(Role.name == name.strip().lower(), Role.deleted_at.is_(None))
        return await scalar_one_or_none(self.db, stmt)

    async def get_children(self, parent_id: UUID, include_inactive: bool = False) -> list[Role]:
        stmt = select(Role).where(Role.parent_role_id == parent_id, Role.deleted_at.is_(None))
        if not include_inactive:
            stmt = stmt.where(Role.is_active.is_(True))
        stmt = stmt.order_by(Role.priority.desc(), Role.name.asc())
        return await scalars(self.db, stmt)

    async def get_hierarchy(self, role_id: UUID) -> list[Role]:
        """Return ``[role, parent, grandparent, ...]`` up to the depth cap."""
        return await ancestor_chain(self.db, role_id, self.settings.hierarchy_max_depth)

    async def get_default_role(self) -> Optional[Role]:
        stmt = (
            select(Role)
            .where(
                Role.is_default.is_(True),
                Role.is_active.is_(True),
                Role.deleted_at.is_(None),
            )
            .order_by(Role.priority.desc(), Role.created_at.asc())
            .limit(1)
        )
        return await scalar_one_or_none(self.db, stmt)

    async def search_roles(
        self,
        filters: Optional[RoleSearch] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page[Role]:
        filters = filters or RoleSearch()
        page = max(1, page)
        page_size = self.settings.clamp_page_size(page_size or self.settings.default_page_size)

        conditions = [Role.deleted_at.is_(None)]
        if filters.search:
            term = f"%{filters.search}%"
            conditions.append(
                or_(
                    Role.name.ilike(term),
                    Role.display_name.ilike(term),
                    Role.description.ilike(term),
                )
            )
        if filters.is_active is not None:
            conditions.append(Role.is_active.is_(filters.is_active))
        if filters.is_system_role is not None:
            conditions.append(Role.is_system_role.is_(filters.is_system_role))
        if filters.is_default is not None:
            conditions.append(Role.is_default.is_(filters.is_default))
        if filters.roots_only:
            conditions.append(Role.parent_role_id.is_(None))
        elif filters.parent_role_id is not None:
            conditions.append(Role.parent_role_id == filters.parent_role_id)
        if filters.has_users is not None:
            conditions.append(Role.user_count > 0 if filters.has_users else Role.user_count == 0)

        total = await scalar(self.db, select(func.count()).select_from(Role).where(*conditions))

        sort_column = _SORT_COLUMNS[filters.sort_by]
        order = sort_column.desc() if filters.sort_order == "desc" else sort_column.asc()
        stmt = (
            select(Role)
            .where(*conditions)
            .order_by(order, Role.name.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = await scalars(self.db, stmt)
        return Page(items=items, page=page, page_size=page_size, total=total or 0)

    async def get_statistics(self) -> dict:
        live = Role.deleted_at.is_(None)
        roles = await scalars(self.db, select(Role).where(live))

        total_assignments = sum(role.user_count or 0 for role in roles)
        return {
            "total_roles": len(roles),
            "active_roles": sum(1 for role in roles if role.is_active),
            "system_roles": sum(1 for role in roles if role.is_system_role),
            "default_roles": sum(1 for role in roles if role.is_default),
            "root_roles": sum(1 for role in roles if role.parent_role_id is None),
            "roles_with_users": sum(1 for role in roles if (role.user_count or 0) > 0),
            "total_user_assignments": total_assignments,
            "avg_users_per_role": round(total_assignments / len(roles), 2) if roles else 0.0,
            "max_users_in_role": max((role.user_count or 0 for role in roles), default=0),
        }

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create_role(self, data: RoleCreate, created_by: Optional[UUID] = None) -> ServiceResult:
        if not ROLE_NAME_PATTERN.match(data.name):
            return ServiceResult.fail(
                RBACErrorCode.VALIDATION,
                "Invalid role name",
                "Role name must start with a letter, contain only lowercase letters, "
                "numbers and underscores, and not end with an underscore",
            )

        async with atomic(self.db):
            if await self._name_taken(data.name):
                return ServiceResult.fail(
                    RBACErrorCode.CONFLICT,
                    "Role name already exists",
                    f"Role '{data.name}' already exists",
                )

            if data.parent_role_id is not None:
                parent = await self.find_role(data.parent_role_id)
                if parent is None:
                    return ServiceResult.fail(
                        RBACErrorCode.NOT_FOUND,
                        "Parent role not found",
                        f"No role with id {data.parent_role_id}",
                    )

            if data.is_default:
                await clear_default_roles(self.db)

            role = Role(
                name=data.name,
                display_name=data.display_name,
                description=data.description,
                parent_role_id=data.parent_role_id,
                is_system_role=data.is_system_role,
                is_active=data.is_active,
                is_default=data.is_default,
                max_users=data.max_users,
                user_count=0,
                color_code=data.color_code,
                icon=data.icon,
                priority=data.priority,
                created_by=created_by,
                updated_by=created_by,
            )
            self.db.add(role)
            await flush(self.db)

        logger.info(f"Role created: {role.name}", extra={"extra_data": {"role_id": str(role.role_id)}})
        return ServiceResult.ok("Role created", data=role)

    async def update_role(
        self,
        role_id: UUID,
        data: RoleUpdate,
        updated_by: Optional[UUID] = None,
    ) -> ServiceResult:
        changes = data.changes()

        async with atomic(self.db):
            role = await lock_role(self.db, role_id)
            if role is None or role.is_deleted:
                return ServiceResult.fail(RBACErrorCode.NOT_FOUND, "Role not found", f"No role with id {role_id}")

            if "name" in changes:
                if changes["name"] != role.name:
                    return ServiceResult.fail(
                        RBACErrorCode.VALIDATION,
                        "Role name cannot be changed",
                        "Role names are immutable after creation",
                    )
                changes.pop("name")

            if not changes:
                return ServiceResult.fail(RBACErrorCode.VALIDATION, "No valid fields to update")

            if role.is_system_role and "display_name" in changes and changes["display_name"] != role.display_name:
                return ServiceResult.fail(
                    RBACErrorCode.PROTECTED_ENTITY,
                    "Cannot rename system role",
                    f"Role '{role.name}' is a system role",
                )

            if changes.get("parent_role_id") is not None:
                new_parent_id = changes["parent_role_id"]
                if new_parent_id == role_id:
                    return ServiceResult.fail(
                        RBACErrorCode.CONFLICT,
                        "Role cannot be its own parent",
                    )
                if await self.find_role(new_parent_id) is None:
                    return ServiceResult.fail(
                        RBACErrorCode.NOT_FOUND,
                        "Parent role not found",
                        f"No role with id {new_parent_id}",
                    )
                if await would_create_cycle(self.db, role_id, new_parent_id, self.settings.hierarchy_max_depth):
                    logger.warning(
                        f"Rejected circular hierarchy: {role.name} under {new_parent_id}",
                        extra={"extra_data": {"role_id": str(role_id)}},
                    )
                    return ServiceResult.fail(
                        RBACErrorCode.CONFLICT,
                        "Cannot create circular role hierarchy",
                        f"Role {new_parent_id} is already a descendant of '{role.name}'",
                    )

            if changes.get("max_users") is not None and changes["max_users"] < (role.user_count or 0):
                return ServiceResult.fail(
                    RBACErrorCode.CONFLICT,
                    "Cannot set max users below current user count",
                    f"Role '{role.name}' has {role.user_count} users",
                )

            if changes.get("is_default") is True:
                await clear_default_roles(self.db, exclude_role_id=role_id)

            for field_name, value in changes.items():
                setattr(role, field_name, value)
            role.updated_by = updated_by
            role.updated_at = datetime.utcnow()
            await flush(self.db)

        logger.info(f"Role updated: {role.name}", extra={"extra_data": {"fields": sorted(changes)}})
        return ServiceResult.ok("Role updated", data=role)

    async def delete_role(
        self,
        role_id: UUID,
        options: Optional[RoleDelete] = None,
        deleted_by: Optional[UUID] = None,
    ) -> ServiceResult:
        """
        Soft-delete a role.

        Order of operations inside one unit of work:
        1. reject system roles unless forced
        2. reject roles with users unless a replacement is given or forced
        3. move active assignments to the replacement, or revoke them (force)
        4. revoke the role's permission grants
        5. detach child roles
        6. tombstone the row
        """
        options = options or RoleDelete()

        async with atomic(self.db):
            role = await lock_role(self.db, role_id)
            if role is None or role.is_deleted:
                return ServiceResult.fail(RBACErrorCode.NOT_FOUND, "Role not found", f"No role with id {role_id}")

            if role.is_system_role and not options.force:
                return ServiceResult.fail(
                    RBACErrorCode.PROTECTED_ENTITY,
                    "Cannot delete system roles",
                    f"Role '{role.name}' is a system role",
                )

            assignments = await scalars(
                self.db,
                select(UserRoleAssignment).where(
                    UserRoleAssignment.role_id == role_id,
                    UserRoleAssignment.is_active.is_(True),
                ),
            )

            if assignments and options.replacement_role_id is None and not options.force:
                return ServiceResult.fail(
                    RBACErrorCode.IN_USE,
                    "Cannot delete role with assigned users",
                    "Provide a replacement role or use force delete",
                )

            replacement = None
            if options.replacement_role_id is not None:
                if options.replacement_role_id == role_id:
                    return ServiceResult.fail(
                        RBACErrorCode.VALIDATION,
                        "Replacement role must differ from the deleted role",
                    )
                replacement = await lock_role(self.db, options.replacement_role_id)
                if replacement is None or replacement.is_deleted:
                    return ServiceResult.fail(
                        RBACErrorCode.NOT_FOUND,
                        "Replacement role not found",
                        f"No role with id {options.replacement_role_id}",
                    )

            moved = revoked = 0
            if assignments and replacement is not None:
                now = datetime.utcnow()
                plan = await self._plan_reassignment(assignments, replacement.role_id, now)
                incoming = sum(
                    1 for assignment, current, _ in plan
                    if current is None and not assignment.is_expired(now)
                )
                stale = sum(len(rows) for _, _, rows in plan)
                projected = (replacement.user_count or 0) - stale + incoming
                if replacement.max_users is not None and projected > replacement.max_users:
                    return ServiceResult.fail(
                        RBACErrorCode.CONFLICT,
                        "Replacement role capacity exceeded",
                        f"Role '{replacement.name}' cannot take {incoming} more users",
                    )
                moved, revoked = await self._reassign(plan, replacement.role_id, deleted_by, now)
                await recompute_user_count(self.db, replacement.role_id)
            elif assignments:
                revoked = await self._revoke_all(assignments, deleted_by)

            revoked_grants = await self._revoke_grants(role_id, deleted_by)

            children = await scalars(self.db, select(Role).where(Role.parent_role_id == role_id))
            for child in children:
                child.parent_role_id = None

            original_name = role.name
            now = datetime.utcnow()
            role.deleted_at = now
            role.is_active = False
            role.is_default = False
            role.name = tombstone_name(original_name, role.role_id)
            role.updated_by = deleted_by
            role.updated_at = now
            await recompute_user_count(self.db, role_id)

        logger.info(
            f"Role {original_name} soft deleted",
            extra={"extra_data": {
                "role_id": str(role_id),
                "reassigned": moved,
                "revoked_assignments": revoked,
                "revoked_grants": revoked_grants,
                "detached_children": len(children),
            }},
        )
        return ServiceResult.ok(
            "Role deleted",
            data={
                "reassigned_users": moved,
                "revoked_assignments": revoked,
                "revoked_grants": revoked_grants,
                "detached_children": len(children),
            },
        )

    async def recompute_user_count(self, role_id: UUID) -> int:
        async with atomic(self.db):
            return await recompute_user_count(self.db, role_id)

    async def duplicate_role(
        self,
        role_id: UUID,
        name: str,
        display_name: Optional[str] = None,
        copy_permissions: bool = True,
        created_by: Optional[UUID] = None,
    ) -> ServiceResult:
        """Copy a role under a new name. The copy is never a system or default role."""
        source = await self.find_role(role_id)
        if source is None:
            return ServiceResult.fail(RBACErrorCode.NOT_FOUND, "Role not found", f"No role with id {role_id}")

        try:
            data = RoleCreate(
                name=name,
                display_name=display_name or f"{source.display_name} (Copy)"[:100],
                description=source.description,
                parent_role_id=source.parent_role_id,
                max_users=source.max_users,
                color_code=source.color_code,
                icon=source.icon,
                priority=source.priority,
            )
        except ValidationError as e:
            return ServiceResult.fail(
                RBACErrorCode.VALIDATION,
                "Invalid role data",
                *[error["msg"] for error in e.errors()],
            )

        created = await self.create_role(data, created_by=created_by)
        if not created.success or not copy_permissions:
            return created

        copy = created.data
        now = datetime.utcnow()
        async with atomic(self.db):
            grants = await scalars(
                self.db,
                select(RolePermission).where(RolePermission.role_id == role_id, grant_is_current(now)),
            )
            for grant in grants:
                self.db.add(
                    RolePermission(
                        role_id=copy.role_id,
                        permission_id=grant.permission_id,
                        granted_by=created_by,
                        granted_at=now,
                        conditions=grant.conditions,
                        expires_at=grant.expires_at,
                    )
                )
            await flush(self.db)
            for grant in grants:
                await recompute_usage_count(self.db, grant.permission_id)

        logger.info(f"Role {source.name} duplicated as {copy.name}", extra={"extra_data": {"permissions": len(grants)}})
        return ServiceResult.ok("Role duplicated", data=copy)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _name_taken(self, name: str) -> bool:
        existing = await scalar(self.db, select(Role.role_id).where(Role.name == name))
        return existing is not None

    async def _plan_reassignment(self, assignments, replacement_id: UUID, now: datetime):
        """
        Pair each assignment with the user's rows on the replacement role.

        Each plan entry is ``(assignment, current, stale)``: ``current`` is the
        user's live replacement assignment, if any, and ``stale`` holds rows on
        the replacement still flagged active but past their expiry.
        """
        plan = []
        for assignment in assignments:
            held = await scalars(
                self.db,
                select(UserRoleAssignment).where(
                    UserRoleAssignment.user_id == assignment.user_id,
                    UserRoleAssignment.role_id == replacement_id,
                    UserRoleAssignment.is_active.is_(True),
                ),
            )
            current = next((row for row in held if not row.is_expired(now)), None)
            stale = [row for row in held if row.is_expired(now)]
            plan.append((assignment, current, stale))
        return plan

    async def _reassign(self, plan, replacement_id: UUID, actor: Optional[UUID], now: datetime) -> tuple[int, int]:
        moved = revoked = 0
        lost_primary = set()
        for assignment, current, stale in plan:
            for row in stale:
                if row.is_primary:
                    lost_primary.add(row.user_id)
                self._stamp_revoked(row, actor, "expired", now)

            if assignment.is_expired(now):
                if assignment.is_primary:
                    lost_primary.add(assignment.user_id)
                self._stamp_revoked(assignment, actor, "expired", now)
                revoked += 1
            elif current is None:
                assignment.role_id = replacement_id
                moved += 1
            else:
                # User already holds the replacement; keep that row and carry primary over.
                was_primary = assignment.is_primary
                self._stamp_revoked(assignment, actor, "role_deleted", now)
                if was_primary:
                    current.is_primary = True
                revoked += 1
        await flush(self.db)

        for user_id in lost_primary:
            await promote_oldest_to_primary(self.db, user_id, now)
        return moved, revoked

    async def _revoke_all(self, assignments, actor: Optional[UUID]) -> int:
        now = datetime.utcnow()
        primary_users = set()
        for assignment in assignments:
            if assignment.is_primary:
                primary_users.add(assignment.user_id)
            self._stamp_revoked(assignment, actor, "role_deleted", now)
        await flush(self.db)

        for user_id in primary_users:
            await promote_oldest_to_primary(self.db, user_id, now)
        return len(assignments)

    async def _revoke_grants(self, role_id: UUID, actor: Optional[UUID]) -> int:
        grants = await scalars(
            self.db,
            select(RolePermission).where(
                RolePermission.role_id == role_id,
                RolePermission.is_active.is_(True),
            ),
        )
        now = datetime.utcnow()
        for grant in grants:
            grant.is_active = False
            grant.revoked_by = actor
            grant.revoked_at = now
            grant.revocation_reason = "role_deleted"
        await flush(self.db)

        for grant in grants:
            await recompute_usage_count(self.db, grant.permission_id)
        return len(grants)

    @staticmethod
    def _stamp_revoked(assignment: UserRoleAssignment, actor: Optional[UUID], reason: str, now: datetime) -> None:
        assignment.is_active = False
        assignment.is_primary = False
        assignment.revoked_by = actor
        assignment.revoked_at = now
        assignment.revocation_reason = reason
