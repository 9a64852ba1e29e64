"""
Effective permission resolution.

Resolution Algorithm:
1. Load the user's current assignments (active flag set, not past expiry) on
   active, non-deleted roles
2. Collect each assigned role's current grants of active permissions
3. Optionally walk each assigned role's ancestor chain, capped at
   ``hierarchy_max_depth``, and union in the ancestors' grants
4. Return the de-duplicated union

There is no override model: the result is a pure union. Declared permission
dependencies (``requires_permissions``) are not expanded.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from config.logging_config import get_logger
from config.settings import RBACSettings, get_settings
from database.transaction import scalars

from .invariants import ancestor_chain, assignment_is_current, grant_is_current
from .models import Permission, Role, RolePermission, UserRoleAssignment

logger = get_logger(__name__)


@dataclass
class PermissionSource:
    """A role that contributed a permission to a resolution."""
    role_id: UUID
    role_name: str
    inherited: bool


@dataclass
class ResolvedPermissions:
    """Result of permission resolution."""
    user_id: UUID
    permissions: Set[str]
    roles: List[str]
    primary_role: Optional[str]
    include_inherited: bool
    resolved_at: datetime
    modules: Optional[Dict[str, List[str]]] = None
    sources: Optional[Dict[str, List[PermissionSource]]] = None

    def __contains__(self, permission: str) -> bool:
        return permission in self.permissions

    def sorted(self) -> List[str]:
        return sorted(self.permissions)


class PermissionResolver:
    """Computes the effective permissions of a user."""

    def __init__(self, db, settings: Optional[RBACSettings] = None):
        self.db = db
        self.settings = settings or get_settings()

    async def effective_permissions(
        self,
        user_id: UUID,
        include_inherited: bool = False,
        group_by_module: bool = False,
        include_role_info: bool = False,
    ) -> ResolvedPermissions:
        """
        Resolve effective permissions for a user.

        Args:
            user_id: User ID
            include_inherited: Also union in the grants of every assigned
                role's ancestors
            group_by_module: Fill ``modules`` with ``{module: [names]}``
            include_role_info: Fill ``sources`` with the roles that granted
                each permission

        Returns:
            ResolvedPermissions with the union of all contributing grants
        """
        now = datetime.utcnow()
        assignments = await self._current_assignments(user_id, now)

        role_names: List[str] = []
        primary_role: Optional[str] = None
        # role_id -> (role, inherited) in resolution order; direct wins over inherited
        contributing: Dict[UUID, tuple] = {}

        for assignment in assignments:
            role = assignment.role
            role_names.append(role.name)
            if assignment.is_primary:
                primary_role = role.name
            contributing[role.role_id] = (role, False)

        if include_inherited:
            for assignment in assignments:
                chain = await ancestor_chain(self.db, assignment.role_id, self.settings.hierarchy_max_depth)
                for ancestor in chain[1:]:
                    if not ancestor.is_active or ancestor.is_deleted:
                        continue
                    contributing.setdefault(ancestor.role_id, (ancestor, True))

        grants = await self._grants_for_roles(list(contributing), now)

        permissions: Set[str] = set()
        modules: Dict[str, Set[str]] = defaultdict(set)
        sources: Dict[str, List[PermissionSource]] = defaultdict(list)
        for role_id, (role, inherited) in contributing.items():
            for permission in grants.get(role_id, []):
                permissions.add(permission.name)
                modules[permission.module].add(permission.name)
                if include_role_info:
                    sources[permission.name].append(
                        PermissionSource(role_id=role.role_id, role_name=role.name, inherited=inherited)
                    )

        logger.debug(
            f"Resolved {len(permissions)} permissions for user {user_id}",
            extra={"extra_data": {"roles": role_names, "include_inherited": include_inherited}},
        )
        return ResolvedPermissions(
            user_id=user_id,
            permissions=permissions,
            roles=role_names,
            primary_role=primary_role,
            include_inherited=include_inherited,
            resolved_at=now,
            modules={module: sorted(names) for module, names in sorted(modules.items())} if group_by_module else None,
            sources=dict(sources) if include_role_info else None,
        )

    async def role_permissions(self, role_id: UUID, include_inherited: bool = False) -> Set[str]:
        """Permission names a single role confers, optionally with its ancestors' grants."""
        now = datetime.utcnow()
        if include_inherited:
            chain = await ancestor_chain(self.db, role_id, self.settings.hierarchy_max_depth)
            role_ids = [
                role.role_id for role in chain
                if role.is_active and not role.is_deleted
            ]
        else:
            role_ids = [role_id]

        grants = await self._grants_for_roles(role_ids, now)
        return {permission.name for perms in grants.values() for permission in perms}

    async def user_has_permission(self, user_id: UUID, permission: str, include_inherited: bool = True) -> bool:
        resolved = await self.effective_permissions(user_id, include_inherited=include_inherited)
        return permission in resolved.permissions

    def check_permission(self, resolved: ResolvedPermissions, permission: str) -> bool:
        """Check if resolved permissions include a specific permission."""
        return permission in resolved.permissions

    def check_any_permission(self, resolved: ResolvedPermissions, permissions: Iterable[str]) -> bool:
        return bool(resolved.permissions.intersection(permissions))

    def check_all_permissions(self, resolved: ResolvedPermissions, permissions: Iterable[str]) -> bool:
        return all(p in resolved.permissions for p in permissions)

    async def _current_assignments(self, user_id: UUID, now: datetime) -> List[UserRoleAssignment]:
        stmt = (
            select(UserRoleAssignment)
            .join(Role, Role.role_id == UserRoleAssignment.role_id)
            .options(selectinload(UserRoleAssignment.role))
            .where(
                UserRoleAssignment.user_id == user_id,
                assignment_is_current(now),
                Role.is_active.is_(True),
                Role.deleted_at.is_(None),
            )
            .order_by(
                UserRoleAssignment.is_primary.desc(),
                Role.priority.asc(),
                UserRoleAssignment.assigned_at.asc(),
            )
        )
        return await scalars(self.db, stmt)

    async def _grants_for_roles(self, role_ids: List[UUID], now: datetime) -> Dict[UUID, List[Permission]]:
        if not role_ids:
            return {}

        stmt = (
            select(RolePermission)
            .join(Permission, Permission.permission_id == RolePermission.permission_id)
            .options(selectinload(RolePermission.permission))
            .where(
                RolePermission.role_id.in_(role_ids),
                grant_is_current(now),
                Permission.is_active.is_(True),
                Permission.deleted_at.is_(None),
            )
        )
        by_role: Dict[UUID, List[Permission]] = defaultdict(list)
        for grant in await scalars(self.db, stmt):
            by_role[grant.role_id].append(grant.permission)
        return by_role
