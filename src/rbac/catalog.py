"""
Permission catalog service.

Permissions are named ``module.action``. The ``module`` and ``action``
columns are denormalized copies of the two halves of the name and are kept
in agreement with it on every write.

``usage_count`` is the number of active role grants referencing the
permission; it is recomputed, never edited.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import distinct, func, or_, select

from config.logging_config import get_logger
from config.settings import RBACSettings, get_settings
from database.transaction import atomic, flush, scalar, scalar_one_or_none, scalars

from .exceptions import RBACErrorCode
from .invariants import lock_permission, recompute_usage_count, tombstone_name
from .models import Permission, RolePermission
from .results import Page, ServiceResult
from .schemas import ModulePermissionsCreate, PermissionCreate, PermissionSearch, PermissionUpdate

logger = get_logger(__name__)

PERMISSION_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*\.[a-z][a-z0-9_]*$")
PART_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


def split_permission_name(name: str) -> tuple[str, str]:
    module, action = name.split(".", 1)
    return module, action


def _humanize(value: str) -> str:
    return value.replace("_", " ").title()


def group_permissions(permissions: list[Permission], by: str) -> "OrderedDict[str, list[Permission]]":
    """Group permissions by ``module`` or ``group`` preserving input order."""
    grouped: "OrderedDict[str, list[Permission]]" = OrderedDict()
    for permission in permissions:
        if by == "module":
            key = permission.module
        else:
            key = permission.group_name or "ungrouped"
        grouped.setdefault(key, []).append(permission)
    return grouped


class PermissionCatalog:
    """Database-backed permission catalog."""

    def __init__(self, db, settings: Optional[RBACSettings] = None):
        self.db = db
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def get_permission(self, permission_id: UUID, include_deleted: bool = False) -> Optional[Permission]:
        stmt = select(Permission).where(Permission.permission_id == permission_id)
        if not include_deleted:
            stmt = stmt.where(Permission.deleted_at.is_(None))
        return await scalar_one_or_none(self.db, stmt)

    async def get_permission_by_name(self, name: str) -> Optional[Permission]:
        stmt = select(Permission).where(
            Permission.name == name.strip().lower(),
            Permission.deleted_at.is_(None),
        )
        return await scalar_one_or_none(self.db, stmt)

    async def list_by_module(self, module: str, include_inactive: bool = False) -> list[Permission]:
        stmt = select(Permission).where(
            Permission.module == module.strip().lower(),
            Permission.deleted_at.is_(None),
        )
        if not include_inactive:
            stmt = stmt.where(Permission.is_active.is_(True))
        stmt = stmt.order_by(Permission.sort_order.asc(), Permission.name.asc())
        return await scalars(self.db, stmt)

    async def grouped_by_module(self, include_inactive: bool = False) -> dict[str, list[Permission]]:
        stmt = select(Permission).where(Permission.deleted_at.is_(None))
        if not include_inactive:
            stmt = stmt.where(Permission.is_active.is_(True))
        stmt = stmt.order_by(Permission.module.asc(), Permission.sort_order.asc(), Permission.name.asc())
        return dict(group_permissions(await scalars(self.db, stmt), "module"))

    async def get_available_modules(self) -> list[str]:
        stmt = (
            select(distinct(Permission.module))
            .where(Permission.deleted_at.is_(None), Permission.is_active.is_(True))
            .order_by(Permission.module.asc())
        )
        return await scalars(self.db, stmt)

    async def get_unused_permissions(self, include_system: bool = False, limit: int = 50) -> list[Permission]:
        stmt = select(Permission).where(
            Permission.usage_count == 0,
            Permission.is_active.is_(True),
            Permission.deleted_at.is_(None),
        )
        if not include_system:
            stmt = stmt.where(Permission.is_system_permission.is_(False))
        stmt = stmt.order_by(Permission.created_at.desc()).limit(self.settings.clamp_page_size(limit))
        return await scalars(self.db, stmt)

    async def search_permissions(
        self,
        filters: Optional[PermissionSearch] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page[Permission]:
        """
        Filter the catalog with AND semantics.

        When ``filters.group_by`` is set the page is ordered by that key and
        ``Page.groups`` holds the same items grouped by it.
        """
        filters = filters or PermissionSearch()
        page = max(1, page)
        page_size = self.settings.clamp_page_size(page_size or self.settings.default_page_size)

        conditions = [Permission.deleted_at.is_(None)]
        if filters.search:
            term = f"%{filters.search}%"
            conditions.append(
                or_(
                    Permission.name.ilike(term),
                    Permission.display_name.ilike(term),
                    Permission.description.ilike(term),
                )
            )
        if filters.module:
            conditions.append(Permission.module == filters.module.strip().lower())
        if filters.action:
            conditions.append(Permission.action == filters.action.strip().lower())
        if filters.access_level is not None:
            conditions.append(Permission.access_level == filters.access_level)
        if filters.scope is not None:
            conditions.append(Permission.scope == filters.scope)
        if filters.group_name:
            conditions.append(Permission.group_name == filters.group_name)
        if filters.is_active is not None:
            conditions.append(Permission.is_active.is_(filters.is_active))
        if filters.is_system_permission is not None:
            conditions.append(Permission.is_system_permission.is_(filters.is_system_permission))
        if filters.has_usage is not None:
            conditions.append(Permission.usage_count > 0 if filters.has_usage else Permission.usage_count == 0)

        total = await scalar(self.db, select(func.count()).select_from(Permission).where(*conditions))

        if filters.group_by == "group":
            ordering = (Permission.group_name.asc(), Permission.sort_order.asc(), Permission.name.asc())
        else:
            ordering = (Permission.module.asc(), Permission.sort_order.asc(), Permission.name.asc())

        stmt = (
            select(Permission)
            .where(*conditions)
            .order_by(*ordering)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = await scalars(self.db, stmt)
        groups = dict(group_permissions(items, filters.group_by)) if filters.group_by else None
        return Page(items=items, page=page, page_size=page_size, total=total or 0, groups=groups)

    async def get_statistics(self) -> dict:
        permissions = await scalars(self.db, select(Permission).where(Permission.deleted_at.is_(None)))

        modules: dict[str, dict] = {}
        for permission in permissions:
            entry = modules.setdefault(
                permission.module,
                {"module": permission.module, "permission_count": 0, "active_count": 0, "total_usage": 0},
            )
            entry["permission_count"] += 1
            entry["active_count"] += 1 if permission.is_active else 0
            entry["total_usage"] += permission.usage_count or 0

        total_usage = sum(permission.usage_count or 0 for permission in permissions)
        return {
            "total_permissions": len(permissions),
            "active_permissions": sum(1 for p in permissions if p.is_active),
            "system_permissions": sum(1 for p in permissions if p.is_system_permission),
            "permissions_in_use": sum(1 for p in permissions if (p.usage_count or 0) > 0),
            "unique_modules": len(modules),
            "unique_groups": len({p.group_name for p in permissions if p.group_name}),
            "total_role_assignments": total_usage,
            "avg_usage_per_permission": round(total_usage / len(permissions), 2) if permissions else 0.0,
            "max_usage_count": max((p.usage_count or 0 for p in permissions), default=0),
            "module_breakdown": sorted(
                modules.values(),
                key=lambda entry: (-entry["permission_count"], entry["module"]),
            ),
        }

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create_permission(self, data: PermissionCreate, created_by: Optional[UUID] = None) -> ServiceResult:
        problem = self._check_name(data.name, data.module, data.action)
        if problem:
            return ServiceResult.fail(RBACErrorCode.VALIDATION, "Invalid permission name", problem)
        module, action = split_permission_name(data.name)

        async with atomic(self.db):
            if await self._name_taken(data.name):
                return ServiceResult.fail(
                    RBACErrorCode.CONFLICT,
                    "Permission name already exists",
                    f"Permission '{data.name}' already exists",
                )

            permission = Permission(
                name=data.name,
                display_name=data.display_name,
                description=data.description,
                module=module,
                action=action,
                resource=data.resource,
                is_system_permission=data.is_system_permission,
                is_active=data.is_active,
                group_name=data.group_name,
                sort_order=data.sort_order,
                icon=data.icon,
                color_code=data.color_code,
                access_level=data.access_level,
                scope=data.scope,
                requires_permissions=[str(pid) for pid in data.requires_permissions],
                usage_count=0,
                created_by=created_by,
                updated_by=created_by,
            )
            self.db.add(permission)
            await flush(self.db)

        logger.info(
            f"Permission created: {permission.name}",
            extra={"extra_data": {"permission_id": str(permission.permission_id)}},
        )
        return ServiceResult.ok("Permission created", data=permission)

    async def update_permission(
        self,
        permission_id: UUID,
        data: PermissionUpdate,
        updated_by: Optional[UUID] = None,
    ) -> ServiceResult:
        changes = data.changes()
        if not changes:
            return ServiceResult.fail(RBACErrorCode.VALIDATION, "No valid fields to update")

        async with atomic(self.db):
            permission = await lock_permission(self.db, permission_id)
            if permission is None or permission.is_deleted:
                return ServiceResult.fail(
                    RBACErrorCode.NOT_FOUND,
                    "Permission not found",
                    f"No permission with id {permission_id}",
                )

            renaming = bool(changes.get("name")) and changes["name"] != permission.name
            relabeling = "display_name" in changes and changes["display_name"] != permission.display_name
            if permission.is_system_permission and (renaming or relabeling):
                return ServiceResult.fail(
                    RBACErrorCode.PROTECTED_ENTITY,
                    "Cannot rename system permission",
                    f"Permission '{permission.name}' is a system permission",
                )

            new_name = changes.get("name") or permission.name
            problem = self._check_name(new_name, changes.get("module"), changes.get("action"))
            if problem:
                return ServiceResult.fail(RBACErrorCode.VALIDATION, "Invalid permission name", problem)

            if renaming and await self._name_taken(new_name):
                return ServiceResult.fail(
                    RBACErrorCode.CONFLICT,
                    "Permission name already exists",
                    f"Permission '{new_name}' already exists",
                )

            changes["module"], changes["action"] = split_permission_name(new_name)
            if "requires_permissions" in changes:
                changes["requires_permissions"] = [str(pid) for pid in changes["requires_permissions"] or []]

            for field_name, value in changes.items():
                setattr(permission, field_name, value)
            permission.updated_by = updated_by
            permission.updated_at = datetime.utcnow()
            await flush(self.db)

        logger.info(f"Permission updated: {permission.name}", extra={"extra_data": {"fields": sorted(changes)}})
        return ServiceResult.ok("Permission updated", data=permission)

    async def delete_permission(
        self,
        permission_id: UUID,
        force: bool = False,
        deleted_by: Optional[UUID] = None,
    ) -> ServiceResult:
        """
        Soft-delete a permission.

        System permissions and permissions still granted to roles are kept
        unless ``force`` is set; a forced delete revokes every active grant
        first.
        """
        async with atomic(self.db):
            permission = await lock_permission(self.db, permission_id)
            if permission is None or permission.is_deleted:
                return ServiceResult.fail(
                    RBACErrorCode.NOT_FOUND,
                    "Permission not found",
                    f"No permission with id {permission_id}",
                )

            if permission.is_system_permission and not force:
                return ServiceResult.fail(
                    RBACErrorCode.PROTECTED_ENTITY,
                    "Cannot delete system permissions",
                    f"Permission '{permission.name}' is a system permission",
                )

            grants = await scalars(
                self.db,
                select(RolePermission).where(
                    RolePermission.permission_id == permission_id,
                    RolePermission.is_active.is_(True),
                ),
            )
            if grants and not force:
                return ServiceResult.fail(
                    RBACErrorCode.IN_USE,
                    "Cannot delete permission that is assigned to roles",
                    f"Permission '{permission.name}' is granted to {len(grants)} roles; use force delete",
                )

            now = datetime.utcnow()
            for grant in grants:
                grant.is_active = False
                grant.revoked_by = deleted_by
                grant.revoked_at = now
                grant.revocation_reason = "permission_deleted"

            original_name = permission.name
            permission.deleted_at = now
            permission.is_active = False
            permission.name = tombstone_name(original_name, permission.permission_id)
            permission.updated_by = deleted_by
            permission.updated_at = now
            await recompute_usage_count(self.db, permission_id)

        logger.info(
            f"Permission {original_name} soft deleted",
            extra={"extra_data": {"permission_id": str(permission_id), "revoked_grants": len(grants)}},
        )
        return ServiceResult.ok("Permission deleted", data={"revoked_grants": len(grants)})

    async def create_module_permissions(
        self,
        data: ModulePermissionsCreate,
        created_by: Optional[UUID] = None,
    ) -> ServiceResult:
        """Create ``module.action`` for every action, all or nothing."""
        if not PART_PATTERN.match(data.module):
            return ServiceResult.fail(
                RBACErrorCode.VALIDATION,
                "Invalid module name",
                f"'{data.module}' must start with a letter and contain only lowercase letters, numbers and underscores",
            )
        bad_actions = [action for action in data.actions if not PART_PATTERN.match(action)]
        if bad_actions:
            return ServiceResult.fail(
                RBACErrorCode.VALIDATION,
                "Invalid action names",
                *[f"Invalid action: {action}" for action in bad_actions],
            )

        module_display = data.module_display_name or _humanize(data.module)
        group_name = data.group_name or f"{module_display} Management"[:50]
        names = [f"{data.module}.{action}" for action in data.actions]

        async with atomic(self.db):
            taken = await scalars(self.db, select(Permission.name).where(Permission.name.in_(names)))
            if taken:
                return ServiceResult.fail(
                    RBACErrorCode.CONFLICT,
                    "Permission names already exist",
                    *[f"Permission '{name}' already exists" for name in sorted(taken)],
                )

            created = []
            for sort_order, action in enumerate(data.actions):
                permission = Permission(
                    name=f"{data.module}.{action}",
                    display_name=f"{_humanize(action)} {module_display}"[:150],
                    module=data.module,
                    action=action,
                    is_system_permission=data.is_system_permission,
                    is_active=True,
                    group_name=group_name,
                    sort_order=sort_order,
                    access_level=data.access_level,
                    scope=data.scope,
                    requires_permissions=[],
                    usage_count=0,
                    created_by=created_by,
                    updated_by=created_by,
                )
                self.db.add(permission)
                created.append(permission)
            await flush(self.db)

        logger.info(f"Created {len(created)} permissions for module: {data.module}")
        return ServiceResult.ok(f"Created {len(created)} permissions", data=created)

    async def recompute_usage_count(self, permission_id: UUID) -> int:
        async with atomic(self.db):
            return await recompute_usage_count(self.db, permission_id)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _name_taken(self, name: str) -> bool:
        existing = await scalar(self.db, select(Permission.permission_id).where(Permission.name == name))
        return existing is not None

    @staticmethod
    def _check_name(name: str, module: Optional[str], action: Optional[str]) -> Optional[str]:
        if not PERMISSION_NAME_PATTERN.match(name):
            return "Permission name must follow the format 'module.action' in lowercase"
        expected_module, expected_action = split_permission_name(name)
        if module is not None and module != expected_module:
            return f"Module '{module}' does not match permission name '{name}'"
        if action is not None and action != expected_action:
            return f"Action '{action}' does not match permission name '{name}'"
        return None
