"""
RBAC Database Seeding

Seeds the built-in permission catalog and system roles. Every step is
idempotent: existing permissions and roles are left in place and grants that
are already active are skipped.

Role chain (child -> parent, children inherit their ancestors' grants):
    super_admin -> admin -> manager -> employee
    viewer (root, default role for new users)

Usage:
    python scripts/seed_rbac.py --seed
"""

import logging
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from .catalog import PermissionCatalog
from .exceptions import RBACErrorCode
from .grants import RoleGrantService
from .hierarchy import RoleHierarchy
from .models import AccessLevel, PermissionScope
from .schemas import PermissionCreate, RoleCreate

logger = logging.getLogger(__name__)


# module -> [(action, access level, scope)]
SYSTEM_PERMISSIONS: Dict[str, List[Tuple[str, AccessLevel, PermissionScope]]] = {
    "users": [
        ("create", AccessLevel.ADVANCED, PermissionScope.ORGANIZATION),
        ("read", AccessLevel.BASIC, PermissionScope.ORGANIZATION),
        ("update", AccessLevel.INTERMEDIATE, PermissionScope.ORGANIZATION),
        ("delete", AccessLevel.ADMIN, PermissionScope.ORGANIZATION),
    ],
    "roles": [
        ("create", AccessLevel.ADMIN, PermissionScope.GLOBAL),
        ("read", AccessLevel.INTERMEDIATE, PermissionScope.GLOBAL),
        ("update", AccessLevel.ADMIN, PermissionScope.GLOBAL),
        ("delete", AccessLevel.ADMIN, PermissionScope.GLOBAL),
        ("assign", AccessLevel.ADVANCED, PermissionScope.ORGANIZATION),
    ],
    "permissions": [
        ("read", AccessLevel.INTERMEDIATE, PermissionScope.GLOBAL),
        ("manage", AccessLevel.ADMIN, PermissionScope.GLOBAL),
    ],
    "customers": [
        ("create", AccessLevel.BASIC, PermissionScope.TEAM),
        ("read", AccessLevel.BASIC, PermissionScope.TEAM),
        ("update", AccessLevel.BASIC, PermissionScope.TEAM),
        ("delete", AccessLevel.ADVANCED, PermissionScope.ORGANIZATION),
        ("export", AccessLevel.INTERMEDIATE, PermissionScope.ORGANIZATION),
    ],
    "employees": [
        ("create", AccessLevel.ADVANCED, PermissionScope.ORGANIZATION),
        ("read", AccessLevel.INTERMEDIATE, PermissionScope.TEAM),
        ("update", AccessLevel.ADVANCED, PermissionScope.ORGANIZATION),
        ("delete", AccessLevel.ADMIN, PermissionScope.ORGANIZATION),
    ],
    "orders": [
        ("create", AccessLevel.BASIC, PermissionScope.OWN),
        ("read", AccessLevel.BASIC, PermissionScope.TEAM),
        ("update", AccessLevel.INTERMEDIATE, PermissionScope.TEAM),
        ("delete", AccessLevel.ADVANCED, PermissionScope.ORGANIZATION),
        ("approve", AccessLevel.ADVANCED, PermissionScope.TEAM),
    ],
    "products": [
        ("create", AccessLevel.INTERMEDIATE, PermissionScope.ORGANIZATION),
        ("read", AccessLevel.BASIC, PermissionScope.ORGANIZATION),
        ("update", AccessLevel.INTERMEDIATE, PermissionScope.ORGANIZATION),
        ("delete", AccessLevel.ADVANCED, PermissionScope.ORGANIZATION),
    ],
}


# Parents come before children.
SYSTEM_ROLES: List[dict] = [
    {
        "name": "viewer",
        "display_name": "Viewer",
        "description": "Read-only access to business records",
        "parent": None,
        "is_default": True,
        "priority": 10,
        "color_code": "#9E9E9E",
        "permissions": ["customers.read", "orders.read", "products.read"],
    },
    {
        "name": "employee",
        "display_name": "Employee",
        "description": "Day-to-day work on customers and orders",
        "parent": None,
        "priority": 20,
        "color_code": "#4CAF50",
        "permissions": [
            "customers.create", "customers.read", "customers.update",
            "orders.create", "orders.read", "products.read",
        ],
    },
    {
        "name": "manager",
        "display_name": "Manager",
        "description": "Team oversight and order approval",
        "parent": "employee",
        "priority": 50,
        "color_code": "#2196F3",
        "permissions": [
            "orders.update", "orders.approve", "customers.export",
            "employees.read", "users.read",
        ],
    },
    {
        "name": "admin",
        "display_name": "Administrator",
        "description": "Organization administration",
        "parent": "manager",
        "priority": 90,
        "color_code": "#FF9800",
        "permissions": [
            "users.create", "users.update", "users.delete",
            "roles.create", "roles.read", "roles.update", "roles.delete", "roles.assign",
            "permissions.read",
            "customers.delete", "orders.delete",
            "employees.create", "employees.update", "employees.delete",
            "products.create", "products.update", "products.delete",
        ],
    },
    {
        "name": "super_admin",
        "display_name": "Super Administrator",
        "description": "Unrestricted platform access",
        "parent": "admin",
        "priority": 100,
        "color_code": "#F44336",
        "permissions": ["permissions.manage"],
    },
]


async def seed_permissions(db, created_by: Optional[UUID] = None) -> Dict[str, UUID]:
    """Create missing system permissions. Returns ``{name: permission_id}``."""
    catalog = PermissionCatalog(db)
    ids: Dict[str, UUID] = {}
    added = 0

    for module, actions in SYSTEM_PERMISSIONS.items():
        module_display = module.replace("_", " ").title()
        for sort_order, (action, access_level, scope) in enumerate(actions):
            name = f"{module}.{action}"
            existing = await catalog.get_permission_by_name(name)
            if existing is not None:
                ids[name] = existing.permission_id
                continue

            result = await catalog.create_permission(
                PermissionCreate(
                    name=name,
                    display_name=f"{action.title()} {module_display}",
                    is_system_permission=True,
                    group_name=f"{module_display} Management",
                    sort_order=sort_order,
                    access_level=access_level,
                    scope=scope,
                ),
                created_by=created_by,
            )
            if not result.success:
                raise RuntimeError(f"Could not seed permission {name}: {result.message}")
            ids[name] = result.data.permission_id
            added += 1

    logger.info(f"Seeded {added} system permissions ({len(ids)} total)")
    return ids


async def seed_roles(db, created_by: Optional[UUID] = None) -> Dict[str, UUID]:
    """Create missing system roles. Returns ``{name: role_id}``."""
    hierarchy = RoleHierarchy(db)
    ids: Dict[str, UUID] = {}
    added = 0

    for spec in SYSTEM_ROLES:
        existing = await hierarchy.get_role_by_name(spec["name"])
        if existing is not None:
            ids[spec["name"]] = existing.role_id
            continue

        parent = spec["parent"]
        result = await hierarchy.create_role(
            RoleCreate(
                name=spec["name"],
                display_name=spec["display_name"],
                description=spec["description"],
                parent_role_id=ids[parent] if parent else None,
                is_system_role=True,
                is_default=spec.get("is_default", False),
                color_code=spec["color_code"],
                priority=spec["priority"],
            ),
            created_by=created_by,
        )
        if not result.success:
            raise RuntimeError(f"Could not seed role {spec['name']}: {result.message}")
        ids[spec["name"]] = result.data.role_id
        added += 1

    logger.info(f"Seeded {added} system roles ({len(ids)} total)")
    return ids


async def seed_role_permissions(
    db,
    role_ids: Dict[str, UUID],
    permission_ids: Dict[str, UUID],
    granted_by: Optional[UUID] = None,
) -> int:
    """Grant each system role its direct permissions; active grants are kept."""
    grants = RoleGrantService(db)
    count = 0

    for spec in SYSTEM_ROLES:
        role_id = role_ids[spec["name"]]
        for name in spec["permissions"]:
            result = await grants.grant_permission(role_id, permission_ids[name], granted_by=granted_by)
            if result.success:
                count += 1
            elif result.code != RBACErrorCode.CONFLICT:
                raise RuntimeError(f"Could not grant {name} to {spec['name']}: {result.message}")

    logger.info(f"Seeded {count} role-permission grants")
    return count


async def seed_all(db, created_by: Optional[UUID] = None) -> dict:
    """Run all seeding operations."""
    permission_ids = await seed_permissions(db, created_by)
    role_ids = await seed_roles(db, created_by)
    granted = await seed_role_permissions(db, role_ids, permission_ids, created_by)
    return {
        "permissions": len(permission_ids),
        "roles": len(role_ids),
        "grants_added": granted,
    }
