"""
Role-Based Access Control (RBAC) core.

Services live in their own modules and take a SQLAlchemy session (sync or
async):

    rbac.hierarchy.RoleHierarchy          roles, parent chain, default role
    rbac.catalog.PermissionCatalog        ``module.action`` permission catalog
    rbac.grants.RoleGrantService          role-to-permission grants
    rbac.assignments.AssignmentEngine     user-to-role assignments
    rbac.resolver.PermissionResolver      effective permissions of a user

Usage:
    from rbac.assignments import AssignmentEngine
    from rbac.resolver import PermissionResolver

    async with get_session() as session:
        result = await AssignmentEngine(session).assign_role(user_id, role_id, is_primary=True)
        resolved = await PermissionResolver(session).effective_permissions(user_id, include_inherited=True)
"""

from .exceptions import RBACError, RBACErrorCode, StorageError
from .models import (
    AccessLevel,
    AssignmentContext,
    Permission,
    PermissionScope,
    Role,
    RolePermission,
    UserRoleAssignment,
)
from .results import BatchResult, Page, ServiceResult

__all__ = [
    # Errors and results
    "RBACError",
    "RBACErrorCode",
    "StorageError",
    "ServiceResult",
    "BatchResult",
    "Page",
    # Models
    "Role",
    "Permission",
    "RolePermission",
    "UserRoleAssignment",
    "AccessLevel",
    "PermissionScope",
    "AssignmentContext",
]
