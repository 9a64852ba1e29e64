"""
Input schemas for the RBAC services.

These models bound field lengths and types at the edge. Business rules
(name patterns, module/action agreement, hierarchy and capacity checks) are
enforced by the services and reported as ``ServiceResult`` failures.
"""

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import AccessLevel, AssignmentContext, PermissionScope

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"

ROLE_NULLABLE_FIELDS = frozenset({"description", "parent_role_id", "max_users", "color_code", "icon"})
PERMISSION_NULLABLE_FIELDS = frozenset(
    {"description", "resource", "group_name", "icon", "color_code", "requires_permissions"}
)
ASSIGNMENT_NULLABLE_FIELDS = frozenset({"context", "assignment_reason", "conditions", "expires_at"})


def _lower_strip(value):
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _empty_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _set_fields(model: BaseModel, nullable: frozenset) -> dict:
    """Explicitly set fields; an explicit None counts only where the column allows NULL."""
    return {
        key: value
        for key, value in model.model_dump(exclude_unset=True).items()
        if value is not None or key in nullable
    }


# =============================================================================
# ROLES
# =============================================================================

class RoleCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=50, description="Unique role name (e.g. manager)")
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    parent_role_id: Optional[UUID] = None
    is_system_role: bool = False
    is_active: bool = True
    is_default: bool = False
    max_users: Optional[int] = Field(None, ge=1, le=10000, description="Capacity (None = unlimited)")
    color_code: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(None, max_length=50)
    priority: int = Field(0, ge=-1000, le=1000)

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, value):
        return _lower_strip(value)

    @field_validator("description", mode="before")
    @classmethod
    def blank_description(cls, value):
        return _empty_to_none(value)


class RoleUpdate(BaseModel):
    """
    Partial update; only fields explicitly set are applied.

    An explicit None clears a nullable column and is ignored elsewhere.
    """

    name: Optional[str] = Field(None, min_length=2, max_length=50)
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    parent_role_id: Optional[UUID] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None
    max_users: Optional[int] = Field(None, ge=1, le=10000)
    color_code: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(None, max_length=50)
    priority: Optional[int] = Field(None, ge=-1000, le=1000)

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, value):
        return _lower_strip(value)

    def changes(self) -> dict:
        return _set_fields(self, ROLE_NULLABLE_FIELDS)


class RoleDelete(BaseModel):
    replacement_role_id: Optional[UUID] = None
    force: bool = False


class RoleSearch(BaseModel):
    search: Optional[str] = Field(None, max_length=100)
    is_active: Optional[bool] = None
    is_system_role: Optional[bool] = None
    is_default: Optional[bool] = None
    parent_role_id: Optional[UUID] = None
    roots_only: bool = False
    has_users: Optional[bool] = None
    sort_by: Literal["name", "display_name", "priority", "created_at", "user_count"] = "priority"
    sort_order: Literal["asc", "desc"] = "desc"

    @field_validator("search", mode="before")
    @classmethod
    def blank_search(cls, value):
        return _empty_to_none(value)


# =============================================================================
# PERMISSIONS
# =============================================================================

class PermissionCreate(BaseModel):
    """
    New catalog entry.

    ``module`` and ``action`` may be omitted, in which case they are taken
    from the two halves of ``name``.
    """

    name: str = Field(..., min_length=3, max_length=100, description="module.action")
    display_name: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)
    module: Optional[str] = Field(None, max_length=50)
    action: Optional[str] = Field(None, max_length=50)
    resource: Optional[str] = Field(None, max_length=50)
    is_system_permission: bool = False
    is_active: bool = True
    group_name: Optional[str] = Field(None, max_length=50)
    sort_order: int = Field(0, ge=0)
    icon: Optional[str] = Field(None, max_length=50)
    color_code: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    access_level: AccessLevel = AccessLevel.BASIC
    scope: PermissionScope = PermissionScope.OWN
    requires_permissions: List[UUID] = Field(default_factory=list)

    @field_validator("name", "module", "action", mode="before")
    @classmethod
    def normalize(cls, value):
        return _lower_strip(value)


class PermissionUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=100)
    display_name: Optional[str] = Field(None, min_length=1, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)
    module: Optional[str] = Field(None, max_length=50)
    action: Optional[str] = Field(None, max_length=50)
    resource: Optional[str] = Field(None, max_length=50)
    is_active: Optional[bool] = None
    group_name: Optional[str] = Field(None, max_length=50)
    sort_order: Optional[int] = Field(None, ge=0)
    icon: Optional[str] = Field(None, max_length=50)
    color_code: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    access_level: Optional[AccessLevel] = None
    scope: Optional[PermissionScope] = None
    requires_permissions: Optional[List[UUID]] = None

    @field_validator("name", "module", "action", mode="before")
    @classmethod
    def normalize(cls, value):
        return _lower_strip(value)

    def changes(self) -> dict:
        return _set_fields(self, PERMISSION_NULLABLE_FIELDS)


class PermissionSearch(BaseModel):
    search: Optional[str] = Field(None, max_length=100)
    module: Optional[str] = None
    action: Optional[str] = None
    access_level: Optional[AccessLevel] = None
    scope: Optional[PermissionScope] = None
    group_name: Optional[str] = None
    is_active: Optional[bool] = None
    is_system_permission: Optional[bool] = None
    has_usage: Optional[bool] = None
    group_by: Optional[Literal["module", "group"]] = None

    @field_validator("search", mode="before")
    @classmethod
    def blank_search(cls, value):
        return _empty_to_none(value)


class ModulePermissionsCreate(BaseModel):
    """Create one ``module.action`` permission per action."""

    module: str = Field(..., min_length=1, max_length=50)
    module_display_name: Optional[str] = Field(None, max_length=100)
    actions: List[str] = Field(..., min_length=1, max_length=50)
    group_name: Optional[str] = Field(None, max_length=50)
    access_level: AccessLevel = AccessLevel.BASIC
    scope: PermissionScope = PermissionScope.OWN
    is_system_permission: bool = False

    @field_validator("module", mode="before")
    @classmethod
    def normalize_module(cls, value):
        return _lower_strip(value)

    @field_validator("actions", mode="before")
    @classmethod
    def normalize_actions(cls, value):
        if not isinstance(value, list):
            return value
        actions = [_lower_strip(action) for action in value]
        if len(set(actions)) != len(actions):
            raise ValueError("Actions must be unique")
        return actions


# =============================================================================
# ASSIGNMENTS
# =============================================================================

class AssignmentConditions(BaseModel):
    """
    Restrictions carried on an assignment.

    Only the listed keys are accepted; the values are stored as given and
    never interpreted by the core.
    """

    model_config = ConfigDict(extra="forbid")

    department_restriction: Optional[Any] = None
    project_access: Optional[Any] = None
    time_restriction: Optional[Any] = None
    ip_restriction: Optional[Any] = None
    feature_flags: Optional[Any] = None
    data_access_level: Optional[Any] = None

    def to_storage(self) -> dict:
        return self.model_dump(exclude_none=True)


class RoleAssignmentRequest(BaseModel):
    user_id: UUID
    role_id: UUID
    assigned_by: Optional[UUID] = None
    context: Optional[AssignmentContext] = None
    assignment_reason: Optional[str] = Field(None, max_length=500)
    conditions: Optional[AssignmentConditions] = None
    expires_at: Optional[datetime] = None
    is_primary: bool = False

    @field_validator("assignment_reason", mode="before")
    @classmethod
    def blank_reason(cls, value):
        return _empty_to_none(value)


class RoleAssignmentUpdate(BaseModel):
    """Partial update of an active assignment; only fields explicitly set are applied."""

    context: Optional[AssignmentContext] = None
    assignment_reason: Optional[str] = Field(None, max_length=500)
    conditions: Optional[AssignmentConditions] = None
    expires_at: Optional[datetime] = None
    is_primary: Optional[bool] = None

    def changes(self) -> dict:
        changes = _set_fields(self, ASSIGNMENT_NULLABLE_FIELDS)
        if self.conditions is not None:
            changes["conditions"] = self.conditions.to_storage() or None
        return changes


class RoleRevocationRequest(BaseModel):
    user_id: UUID
    role_id: UUID
    revoked_by: Optional[UUID] = None
    revocation_reason: Optional[str] = Field(None, max_length=500)


class BulkRoleAssignment(BaseModel):
    """A batch of independent assignment tuples."""

    assignments: List[RoleAssignmentRequest] = Field(..., min_length=1)

    @classmethod
    def for_role(cls, role_id: UUID, user_ids: List[UUID], **common) -> "BulkRoleAssignment":
        """Assign one role to many users with shared settings."""
        return cls(
            assignments=[
                RoleAssignmentRequest(user_id=user_id, role_id=role_id, **common)
                for user_id in user_ids
            ]
        )


class RoleTransferRequest(BaseModel):
    from_user_id: UUID
    to_user_id: UUID
    transferred_by: Optional[UUID] = None
    reason: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def check_distinct_users(self):
        if self.from_user_id == self.to_user_id:
            raise ValueError("Cannot transfer roles to the same user")
        return self
