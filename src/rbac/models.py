"""
RBAC Database Models - SQLAlchemy ORM models for the authorization core.

Tables:
- roles: Role definitions with single-parent inheritance
- permissions: Permission catalog (``module.action`` grants)
- role_permissions: Role-to-permission grants
- user_role_assignments: User-to-role assignments (one row per assignment)

Roles and permissions are soft-deleted: ``deleted_at`` is stamped and the
unique name is mangled so the slot can be reused.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime,
    Text, ForeignKey, Index, CheckConstraint, UniqueConstraint, Enum
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

# Import base from existing database module
from database.models import Base, JSONB


# =============================================================================
# ENUMERATIONS
# =============================================================================

class AccessLevel(str, PyEnum):
    """Complexity/danger level of a permission."""
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    ADMIN = "admin"


class PermissionScope(str, PyEnum):
    """Breadth of data a permission reaches."""
    OWN = "own"
    TEAM = "team"
    ORGANIZATION = "organization"
    GLOBAL = "global"


class AssignmentContext(str, PyEnum):
    """Business reason recorded on an assignment."""
    PROMOTION = "promotion"
    DEMOTION = "demotion"
    TRANSFER = "transfer"
    PROJECT_ASSIGNMENT = "project_assignment"
    TEMPORARY_DUTY = "temporary_duty"
    CORRECTION = "correction"
    ONBOARDING = "onboarding"
    ROLE_CHANGE = "role_change"
    DEPARTMENT_TRANSFER = "department_transfer"
    SKILL_DEVELOPMENT = "skill_development"
    # Bulk operations
    BULK_ONBOARDING = "bulk_onboarding"
    DEPARTMENT_ASSIGNMENT = "department_assignment"
    PROJECT_TEAM = "project_team"
    POLICY_UPDATE = "policy_update"
    ORGANIZATIONAL_CHANGE = "organizational_change"
    SYSTEM_MIGRATION = "system_migration"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _enum_column(enum_cls, length: int = 30):
    return Enum(
        enum_cls,
        values_callable=_enum_values,
        native_enum=False,
        length=length,
        validate_strings=True,
    )


# =============================================================================
# ROLE MODEL
# =============================================================================

class Role(Base):
    """
    Role definitions.

    A role points to at most one parent; the parent chain must stay acyclic.
    ``user_count`` caches the number of active assignments and is only ever
    written by recomputation.
    """
    __tablename__ = "roles"

    # Primary Key
    role_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Role Identity (name is immutable after creation)
    name = Column(String(100), nullable=False, unique=True, index=True)
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    # Inheritance - parent role for permission inheritance
    parent_role_id = Column(
        UUID(as_uuid=True),
        ForeignKey("roles.role_id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Flags
    is_system_role = Column(Boolean, default=False, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    is_default = Column(Boolean, default=False, nullable=False, index=True)

    # Capacity (NULL = unlimited)
    max_users = Column(Integer, nullable=True)
    user_count = Column(Integer, default=0, nullable=False)

    # Display
    color_code = Column(String(7), nullable=True)
    icon = Column(String(50), nullable=True)
    priority = Column(Integer, default=0, nullable=False, index=True)

    # Lifecycle
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    updated_by = Column(UUID(as_uuid=True), nullable=True)

    # Relationships
    parent_role = relationship(
        "Role",
        remote_side=[role_id],
        foreign_keys=[parent_role_id]
    )
    role_permissions = relationship("RolePermission", back_populates="role")
    user_assignments = relationship("UserRoleAssignment", back_populates="role")

    __table_args__ = (
        Index("ix_roles_active_default", "is_active", "is_default"),
        Index("ix_roles_system_active", "is_system_role", "is_active"),
        CheckConstraint("user_count >= 0", name="ck_role_user_count"),
        CheckConstraint(
            "max_users IS NULL OR (max_users >= 1 AND max_users <= 10000)",
            name="ck_role_max_users"
        ),
        CheckConstraint(
            "priority >= -1000 AND priority <= 1000",
            name="ck_role_priority"
        ),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def has_capacity_limit(self) -> bool:
        return self.max_users is not None

    @property
    def is_at_capacity(self) -> bool:
        return self.max_users is not None and (self.user_count or 0) >= self.max_users

    @property
    def available_slots(self) -> Optional[int]:
        if self.max_users is None:
            return None
        return max(0, self.max_users - (self.user_count or 0))

    def to_dict(self) -> dict:
        return {
            "role_id": str(self.role_id),
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "parent_role_id": str(self.parent_role_id) if self.parent_role_id else None,
            "is_system_role": self.is_system_role,
            "is_active": self.is_active,
            "is_default": self.is_default,
            "max_users": self.max_users,
            "user_count": self.user_count,
            "color_code": self.color_code,
            "icon": self.icon,
            "priority": self.priority,
            "has_capacity_limit": self.has_capacity_limit,
            "is_at_capacity": self.is_at_capacity,
            "available_slots": self.available_slots,
        }

    def __repr__(self):
        return f"<Role(name={self.name}, active={self.is_active})>"


# =============================================================================
# PERMISSION MODEL
# =============================================================================

class Permission(Base):
    """
    Permission catalog entry.

    ``name`` is ``module.action``; ``module`` and ``action`` are denormalized
    copies of its two halves. ``requires_permissions`` is stored as metadata
    and never expanded during resolution.
    """
    __tablename__ = "permissions"

    # Primary Key
    permission_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Permission Identity
    name = Column(String(150), nullable=False, unique=True, index=True)
    display_name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)

    module = Column(String(50), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    resource = Column(String(50), nullable=True)

    # Flags
    is_system_permission = Column(Boolean, default=False, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    # Grouping / display
    group_name = Column(String(50), nullable=True, index=True)
    sort_order = Column(Integer, default=0, nullable=False)
    icon = Column(String(50), nullable=True)
    color_code = Column(String(7), nullable=True)

    access_level = Column(_enum_column(AccessLevel), default=AccessLevel.BASIC, nullable=False)
    scope = Column(_enum_column(PermissionScope), default=PermissionScope.OWN, nullable=False)

    # Dependency hint: list of permission ids (as strings)
    requires_permissions = Column(JSONB, default=list)

    usage_count = Column(Integer, default=0, nullable=False)

    # Lifecycle
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    updated_by = Column(UUID(as_uuid=True), nullable=True)

    # Relationships
    role_permissions = relationship("RolePermission", back_populates="permission")

    __table_args__ = (
        Index("ix_permission_module_action", "module", "action"),
        Index("ix_permission_group_sort", "group_name", "sort_order"),
        CheckConstraint("usage_count >= 0", name="ck_permission_usage_count"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict:
        return {
            "permission_id": str(self.permission_id),
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "module": self.module,
            "action": self.action,
            "resource": self.resource,
            "is_system_permission": self.is_system_permission,
            "is_active": self.is_active,
            "group_name": self.group_name,
            "sort_order": self.sort_order,
            "access_level": self.access_level.value if self.access_level else None,
            "scope": self.scope.value if self.scope else None,
            "requires_permissions": list(self.requires_permissions or []),
            "usage_count": self.usage_count,
        }

    def __repr__(self):
        return f"<Permission(name={self.name})>"


# =============================================================================
# ROLE-PERMISSION GRANT
# =============================================================================

class RolePermission(Base):
    """
    Role-to-Permission grant.

    One row per (role, permission) pair; revoking deactivates the row and a
    later grant reactivates it.
    """
    __tablename__ = "role_permissions"

    grant_id = Column(Integer, primary_key=True, autoincrement=True)

    role_id = Column(
        UUID(as_uuid=True),
        ForeignKey("roles.role_id", ondelete="CASCADE"),
        nullable=False
    )
    permission_id = Column(
        UUID(as_uuid=True),
        ForeignKey("permissions.permission_id", ondelete="CASCADE"),
        nullable=False
    )

    # Metadata
    granted_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    granted_by = Column(UUID(as_uuid=True), nullable=True)
    conditions = Column(JSONB, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    revoked_by = Column(UUID(as_uuid=True), nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revocation_reason = Column(Text, nullable=True)

    # Relationships
    role = relationship("Role", back_populates="role_permissions")
    permission = relationship("Permission", back_populates="role_permissions")

    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
        Index("ix_role_permission_role_active", "role_id", "is_active"),
        Index("ix_role_permission_permission_active", "permission_id", "is_active"),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or datetime.utcnow())

    def __repr__(self):
        return f"<RolePermission(role={self.role_id}, permission={self.permission_id}, active={self.is_active})>"


# =============================================================================
# USER ROLE ASSIGNMENT
# =============================================================================

class UserRoleAssignment(Base):
    """
    User-to-Role assignment.

    Users can hold multiple roles; at most one active, unexpired assignment
    per user is primary. Re-assigning a revoked role inserts a new row.
    """
    __tablename__ = "user_role_assignments"

    assignment_id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False
    )
    role_id = Column(
        UUID(as_uuid=True),
        ForeignKey("roles.role_id", ondelete="CASCADE"),
        nullable=False
    )

    is_active = Column(Boolean, default=True, nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)

    # Assignment metadata
    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    assigned_by = Column(UUID(as_uuid=True), nullable=True)
    expires_at = Column(DateTime, nullable=True, comment="Optional role expiration")

    # Assignment context
    context = Column(_enum_column(AssignmentContext, length=40), nullable=True)
    assignment_reason = Column(Text, nullable=True)
    conditions = Column(JSONB, nullable=True)

    # Revocation audit
    revoked_by = Column(UUID(as_uuid=True), nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revocation_reason = Column(Text, nullable=True)

    # Relationships
    role = relationship("Role", back_populates="user_assignments")

    __table_args__ = (
        Index("ix_user_role_user_active", "user_id", "is_active"),
        Index("ix_user_role_role_active", "role_id", "is_active"),
        Index("ix_user_role_primary", "user_id", "is_primary"),
        Index("ix_user_role_active_expires", "is_active", "expires_at"),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or datetime.utcnow())

    def to_dict(self) -> dict:
        return {
            "assignment_id": self.assignment_id,
            "user_id": str(self.user_id),
            "role_id": str(self.role_id),
            "is_active": self.is_active,
            "is_primary": self.is_primary,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "assigned_by": str(self.assigned_by) if self.assigned_by else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "context": self.context.value if self.context else None,
            "assignment_reason": self.assignment_reason,
            "conditions": self.conditions,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
            "revocation_reason": self.revocation_reason,
        }

    def __repr__(self):
        return f"<UserRoleAssignment(user={self.user_id}, role={self.role_id}, primary={self.is_primary})>"
