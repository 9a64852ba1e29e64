"""
Role-to-permission grants.

Each (role, permission) pair has a single row. Revoking a grant deactivates
the row; granting the pair again reactivates it with fresh metadata. Every
activation change recomputes the permission's ``usage_count``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from config.logging_config import get_logger
from database.transaction import atomic, flush, scalar_one_or_none, scalars

from .exceptions import RBACErrorCode
from .invariants import grant_is_current, lock_permission, recompute_usage_count
from .models import Permission, Role, RolePermission
from .results import BatchResult, ServiceResult

logger = get_logger(__name__)


class RoleGrantService:
    """Grants permissions to roles and revokes them."""

    def __init__(self, db):
        self.db = db

    async def grant_permission(
        self,
        role_id: UUID,
        permission_id: UUID,
        granted_by: Optional[UUID] = None,
        conditions: Optional[dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
    ) -> ServiceResult:
        now = datetime.utcnow()
        if expires_at is not None and expires_at <= now:
            return ServiceResult.fail(RBACErrorCode.VALIDATION, "Expiry must be in the future")

        async with atomic(self.db):
            role = await scalar_one_or_none(
                self.db,
                select(Role).where(Role.role_id == role_id, Role.deleted_at.is_(None)),
            )
            if role is None:
                return ServiceResult.fail(RBACErrorCode.NOT_FOUND, "Role not found", f"No role with id {role_id}")

            permission = await lock_permission(self.db, permission_id)
            if permission is None or permission.is_deleted:
                return ServiceResult.fail(
                    RBACErrorCode.NOT_FOUND,
                    "Permission not found",
                    f"No permission with id {permission_id}",
                )
            if not permission.is_active:
                return ServiceResult.fail(
                    RBACErrorCode.VALIDATION,
                    "Permission is not active",
                    f"Permission '{permission.name}' cannot be granted while inactive",
                )

            grant = await self._find_grant(role_id, permission_id)
            if grant is not None and grant.is_active:
                return ServiceResult.fail(
                    RBACErrorCode.CONFLICT,
                    "Permission is already assigned to this role",
                    f"'{permission.name}' is already granted to '{role.name}'",
                )

            reactivated = grant is not None
            if grant is None:
                grant = RolePermission(role_id=role_id, permission_id=permission_id)
                self.db.add(grant)

            grant.is_active = True
            grant.granted_by = granted_by
            grant.granted_at = now
            grant.conditions = conditions
            grant.expires_at = expires_at
            grant.revoked_by = None
            grant.revoked_at = None
            grant.revocation_reason = None
            await flush(self.db)
            await recompute_usage_count(self.db, permission_id)

        logger.info(
            f"Permission {permission.name} granted to role {role.name}",
            extra={"extra_data": {"reactivated": reactivated}},
        )
        return ServiceResult.ok("Permission granted", data=grant)

    async def revoke_permission(
        self,
        role_id: UUID,
        permission_id: UUID,
        revoked_by: Optional[UUID] = None,
        reason: Optional[str] = "manual_revocation",
    ) -> ServiceResult:
        async with atomic(self.db):
            grant = await self._find_grant(role_id, permission_id)
            if grant is None or not grant.is_active:
                return ServiceResult.fail(
                    RBACErrorCode.NOT_FOUND,
                    "Permission assignment not found",
                    f"Permission {permission_id} is not granted to role {role_id}",
                )

            grant.is_active = False
            grant.revoked_by = revoked_by
            grant.revoked_at = datetime.utcnow()
            grant.revocation_reason = reason
            await recompute_usage_count(self.db, permission_id)

        logger.info(f"Permission {permission_id} revoked from role {role_id}")
        return ServiceResult.ok("Permission revoked", data=grant)

    async def grant_permissions(
        self,
        role_id: UUID,
        permission_ids: Iterable[UUID],
        granted_by: Optional[UUID] = None,
        conditions: Optional[dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
    ) -> ServiceResult:
        """Grant several permissions; each one succeeds or fails on its own."""
        batch = BatchResult()
        for permission_id in permission_ids:
            result = await self.grant_permission(
                role_id,
                permission_id,
                granted_by=granted_by,
                conditions=conditions,
                expires_at=expires_at,
            )
            if result.success:
                batch.successful.append({"role_id": role_id, "permission_id": permission_id})
            else:
                batch.failed.append({
                    "role_id": role_id,
                    "permission_id": permission_id,
                    "error": result.message,
                    "code": result.code,
                })

        logger.info(
            f"Bulk permission grant: {len(batch.successful)} granted, {len(batch.failed)} failed",
            extra={"extra_data": {"role_id": str(role_id)}},
        )
        return ServiceResult.ok(
            f"Granted {len(batch.successful)} of {batch.total} permissions",
            data=batch,
            code=RBACErrorCode.PARTIAL_BATCH_FAILURE if batch.has_failures else None,
        )

    async def get_role_permissions(
        self,
        role_id: UUID,
        include_inactive: bool = False,
        include_expired: bool = False,
    ) -> list[RolePermission]:
        """Direct grants of one role, with the permission loaded."""
        stmt = (
            select(RolePermission)
            .join(Permission, Permission.permission_id == RolePermission.permission_id)
            .options(selectinload(RolePermission.permission))
            .where(RolePermission.role_id == role_id, Permission.deleted_at.is_(None))
        )
        now = datetime.utcnow()
        if not include_inactive and not include_expired:
            stmt = stmt.where(grant_is_current(now))
        elif not include_inactive:
            stmt = stmt.where(RolePermission.is_active.is_(True))
        elif not include_expired:
            stmt = stmt.where(
                (RolePermission.expires_at.is_(None)) | (RolePermission.expires_at > now)
            )
        stmt = stmt.order_by(Permission.module.asc(), Permission.sort_order.asc(), Permission.name.asc())
        return await scalars(self.db, stmt)

    async def get_permission_roles(self, permission_id: UUID, include_inactive: bool = False) -> list[RolePermission]:
        """Grants of one permission, with the role loaded."""
        stmt = (
            select(RolePermission)
            .join(Role, Role.role_id == RolePermission.role_id)
            .options(selectinload(RolePermission.role))
            .where(RolePermission.permission_id == permission_id, Role.deleted_at.is_(None))
        )
        if not include_inactive:
            stmt = stmt.where(grant_is_current(datetime.utcnow()))
        stmt = stmt.order_by(Role.priority.desc(), Role.name.asc())
        return await scalars(self.db, stmt)

    async def _find_grant(self, role_id: UUID, permission_id: UUID) -> Optional[RolePermission]:
        stmt = select(RolePermission).where(
            RolePermission.role_id == role_id,
            RolePermission.permission_id == permission_id,
        )
        return await scalar_one_or_none(self.db, stmt)
