"""
User-to-role assignment engine.

Rules maintained here:
- at most one active assignment per (user, role) pair
- at most one active, unexpired primary assignment per user; revoking the
  primary promotes the user's oldest remaining assignment
- ``roles.user_count`` equals the number of active assignment rows
- a role at its ``max_users`` capacity accepts no new users

Expiry is applied lazily: every read path treats an assignment past its
``expires_at`` as inactive, and ``cleanup_expired_assignments`` deactivates
such rows on demand.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.orm import selectinload

from config.logging_config import get_logger
from config.settings import RBACSettings, get_settings
from database.models import User
from database.transaction import atomic, execute, flush, scalar, scalar_one_or_none, scalars

from .exceptions import RBACErrorCode, StorageError
from .identity import SqlUserDirectory, UserDirectory
from .invariants import (
    assignment_is_current,
    demote_primary,
    grant_is_current,
    lock_role,
    promote_oldest_to_primary,
    recompute_user_count,
)
from .models import AssignmentContext, Permission, Role, RolePermission, UserRoleAssignment
from .results import BatchResult, Page, ServiceResult
from .schemas import (
    AssignmentConditions,
    BulkRoleAssignment,
    RoleAssignmentRequest,
    RoleAssignmentUpdate,
    RoleRevocationRequest,
    RoleTransferRequest,
)

logger = get_logger(__name__)

EXPIRING_SOON_WINDOW = timedelta(days=7)


def _validation_messages(error: ValidationError) -> list[str]:
    return [f"{'.'.join(str(loc) for loc in e['loc']) or 'value'}: {e['msg']}" for e in error.errors()]


class AssignmentEngine:
    """Assigns roles to users and keeps assignment invariants intact."""

    def __init__(
        self,
        db,
        users: Optional[UserDirectory] = None,
        settings: Optional[RBACSettings] = None,
    ):
        self.db = db
        self.users = users or SqlUserDirectory(db)
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Single assignment mutations
    # -------------------------------------------------------------------------

    async def assign_role(
        self,
        user_id: UUID,
        role_id: UUID,
        *,
        assigned_by: Optional[UUID] = None,
        context: Union[AssignmentContext, str, None] = None,
        assignment_reason: Optional[str] = None,
        conditions: Union[AssignmentConditions, dict, None] = None,
        expires_at: Optional[datetime] = None,
        is_primary: bool = False,
    ) -> ServiceResult:
        now = datetime.utcnow()

        try:
            context = AssignmentContext(context) if context is not None else None
        except ValueError:
            return ServiceResult.fail(RBACErrorCode.VALIDATION, "Invalid assignment context", f"Unknown context: {context}")
        try:
            stored_conditions = self._conditions_for_storage(conditions)
        except ValidationError as e:
            return ServiceResult.fail(RBACErrorCode.VALIDATION, "Invalid assignment conditions", *_validation_messages(e))
        if expires_at is not None and expires_at <= now:
            return ServiceResult.fail(RBACErrorCode.VALIDATION, "Expiry must be in the future")

        user = await self.users.find_user_by_id(user_id)
        if user is None:
            return ServiceResult.fail(RBACErrorCode.NOT_FOUND, "User not found", f"No user with id {user_id}")
        if not getattr(user, "is_active", True):
            return ServiceResult.fail(RBACErrorCode.VALIDATION, "User is not active", f"User {user_id} is deactivated")

        async with atomic(self.db):
            role = await lock_role(self.db, role_id)
            if role is None or role.is_deleted:
                return ServiceResult.fail(RBACErrorCode.NOT_FOUND, "Role not found", f"No role with id {role_id}")
            if not role.is_active:
                return ServiceResult.fail(
                    RBACErrorCode.VALIDATION,
                    "Role is not active",
                    f"Role '{role.name}' cannot be assigned while inactive",
                )

            existing = await self._active_assignment(user_id, role_id)
            if existing is not None and not existing.is_expired(now):
                return ServiceResult.fail(
                    RBACErrorCode.CONFLICT,
                    "User already has this role assigned",
                    f"Assignment {existing.assignment_id} is still active",
                )
            if existing is not None:
                # Flagged active but past expiry: retire it so the new row is the only active one.
                self._stamp_revoked(existing, assigned_by, "expired", now)
                await recompute_user_count(self.db, role_id)

            if role.max_users is not None and (role.user_count or 0) >= role.max_users:
                logger.warning(
                    f"Role {role.name} at capacity ({role.user_count}/{role.max_users})",
                    extra={"extra_data": {"user_id": str(user_id)}},
                )
                return ServiceResult.fail(
                    RBACErrorCode.CONFLICT,
                    "Role has reached maximum user capacity",
                    f"Role '{role.name}' is limited to {role.max_users} users",
                )

            if is_primary:
                await demote_primary(self.db, user_id)

            assignment = UserRoleAssignment(
                user_id=user_id,
                role_id=role_id,
                is_active=True,
                is_primary=is_primary,
                assigned_by=assigned_by,
                assigned_at=now,
                expires_at=expires_at,
                context=context,
                assignment_reason=assignment_reason,
                conditions=stored_conditions,
            )
            self.db.add(assignment)
            await flush(self.db)
            await recompute_user_count(self.db, role_id)

        logger.info(
            f"Role {role.name} assigned to user {user_id}",
            extra={"extra_data": {"assignment_id": assignment.assignment_id, "is_primary": is_primary}},
        )
        return ServiceResult.ok("Role assigned successfully", data=assignment)

    async def assign(self, request: RoleAssignmentRequest) -> ServiceResult:
        return await self.assign_role(
            request.user_id,
            request.role_id,
            assigned_by=request.assigned_by,
            context=request.context,
            assignment_reason=request.assignment_reason,
            conditions=request.conditions,
            expires_at=request.expires_at,
            is_primary=request.is_primary,
        )

    async def revoke_role(
        self,
        user_id: UUID,
        role_id: UUID,
        *,
        revoked_by: Optional[UUID] = None,
        reason: Optional[str] = None,
    ) -> ServiceResult:
        missing = await self._check_user(user_id)
        if missing:
            return missing

        now = datetime.utcnow()
        async with atomic(self.db):
            await lock_role(self.db, role_id)
            assignment = await self._active_assignment(user_id, role_id)
            if assignment is None:
                return ServiceResult.fail(
                    RBACErrorCode.NOT_FOUND,
                    "Role assignment not found",
                    f"User {user_id} has no active assignment for role {role_id}",
                )

            was_primary = assignment.is_primary
            self._stamp_revoked(assignment, revoked_by, reason, now)
            await flush(self.db)

            promoted = None
            if was_primary:
                promoted = await promote_oldest_to_primary(self.db, user_id, now)
            await recompute_user_count(self.db, role_id)

        logger.info(
            f"Role {role_id} revoked from user {user_id}",
            extra={"extra_data": {
                "was_primary": was_primary,
                "promoted_role_id": str(promoted.role_id) if promoted else None,
            }},
        )
        return ServiceResult.ok(
            "Role revoked successfully",
            data={"assignment": assignment, "promoted": promoted},
        )

    async def revoke(self, request: RoleRevocationRequest) -> ServiceResult:
        return await self.revoke_role(
            request.user_id,
            request.role_id,
            revoked_by=request.revoked_by,
            reason=request.revocation_reason,
        )

    async def set_primary_role(self, user_id: UUID, role_id: UUID) -> ServiceResult:
        missing = await self._check_user(user_id)
        if missing:
            return missing

        now = datetime.utcnow()
        async with atomic(self.db):
            assignment = await self._active_assignment(user_id, role_id)
            if assignment is None or assignment.is_expired(now):
                return ServiceResult.fail(
                    RBACErrorCode.NOT_FOUND,
                    "User does not have this role assigned",
                    f"User {user_id} has no active assignment for role {role_id}",
                )

            await demote_primary(self.db, user_id, keep_assignment_id=assignment.assignment_id)
            assignment.is_primary = True
            await flush(self.db)

        logger.info(f"Primary role for user {user_id} set to {role_id}")
        return ServiceResult.ok("Primary role updated", data=assignment)

    async def update_assignment(
        self,
        assignment_id: int,
        data: RoleAssignmentUpdate,
        updated_by: Optional[UUID] = None,
    ) -> ServiceResult:
        changes = data.changes()
        if not changes:
            return ServiceResult.fail(RBACErrorCode.VALIDATION, "No valid fields to update")

        now = datetime.utcnow()
        if changes.get("expires_at") is not None and changes["expires_at"] <= now:
            return ServiceResult.fail(RBACErrorCode.VALIDATION, "Expiry must be in the future")

        async with atomic(self.db):
            assignment = await scalar_one_or_none(
                self.db,
                select(UserRoleAssignment).where(UserRoleAssignment.assignment_id == assignment_id),
            )
            if assignment is None:
                return ServiceResult.fail(
                    RBACErrorCode.NOT_FOUND,
                    "Role assignment not found",
                    f"No assignment with id {assignment_id}",
                )
            if not assignment.is_active:
                return ServiceResult.fail(
                    RBACErrorCode.VALIDATION,
                    "Only active assignments can be updated",
                    f"Assignment {assignment_id} was revoked",
                )

            if changes.get("is_primary") is True:
                await demote_primary(self.db, assignment.user_id, keep_assignment_id=assignment_id)

            for field_name, value in changes.items():
                setattr(assignment, field_name, value)
            await flush(self.db)

        logger.info(
            f"Assignment {assignment_id} updated",
            extra={"extra_data": {
                "fields": sorted(changes),
                "updated_by": str(updated_by) if updated_by else None,
            }},
        )
        return ServiceResult.ok("Assignment updated", data=assignment)

    # -------------------------------------------------------------------------
    # Batch mutations
    # -------------------------------------------------------------------------

    async def bulk_assign_roles(self, request: BulkRoleAssignment) -> ServiceResult:
        """
        Run every assignment tuple independently.

        The batch never rolls back as a whole; per-item outcomes land in the
        returned ``BatchResult``.
        """
        limit = self.settings.bulk_assign_limit
        if len(request.assignments) > limit:
            return ServiceResult.fail(
                RBACErrorCode.VALIDATION,
                "Too many assignments",
                f"A bulk assignment accepts at most {limit} entries",
            )

        batch = BatchResult()
        for item in request.assignments:
            try:
                result = await self.assign(item)
            except StorageError as e:
                logger.error(f"Bulk assignment storage failure for user {item.user_id}: {e}")
                result = ServiceResult.fail(e.code, e.message)

            if result.success:
                batch.successful.append({
                    "user_id": item.user_id,
                    "role_id": item.role_id,
                    "assignment_id": result.data.assignment_id,
                })
            else:
                batch.failed.append({
                    "user_id": item.user_id,
                    "role_id": item.role_id,
                    "error": result.message,
                    "code": result.code,
                })

        logger.info(
            f"Processed {batch.total} assignments: {len(batch.successful)} successful, {len(batch.failed)} failed"
        )
        return ServiceResult.ok(
            f"Processed {batch.total} assignments: {len(batch.successful)} successful, {len(batch.failed)} failed",
            data=batch,
            code=RBACErrorCode.PARTIAL_BATCH_FAILURE if batch.has_failures else None,
        )

    async def transfer_roles(self, request: RoleTransferRequest) -> ServiceResult:
        """
        Move every active role of one user to another.

        Each role moves in its own unit of work (revoke from the source, assign
        to the target, keeping the primary flag). A role that cannot move is
        reported and the rest continue.
        """
        source_id, target_id = request.from_user_id, request.to_user_id
        for user_id, label in ((source_id, "Source"), (target_id, "Target")):
            user = await self.users.find_user_by_id(user_id)
            if user is None:
                return ServiceResult.fail(RBACErrorCode.NOT_FOUND, f"{label} user not found", f"No user with id {user_id}")
            if user_id == target_id and not getattr(user, "is_active", True):
                return ServiceResult.fail(
                    RBACErrorCode.VALIDATION, "Target user is not active", f"User {user_id} is deactivated"
                )

        now = datetime.utcnow()
        source_assignments = await scalars(
            self.db,
            select(UserRoleAssignment)
            .options(selectinload(UserRoleAssignment.role))
            .where(UserRoleAssignment.user_id == source_id, assignment_is_current(now))
            .order_by(UserRoleAssignment.assigned_at.asc(), UserRoleAssignment.assignment_id.asc()),
        )
        if not source_assignments:
            return ServiceResult.fail(RBACErrorCode.NOT_FOUND, "Source user has no active roles to transfer")

        plan = [(a.assignment_id, a.role_id, a.role.name, bool(a.is_primary)) for a in source_assignments]
        batch = BatchResult()
        for assignment_id, role_id, role_name, was_primary in plan:
            try:
                error = await self._transfer_one(assignment_id, role_id, target_id, was_primary, request)
            except StorageError as e:
                logger.error(f"Transfer of role {role_name} failed: {e}")
                error = (e.code, e.message)

            if error is None:
                batch.successful.append({"role_id": role_id, "role_name": role_name, "was_primary": was_primary})
            else:
                code, message = error
                batch.failed.append({"role_id": role_id, "role_name": role_name, "error": message, "code": code})

        if batch.has_failures:
            async with atomic(self.db):
                await promote_oldest_to_primary(self.db, source_id)

        logger.info(
            f"Transferred {len(batch.successful)} of {batch.total} roles from {source_id} to {target_id}",
            extra={"extra_data": {
                "transferred_by": str(request.transferred_by) if request.transferred_by else None,
            }},
        )
        return ServiceResult.ok(
            f"Transferred {len(batch.successful)} of {batch.total} roles successfully",
            data=batch,
            code=RBACErrorCode.PARTIAL_BATCH_FAILURE if batch.has_failures else None,
        )

    async def cleanup_expired_assignments(self, revoked_by: Optional[UUID] = None) -> ServiceResult:
        """Deactivate assignments that are flagged active but past their expiry."""
        now = datetime.utcnow()
        async with atomic(self.db):
            expired = await scalars(
                self.db,
                select(UserRoleAssignment).where(
                    UserRoleAssignment.is_active.is_(True),
                    UserRoleAssignment.expires_at.is_not(None),
                    UserRoleAssignment.expires_at <= now,
                ),
            )
            roles = {a.role_id for a in expired}
            primary_users = {a.user_id for a in expired if a.is_primary}
            for assignment in expired:
                self._stamp_revoked(assignment, revoked_by, "expired", now)
            await flush(self.db)

            for user_id in primary_users:
                await promote_oldest_to_primary(self.db, user_id, now)
            for role_id in roles:
                await recompute_user_count(self.db, role_id)

        logger.info(f"Cleaned up {len(expired)} expired role assignments", extra={"extra_data": {"roles": len(roles)}})
        return ServiceResult.ok(
            f"Deactivated {len(expired)} expired assignments",
            data={"deactivated": len(expired), "roles_updated": len(roles)},
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_user_roles(
        self,
        user_id: UUID,
        include_inactive: bool = False,
        include_expired: bool = False,
        include_permissions: bool = False,
    ) -> list[dict]:
        """Assignments of one user joined with their roles, primary first."""
        now = datetime.utcnow()
        stmt = (
            select(UserRoleAssignment, Role)
            .join(Role, Role.role_id == UserRoleAssignment.role_id)
            .where(UserRoleAssignment.user_id == user_id, Role.deleted_at.is_(None))
        )
        if not include_inactive:
            stmt = stmt.where(UserRoleAssignment.is_active.is_(True), Role.is_active.is_(True))
        if not include_expired:
            stmt = stmt.where(
                or_(UserRoleAssignment.expires_at.is_(None), UserRoleAssignment.expires_at > now)
            )
        stmt = stmt.order_by(
            UserRoleAssignment.is_primary.desc(),
            Role.priority.asc(),
            UserRoleAssignment.assigned_at.asc(),
            UserRoleAssignment.assignment_id.asc(),
        )
        result = await self._rows(stmt)

        views = []
        for assignment, role in result:
            view = assignment.to_dict()
            view.update({
                "role_name": role.name,
                "role_display_name": role.display_name,
                "role_description": role.description,
                "role_priority": role.priority,
                "is_expired": assignment.is_expired(now),
            })
            if include_permissions:
                view["permissions"] = await self._role_permission_names(role.role_id, now)
            views.append(view)
        return views

    async def get_role_users(
        self,
        role_id: UUID,
        include_inactive: bool = False,
        include_expired: bool = False,
        search: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page[dict]:
        """Members of one role, primary holders first, newest first."""
        page = max(1, page)
        page_size = self.settings.clamp_page_size(page_size or self.settings.role_users_page_size)
        now = datetime.utcnow()

        conditions: list[Any] = [UserRoleAssignment.role_id == role_id]
        if not include_inactive:
            conditions.append(UserRoleAssignment.is_active.is_(True))
            conditions.append(User.is_active.is_(True))
        if not include_expired:
            conditions.append(or_(UserRoleAssignment.expires_at.is_(None), UserRoleAssignment.expires_at > now))
        if search and search.strip():
            term = f"%{search.strip()}%"
            conditions.append(or_(User.email.ilike(term), User.first_name.ilike(term), User.last_name.ilike(term)))

        base = select(UserRoleAssignment, User).join(User, User.user_id == UserRoleAssignment.user_id)
        total = await scalar(
            self.db,
            select(func.count())
            .select_from(UserRoleAssignment)
            .join(User, User.user_id == UserRoleAssignment.user_id)
            .where(*conditions),
        )
        stmt = (
            base.where(*conditions)
            .order_by(
                UserRoleAssignment.is_primary.desc(),
                UserRoleAssignment.assigned_at.desc(),
                UserRoleAssignment.assignment_id.desc(),
            )
            .offset((page - 1) * page_size)
            .limit(page_size)
        )

        items = []
        for assignment, user in await self._rows(stmt):
            view = assignment.to_dict()
            view.update({
                "email": user.email,
                "full_name": user.full_name,
                "is_verified": user.is_verified,
                "is_expired": assignment.is_expired(now),
            })
            items.append(view)
        return Page(items=items, page=page, page_size=page_size, total=total or 0)

    async def user_has_role(self, user_id: UUID, role: Union[UUID, str]) -> bool:
        """True if the user currently holds the role, given by id or by name."""
        stmt = (
            select(UserRoleAssignment.assignment_id)
            .join(Role, Role.role_id == UserRoleAssignment.role_id)
            .where(
                UserRoleAssignment.user_id == user_id,
                assignment_is_current(datetime.utcnow()),
                Role.is_active.is_(True),
                Role.deleted_at.is_(None),
            )
            .limit(1)
        )
        if isinstance(role, UUID):
            stmt = stmt.where(Role.role_id == role)
        else:
            stmt = stmt.where(Role.name == role.strip().lower())
        return await scalar(self.db, stmt) is not None

    async def get_primary_role(self, user_id: UUID) -> Optional[Role]:
        stmt = (
            select(Role)
            .join(UserRoleAssignment, UserRoleAssignment.role_id == Role.role_id)
            .where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_primary.is_(True),
                assignment_is_current(datetime.utcnow()),
                Role.deleted_at.is_(None),
            )
            .limit(1)
        )
        return await scalar_one_or_none(self.db, stmt)

    async def get_assignment_statistics(self, user_id: Optional[UUID] = None) -> dict:
        now = datetime.utcnow()
        stmt = select(UserRoleAssignment)
        if user_id is not None:
            stmt = stmt.where(UserRoleAssignment.user_id == user_id)
        assignments = await scalars(self.db, stmt)

        current = [a for a in assignments if a.is_active and not a.is_expired(now)]
        return {
            "user_id": user_id,
            "total_assignments": len(assignments),
            "active_assignments": len(current),
            "primary_assignments": sum(1 for a in current if a.is_primary),
            "expiring_assignments": sum(
                1 for a in current if a.expires_at is not None and a.expires_at <= now + EXPIRING_SOON_WINDOW
            ),
            "expired_assignments": sum(1 for a in assignments if a.is_active and a.is_expired(now)),
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _check_user(self, user_id: UUID) -> Optional[ServiceResult]:
        if await self.users.find_user_by_id(user_id) is None:
            return ServiceResult.fail(RBACErrorCode.NOT_FOUND, "User not found", f"No user with id {user_id}")
        return None

    async def _active_assignment(self, user_id: UUID, role_id: UUID) -> Optional[UserRoleAssignment]:
        stmt = (
            select(UserRoleAssignment)
            .where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.role_id == role_id,
                UserRoleAssignment.is_active.is_(True),
            )
            .order_by(UserRoleAssignment.assigned_at.desc(), UserRoleAssignment.assignment_id.desc())
            .limit(1)
        )
        return await scalar_one_or_none(self.db, stmt)

    async def _transfer_one(
        self,
        assignment_id: int,
        role_id: UUID,
        target_id: UUID,
        was_primary: bool,
        request: RoleTransferRequest,
    ) -> Optional[tuple[RBACErrorCode, str]]:
        """Revoke-then-assign one role. Returns ``(code, message)`` on failure."""
        now = datetime.utcnow()
        async with atomic(self.db):
            role = await lock_role(self.db, role_id)
            if role is None or role.is_deleted or not role.is_active:
                return RBACErrorCode.NOT_FOUND, "Role not found or inactive"

            source = await scalar_one_or_none(
                self.db,
                select(UserRoleAssignment).where(UserRoleAssignment.assignment_id == assignment_id),
            )
            if source is None or not source.is_active:
                return RBACErrorCode.NOT_FOUND, "Role assignment no longer active"

            existing = await self._active_assignment(target_id, role_id)
            if existing is not None and not existing.is_expired(now):
                return RBACErrorCode.CONFLICT, "Target user already has this role assigned"

            reason = request.reason or f"Role transferred to user {target_id}"
            self._stamp_revoked(source, request.transferred_by, reason, now)
            if existing is not None:
                self._stamp_revoked(existing, request.transferred_by, "expired", now)

            if was_primary:
                await demote_primary(self.db, target_id)
            self.db.add(
                UserRoleAssignment(
                    user_id=target_id,
                    role_id=role_id,
                    is_active=True,
                    is_primary=was_primary,
                    assigned_by=request.transferred_by,
                    assigned_at=now,
                    expires_at=source.expires_at,
                    context=AssignmentContext.TRANSFER,
                    assignment_reason=request.reason or f"Role transferred from user {source.user_id}",
                    conditions=source.conditions,
                )
            )
            await flush(self.db)
            await recompute_user_count(self.db, role_id)
        return None

    async def _role_permission_names(self, role_id: UUID, now: datetime) -> list[str]:
        stmt = (
            select(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.permission_id)
            .where(
                RolePermission.role_id == role_id,
                grant_is_current(now),
                Permission.is_active.is_(True),
                Permission.deleted_at.is_(None),
            )
            .order_by(Permission.name.asc())
        )
        return await scalars(self.db, stmt)

    async def _rows(self, stmt) -> list:
        result = await execute(self.db, stmt)
        return list(result.all())

    @staticmethod
    def _conditions_for_storage(conditions: Union[AssignmentConditions, dict, None]) -> Optional[dict]:
        if conditions is None:
            return None
        if isinstance(conditions, dict):
            conditions = AssignmentConditions.model_validate(conditions)
        return conditions.to_storage() or None

    @staticmethod
    def _stamp_revoked(
        assignment: UserRoleAssignment,
        actor: Optional[UUID],
        reason: Optional[str],
        now: datetime,
    ) -> None:
        assignment.is_active = False
        assignment.is_primary = False
        assignment.revoked_by = actor
        assignment.revoked_at = now
        assignment.revocation_reason = reason
