"""Tests for role-to-permission grants."""

from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import func, select

from rbac.exceptions import RBACErrorCode
from rbac.models import RolePermission


class TestGrantPermission:
    """Tests for granting permissions to roles."""

    async def test_grant_updates_usage_count(self, grants, make_role, make_permission):
        role = await make_role("clerk")
        permission = await make_permission("orders.read")

        result = await grants.grant_permission(role.role_id, permission.permission_id)

        assert result.success
        assert result.data.is_active is True
        assert permission.usage_count == 1

    async def test_duplicate_active_grant_conflicts(self, grants, make_role, make_permission):
        role = await make_role("clerk")
        permission = await make_permission("orders.read")
        await grants.grant_permission(role.role_id, permission.permission_id)

        result = await grants.grant_permission(role.role_id, permission.permission_id)

        assert result.code == RBACErrorCode.CONFLICT
        assert permission.usage_count == 1

    async def test_regrant_reactivates_existing_row(self, db_session, grants, make_role, make_permission):
        role = await make_role("clerk")
        permission = await make_permission("orders.read")
        first = (await grants.grant_permission(role.role_id, permission.permission_id)).data
        await grants.revoke_permission(role.role_id, permission.permission_id)

        second = (await grants.grant_permission(role.role_id, permission.permission_id)).data

        assert second.grant_id == first.grant_id
        assert second.revoked_at is None
        assert permission.usage_count == 1
        rows = db_session.execute(select(func.count()).select_from(RolePermission)).scalar()
        assert rows == 1

    async def test_rejects_inactive_permission(self, grants, make_role, make_permission):
        role = await make_role("clerk")
        permission = await make_permission("orders.read", is_active=False)

        result = await grants.grant_permission(role.role_id, permission.permission_id)

        assert result.code == RBACErrorCode.VALIDATION

    async def test_rejects_unknown_role_and_permission(self, grants, make_role, make_permission):
        role = await make_role("clerk")
        permission = await make_permission("orders.read")

        assert (await grants.grant_permission(uuid4(), permission.permission_id)).code == RBACErrorCode.NOT_FOUND
        assert (await grants.grant_permission(role.role_id, uuid4())).code == RBACErrorCode.NOT_FOUND

    async def test_rejects_past_expiry(self, grants, make_role, make_permission):
        role = await make_role("clerk")
        permission = await make_permission("orders.read")

        result = await grants.grant_permission(
            role.role_id, permission.permission_id, expires_at=datetime.utcnow() - timedelta(minutes=1)
        )

        assert result.code == RBACErrorCode.VALIDATION


class TestRevokePermission:
    """Tests for revoking grants."""

    async def test_revoke_stamps_audit_fields(self, grants, make_role, make_permission):
        role = await make_role("clerk")
        permission = await make_permission("orders.read")
        await grants.grant_permission(role.role_id, permission.permission_id)
        actor = uuid4()

        result = await grants.revoke_permission(role.role_id, permission.permission_id, revoked_by=actor)

        grant = result.data
        assert grant.is_active is False
        assert grant.revoked_by == actor
        assert grant.revocation_reason == "manual_revocation"
        assert permission.usage_count == 0

    async def test_revoke_without_active_grant(self, grants, make_role, make_permission):
        role = await make_role("clerk")
        permission = await make_permission("orders.read")

        result = await grants.revoke_permission(role.role_id, permission.permission_id)

        assert result.code == RBACErrorCode.NOT_FOUND


class TestBulkGrantAndQueries:
    """Tests for bulk grants and grant listings."""

    async def test_partial_failure_is_reported_per_item(self, grants, make_role, make_permission):
        role = await make_role("clerk")
        read = await make_permission("orders.read")
        create = await make_permission("orders.create")
        await grants.grant_permission(role.role_id, read.permission_id)

        result = await grants.grant_permissions(role.role_id, [read.permission_id, create.permission_id, uuid4()])

        assert result.success
        assert result.code == RBACErrorCode.PARTIAL_BATCH_FAILURE
        batch = result.data
        assert [item["permission_id"] for item in batch.successful] == [create.permission_id]
        assert [item["code"] for item in batch.failed] == [RBACErrorCode.CONFLICT, RBACErrorCode.NOT_FOUND]
        assert batch.to_dict()["total"] == 3

    async def test_role_permissions_hide_expired_and_revoked(self, db_session, grants, make_role, make_permission):
        role = await make_role("clerk")
        read = await make_permission("orders.read")
        create = await make_permission("orders.create")
        export = await make_permission("orders.export")
        await grants.grant_permission(role.role_id, read.permission_id)
        expiring = (await grants.grant_permission(
            role.role_id, create.permission_id, expires_at=datetime.utcnow() + timedelta(hours=1)
        )).data
        await grants.grant_permission(role.role_id, export.permission_id)
        await grants.revoke_permission(role.role_id, export.permission_id)
        expiring.expires_at = datetime.utcnow() - timedelta(seconds=1)
        db_session.commit()

        current = await grants.get_role_permissions(role.role_id)
        with_expired = await grants.get_role_permissions(role.role_id, include_expired=True)
        everything = await grants.get_role_permissions(role.role_id, include_inactive=True, include_expired=True)

        assert [g.permission.name for g in current] == ["orders.read"]
        assert sorted(g.permission.name for g in with_expired) == ["orders.create", "orders.read"]
        assert len(everything) == 3

    async def test_permission_roles(self, grants, make_role, make_permission):
        low = await make_role("clerk", priority=1)
        high = await make_role("boss", priority=9)
        permission = await make_permission("orders.read")
        await grants.grant_permission(low.role_id, permission.permission_id)
        await grants.grant_permission(high.role_id, permission.permission_id)

        rows = await grants.get_permission_roles(permission.permission_id)

        assert [g.role.name for g in rows] == ["boss", "clerk"]
