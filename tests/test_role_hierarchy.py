"""Tests for the role hierarchy service."""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from rbac.exceptions import RBACErrorCode
from rbac.models import Role, UserRoleAssignment
from rbac.schemas import RoleCreate, RoleDelete, RoleSearch, RoleUpdate


def _default_count(db_session):
    return db_session.execute(
        select(func.count()).select_from(Role).where(Role.is_default.is_(True))
    ).scalar()


class TestCreateRole:
    """Tests for role creation."""

    async def test_creates_role_with_defaults(self, hierarchy):
        result = await hierarchy.create_role(RoleCreate(name="  Support_Agent ", display_name="Support Agent"))

        assert result.success
        role = result.data
        assert role.name == "support_agent"
        assert role.user_count == 0
        assert role.is_active is True
        assert role.parent_role_id is None

    async def test_rejects_invalid_name_pattern(self, hierarchy):
        result = await hierarchy.create_role(RoleCreate(name="bad-name", display_name="Bad"))

        assert not result.success
        assert result.code == RBACErrorCode.VALIDATION

    async def test_rejects_trailing_underscore(self, hierarchy):
        result = await hierarchy.create_role(RoleCreate(name="support_", display_name="Support"))

        assert result.code == RBACErrorCode.VALIDATION

    async def test_rejects_duplicate_name(self, hierarchy, make_role):
        await make_role("auditor")

        result = await hierarchy.create_role(RoleCreate(name="auditor", display_name="Another"))

        assert not result.success
        assert result.code == RBACErrorCode.CONFLICT

    async def test_rejects_missing_parent(self, hierarchy):
        result = await hierarchy.create_role(
            RoleCreate(name="orphan", display_name="Orphan", parent_role_id=uuid4())
        )

        assert result.code == RBACErrorCode.NOT_FOUND

    async def test_new_default_clears_previous_default(self, db_session, hierarchy, make_role):
        first = await make_role("viewer", is_default=True)
        second = await make_role("guest", is_default=True)

        assert second.is_default is True
        assert first.is_default is False
        assert _default_count(db_session) == 1
        assert (await hierarchy.get_default_role()).role_id == second.role_id


class TestUpdateRole:
    """Tests for role updates, including cycle prevention."""

    async def test_rejects_cycle_between_manager_and_employee(self, hierarchy, make_role):
        employee = await make_role("employee")
        manager = await make_role("manager", priority=5, parent_role_id=employee.role_id)

        result = await hierarchy.update_role(employee.role_id, RoleUpdate(parent_role_id=manager.role_id))

        assert not result.success
        assert result.code == RBACErrorCode.CONFLICT
        assert "circular" in result.message.lower()
        assert employee.parent_role_id is None

    async def test_rejects_cycle_through_longer_chain(self, hierarchy, make_role):
        root = await make_role("root_role")
        middle = await make_role("middle_role", parent_role_id=root.role_id)
        leaf = await make_role("leaf_role", parent_role_id=middle.role_id)

        result = await hierarchy.update_role(root.role_id, RoleUpdate(parent_role_id=leaf.role_id))

        assert result.code == RBACErrorCode.CONFLICT

    async def test_rejects_self_parent(self, hierarchy, make_role):
        role = await make_role("lonely")

        result = await hierarchy.update_role(role.role_id, RoleUpdate(parent_role_id=role.role_id))

        assert result.code == RBACErrorCode.CONFLICT

    async def test_allows_reparenting_to_unrelated_role(self, hierarchy, make_role):
        first = await make_role("first_role")
        second = await make_role("second_role")

        result = await hierarchy.update_role(second.role_id, RoleUpdate(parent_role_id=first.role_id))

        assert result.success
        assert second.parent_role_id == first.role_id

    async def test_name_is_immutable(self, hierarchy, make_role):
        role = await make_role("analyst")

        result = await hierarchy.update_role(role.role_id, RoleUpdate(name="researcher"))

        assert result.code == RBACErrorCode.VALIDATION
        assert role.name == "analyst"

    async def test_empty_update_is_rejected(self, hierarchy, make_role):
        role = await make_role("analyst")

        result = await hierarchy.update_role(role.role_id, RoleUpdate())

        assert result.code == RBACErrorCode.VALIDATION

    async def test_none_for_required_column_is_not_a_change(self, hierarchy, make_role):
        role = await make_role("analyst", priority=7)

        result = await hierarchy.update_role(role.role_id, RoleUpdate(priority=None, is_active=None))

        assert not result.success
        assert result.code == RBACErrorCode.VALIDATION
        assert role.priority == 7
        assert role.is_active is True

    async def test_none_clears_nullable_columns(self, hierarchy, make_role):
        parent = await make_role("lead")
        role = await make_role("analyst", parent_role_id=parent.role_id, max_users=5, description="Numbers")

        result = await hierarchy.update_role(
            role.role_id,
            RoleUpdate(parent_role_id=None, max_users=None, description=None, display_name=None),
        )

        assert result.success
        assert role.parent_role_id is None
        assert role.max_users is None
        assert role.description is None
        assert role.display_name == "Analyst"

    async def test_system_role_display_name_is_protected(self, hierarchy, make_role):
        role = await make_role("owner", is_system_role=True)

        result = await hierarchy.update_role(role.role_id, RoleUpdate(display_name="Boss"))

        assert result.code == RBACErrorCode.PROTECTED_ENTITY

    async def test_rejects_max_users_below_user_count(self, hierarchy, engine, make_role, make_user):
        role = await make_role("crew")
        for _ in range(3):
            assert (await engine.assign_role(make_user().user_id, role.role_id)).success

        result = await hierarchy.update_role(role.role_id, RoleUpdate(max_users=2))

        assert result.code == RBACErrorCode.CONFLICT
        assert role.max_users is None

    async def test_setting_default_clears_other_defaults(self, db_session, hierarchy, make_role):
        viewer = await make_role("viewer", is_default=True)
        guest = await make_role("guest")

        result = await hierarchy.update_role(guest.role_id, RoleUpdate(is_default=True))

        assert result.success
        assert viewer.is_default is False
        assert _default_count(db_session) == 1

    async def test_unknown_role(self, hierarchy):
        result = await hierarchy.update_role(uuid4(), RoleUpdate(description="x"))

        assert result.code == RBACErrorCode.NOT_FOUND


class TestGetHierarchy:
    """Tests for ancestor chain lookups."""

    async def test_returns_role_then_ancestors(self, hierarchy, make_role):
        employee = await make_role("employee")
        manager = await make_role("manager", parent_role_id=employee.role_id)
        admin = await make_role("admin", parent_role_id=manager.role_id)

        chain = await hierarchy.get_hierarchy(admin.role_id)

        assert [role.name for role in chain] == ["admin", "manager", "employee"]

    async def test_chain_is_capped_at_max_depth(self, hierarchy, make_role, settings):
        parent_id = None
        for i in range(settings.hierarchy_max_depth + 3):
            role = await make_role(f"level_{i}", parent_role_id=parent_id)
            parent_id = role.role_id

        chain = await hierarchy.get_hierarchy(parent_id)

        assert len(chain) == settings.hierarchy_max_depth

    async def test_corrupted_cycle_still_terminates(self, db_session, hierarchy, make_role):
        first = await make_role("first_role")
        second = await make_role("second_role", parent_role_id=first.role_id)
        # Bypass the service to simulate a loop written by another tool.
        first.parent_role_id = second.role_id
        db_session.commit()

        chain = await hierarchy.get_hierarchy(first.role_id)

        assert [role.name for role in chain] == ["first_role", "second_role"]

    async def test_get_role_with_parent_and_children(self, hierarchy, make_role):
        employee = await make_role("employee")
        manager = await make_role("manager", parent_role_id=employee.role_id)

        view = await hierarchy.get_role(employee.role_id, include_children=True)
        child_view = await hierarchy.get_role(manager.role_id, include_parent=True)

        assert [child["name"] for child in view["children"]] == ["manager"]
        assert child_view["parent"]["name"] == "employee"
        assert child_view["has_capacity_limit"] is False


class TestDeleteRole:
    """Tests for the role deletion state machine."""

    async def test_system_role_requires_force(self, hierarchy, make_role):
        role = await make_role("owner", is_system_role=True)

        result = await hierarchy.delete_role(role.role_id)

        assert result.code == RBACErrorCode.PROTECTED_ENTITY
        assert role.deleted_at is None

    async def test_role_with_users_requires_replacement_or_force(self, hierarchy, engine, make_role, make_user):
        role = await make_role("temp")
        await engine.assign_role(make_user().user_id, role.role_id)

        result = await hierarchy.delete_role(role.role_id)

        assert result.code == RBACErrorCode.IN_USE
        assert role.deleted_at is None
        assert role.user_count == 1

    async def test_reassigns_users_to_replacement(self, db_session, hierarchy, engine, make_role, make_user):
        old = await make_role("temp")
        replacement = await make_role("staff")
        users = [make_user() for _ in range(2)]
        for user in users:
            await engine.assign_role(user.user_id, old.role_id, is_primary=True)

        result = await hierarchy.delete_role(old.role_id, RoleDelete(replacement_role_id=replacement.role_id))

        assert result.success
        assert result.data["reassigned_users"] == 2
        assert replacement.user_count == 2
        assert old.user_count == 0
        assert old.deleted_at is not None
        assert old.name.startswith("temp_deleted_")
        for user in users:
            assert await engine.user_has_role(user.user_id, "staff")
            assert (await engine.get_primary_role(user.user_id)).name == "staff"

    async def test_replacement_already_held_revokes_duplicate(self, hierarchy, engine, make_role, make_user):
        old = await make_role("temp")
        replacement = await make_role("staff")
        user = make_user()
        await engine.assign_role(user.user_id, replacement.role_id)
        await engine.assign_role(user.user_id, old.role_id, is_primary=True)

        result = await hierarchy.delete_role(old.role_id, RoleDelete(replacement_role_id=replacement.role_id))

        assert result.data["reassigned_users"] == 0
        assert result.data["revoked_assignments"] == 1
        assert replacement.user_count == 1
        assert (await engine.get_primary_role(user.user_id)).name == "staff"

    async def test_expired_replacement_assignment_does_not_absorb_live_one(
        self, db_session, hierarchy, engine, make_role, make_user
    ):
        old = await make_role("temp")
        replacement = await make_role("staff")
        user = make_user()
        stale = (await engine.assign_role(
            user.user_id, replacement.role_id, expires_at=datetime.utcnow() + timedelta(hours=1)
        )).data
        stale.expires_at = datetime.utcnow() - timedelta(seconds=1)
        db_session.commit()
        live = (await engine.assign_role(user.user_id, old.role_id, is_primary=True)).data

        result = await hierarchy.delete_role(old.role_id, RoleDelete(replacement_role_id=replacement.role_id))

        assert result.data["reassigned_users"] == 1
        assert result.data["revoked_assignments"] == 0
        assert stale.is_active is False
        assert stale.revocation_reason == "expired"
        assert live.is_active is True
        assert live.role_id == replacement.role_id
        assert replacement.user_count == 1
        assert await engine.user_has_role(user.user_id, "staff")
        assert (await engine.get_primary_role(user.user_id)).name == "staff"

    async def test_expired_assignment_on_deleted_role_is_retired(
        self, db_session, hierarchy, engine, make_role, make_user
    ):
        old = await make_role("temp")
        replacement = await make_role("staff")
        user = make_user()
        expired = (await engine.assign_role(
            user.user_id, old.role_id, expires_at=datetime.utcnow() + timedelta(hours=1)
        )).data
        expired.expires_at = datetime.utcnow() - timedelta(seconds=1)
        db_session.commit()

        result = await hierarchy.delete_role(old.role_id, RoleDelete(replacement_role_id=replacement.role_id))

        assert result.data["reassigned_users"] == 0
        assert result.data["revoked_assignments"] == 1
        assert expired.is_active is False
        assert expired.role_id == old.role_id
        assert replacement.user_count == 0
        assert not await engine.user_has_role(user.user_id, "staff")

    async def test_replacement_capacity_is_checked(self, hierarchy, engine, make_role, make_user):
        old = await make_role("temp")
        replacement = await make_role("staff", max_users=1)
        await engine.assign_role(make_user().user_id, replacement.role_id)
        await engine.assign_role(make_user().user_id, old.role_id)

        result = await hierarchy.delete_role(old.role_id, RoleDelete(replacement_role_id=replacement.role_id))

        assert result.code == RBACErrorCode.CONFLICT
        assert old.deleted_at is None

    async def test_force_revokes_assignments_and_promotes_successor(self, hierarchy, engine, make_role, make_user):
        doomed = await make_role("doomed")
        other = await make_role("other")
        user = make_user()
        await engine.assign_role(user.user_id, doomed.role_id, is_primary=True)
        await engine.assign_role(user.user_id, other.role_id)

        result = await hierarchy.delete_role(doomed.role_id, RoleDelete(force=True))

        assert result.success
        assert result.data["revoked_assignments"] == 1
        assert doomed.user_count == 0
        assert (await engine.get_primary_role(user.user_id)).name == "other"

    async def test_detaches_children(self, hierarchy, make_role):
        parent = await make_role("parent_role")
        child = await make_role("child_role", parent_role_id=parent.role_id)

        result = await hierarchy.delete_role(parent.role_id)

        assert result.data["detached_children"] == 1
        assert child.parent_role_id is None

    async def test_revokes_grants_and_recomputes_usage(self, hierarchy, grants, make_role, make_permission):
        role = await make_role("temp")
        keeper = await make_role("keeper")
        permission = await make_permission("reports.read")
        await grants.grant_permission(role.role_id, permission.permission_id)
        await grants.grant_permission(keeper.role_id, permission.permission_id)
        assert permission.usage_count == 2

        result = await hierarchy.delete_role(role.role_id)

        assert result.data["revoked_grants"] == 1
        assert permission.usage_count == 1

    async def test_name_can_be_reused_after_delete(self, hierarchy, make_role):
        role = await make_role("seasonal")
        await hierarchy.delete_role(role.role_id)

        result = await hierarchy.create_role(RoleCreate(name="seasonal", display_name="Seasonal"))

        assert result.success
        assert (await hierarchy.get_role_by_name("seasonal")).role_id == result.data.role_id

    async def test_deleted_role_is_not_found(self, hierarchy, make_role):
        role = await make_role("gone")
        await hierarchy.delete_role(role.role_id)

        assert await hierarchy.get_role(role.role_id) is None
        assert (await hierarchy.delete_role(role.role_id)).code == RBACErrorCode.NOT_FOUND


class TestSearchAndStatistics:
    """Tests for role listings."""

    async def test_search_filters_and_paginates(self, hierarchy, make_role):
        root = await make_role("sales_lead", description="Leads the sales team", priority=30)
        await make_role("sales_rep", parent_role_id=root.role_id, priority=20)
        await make_role("engineer", priority=10)

        page = await hierarchy.search_roles(RoleSearch(search="sales"), page=1, page_size=1)

        assert page.total == 2
        assert page.total_pages == 2
        assert page.has_next
        assert [role.name for role in page.items] == ["sales_lead"]

        roots = await hierarchy.search_roles(RoleSearch(roots_only=True, sort_by="name", sort_order="asc"))
        assert [role.name for role in roots.items] == ["engineer", "sales_lead"]

        children = await hierarchy.search_roles(RoleSearch(parent_role_id=root.role_id))
        assert [role.name for role in children.items] == ["sales_rep"]

    async def test_has_users_filter(self, hierarchy, engine, make_role, make_user):
        busy = await make_role("busy")
        await make_role("idle")
        await engine.assign_role(make_user().user_id, busy.role_id)

        page = await hierarchy.search_roles(RoleSearch(has_users=True))

        assert [role.name for role in page.items] == ["busy"]

    async def test_statistics(self, hierarchy, engine, make_role, make_user):
        parent = await make_role("parent_role", is_system_role=True)
        child = await make_role("child_role", parent_role_id=parent.role_id, is_default=True)
        await engine.assign_role(make_user().user_id, child.role_id)

        stats = await hierarchy.get_statistics()

        assert stats["total_roles"] == 2
        assert stats["system_roles"] == 1
        assert stats["default_roles"] == 1
        assert stats["root_roles"] == 1
        assert stats["roles_with_users"] == 1
        assert stats["total_user_assignments"] == 1
        assert stats["max_users_in_role"] == 1


class TestDuplicateRole:
    """Tests for copying roles."""

    async def test_copies_role_and_grants(self, hierarchy, grants, make_role, make_permission):
        source = await make_role("editor", is_system_role=True, is_default=True)
        permission = await make_permission("articles.edit")
        await grants.grant_permission(source.role_id, permission.permission_id)

        result = await hierarchy.duplicate_role(source.role_id, "senior_editor")

        assert result.success
        copy = result.data
        assert copy.is_system_role is False
        assert copy.is_default is False
        assert copy.display_name == "Editor (Copy)"
        assert [g.permission.name for g in await grants.get_role_permissions(copy.role_id)] == ["articles.edit"]
        assert permission.usage_count == 2

    async def test_invalid_copy_name(self, hierarchy, make_role):
        source = await make_role("editor")

        result = await hierarchy.duplicate_role(source.role_id, "x")

        assert result.code == RBACErrorCode.VALIDATION


class TestUserCount:
    """Counter consistency."""

    async def test_recompute_repairs_drift(self, db_session, hierarchy, engine, make_role, make_user):
        role = await make_role("crew")
        await engine.assign_role(make_user().user_id, role.role_id)
        role.user_count = 42
        db_session.commit()

        assert await hierarchy.recompute_user_count(role.role_id) == 1

        active = db_session.execute(
            select(func.count()).select_from(UserRoleAssignment).where(
                UserRoleAssignment.role_id == role.role_id,
                UserRoleAssignment.is_active.is_(True),
            )
        ).scalar()
        assert role.user_count == active
