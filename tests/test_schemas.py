"""Tests for boundary schemas and result types."""

from uuid import uuid4

import pytest
from pydantic import ValidationError

from rbac.exceptions import RBACError, RBACErrorCode, StorageError
from rbac.models import AssignmentContext
from rbac.results import BatchResult, Page, ServiceResult
from rbac.schemas import (
    AssignmentConditions,
    BulkRoleAssignment,
    RoleAssignmentRequest,
    RoleAssignmentUpdate,
    RoleCreate,
    RoleSearch,
    RoleUpdate,
)


class TestRoleSchemas:
    """Length and range limits on role input."""

    @pytest.mark.parametrize(
        "fields",
        [
            {"name": "a"},
            {"name": "x" * 51},
            {"priority": 1001},
            {"priority": -1001},
            {"max_users": 0},
            {"max_users": 10001},
            {"color_code": "red"},
        ],
    )
    def test_rejects_out_of_range_values(self, fields):
        data = {"name": "clerk", "display_name": "Clerk", **fields}
        with pytest.raises(ValidationError):
            RoleCreate(**data)

    def test_normalizes_name_and_blank_description(self):
        role = RoleCreate(name=" Clerk ", display_name="Clerk", description="   ")

        assert role.name == "clerk"
        assert role.description is None

    def test_update_reports_only_set_fields(self):
        update = RoleUpdate(description="New", parent_role_id=None)

        assert update.changes() == {"description": "New", "parent_role_id": None}

    def test_search_defaults(self):
        search = RoleSearch(search="  ")

        assert search.search is None
        assert search.sort_by == "priority"
        assert search.sort_order == "desc"


class TestAssignmentSchemas:
    """Assignment input contracts."""

    def test_conditions_forbid_unknown_keys(self):
        with pytest.raises(ValidationError):
            AssignmentConditions(department_restriction="sales", shoe_size=42)

    def test_conditions_storage_drops_unset_keys(self):
        conditions = AssignmentConditions(data_access_level="restricted")

        assert conditions.to_storage() == {"data_access_level": "restricted"}

    def test_request_limits_reason_length(self):
        with pytest.raises(ValidationError):
            RoleAssignmentRequest(user_id=uuid4(), role_id=uuid4(), assignment_reason="x" * 501)

    def test_request_accepts_context_value(self):
        request = RoleAssignmentRequest(user_id=uuid4(), role_id=uuid4(), context="temporary_duty")

        assert request.context == AssignmentContext.TEMPORARY_DUTY

    def test_bulk_requires_at_least_one_item(self):
        with pytest.raises(ValidationError):
            BulkRoleAssignment(assignments=[])

    def test_bulk_for_role_shares_settings(self):
        role_id = uuid4()
        users = [uuid4(), uuid4()]

        bulk = BulkRoleAssignment.for_role(role_id, users, context=AssignmentContext.BULK_ONBOARDING)

        assert [item.user_id for item in bulk.assignments] == users
        assert {item.role_id for item in bulk.assignments} == {role_id}
        assert {item.context for item in bulk.assignments} == {AssignmentContext.BULK_ONBOARDING}

    def test_assignment_update_changes(self):
        update = RoleAssignmentUpdate(is_primary=True)

        assert update.changes() == {"is_primary": True}


class TestResults:
    """Result and error types."""

    def test_service_result_constructors(self):
        ok = ServiceResult.ok("Done", data={"id": 1})
        failed = ServiceResult.fail(RBACErrorCode.CONFLICT, "Taken", "Role 'x' exists")

        assert ok.success and ok.data == {"id": 1} and ok.code is None
        assert not failed.success
        assert failed.code == RBACErrorCode.CONFLICT
        assert failed.errors == ["Role 'x' exists"]

    def test_batch_result_counts(self):
        batch = BatchResult(successful=[{"a": 1}], failed=[{"b": 2}, {"c": 3}])

        assert batch.total == 3
        assert batch.has_failures
        assert batch.to_dict()["failed_count"] == 2

    def test_page_navigation(self):
        assert Page(items=[], page=1, page_size=10, total=0).total_pages == 0
        page = Page(items=[1, 2], page=2, page_size=2, total=5)
        assert page.total_pages == 3
        assert page.has_next and page.has_prev

    def test_error_string_includes_code(self):
        assert str(StorageError("Commit failed")) == "[storage_error] Commit failed"
        assert RBACError("Bad", code=RBACErrorCode.IN_USE).code == RBACErrorCode.IN_USE
