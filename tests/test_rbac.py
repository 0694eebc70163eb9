"""
Tests for privilegeflow.rbac -- role mapping and permissions.
"""

import pytest

from privilegeflow.errors import Forbidden, UnmappedRoleError
from privilegeflow.models import ReviewLevel, Role
from privilegeflow.rbac import (
    check_permission,
    level_for_role,
    parse_role,
    require_permission,
    roles_for_level,
)


class TestRoleLevels:
    def test_every_role_has_an_entry(self):
        for role in Role:
            level_for_role(role)  # must not raise

    def test_reviewer_roles_map_to_levels(self):
        assert level_for_role(Role.HEAD_OF_SECTION) == ReviewLevel.SUPERVISOR
        assert level_for_role(Role.HEAD_OF_DEPT) == ReviewLevel.DEPARTMENT_HEAD
        assert level_for_role(Role.COMMITTEE_MEMBER) == ReviewLevel.COMMITTEE
        assert level_for_role(Role.MEDICAL_DIRECTOR) == ReviewLevel.MEDICAL_DIRECTOR

    def test_non_reviewer_roles_map_to_none(self):
        for role in (Role.PRACTITIONER, Role.ADMIN, Role.AUDITOR):
            assert level_for_role(role) is None

    def test_roles_for_level(self):
        assert roles_for_level(ReviewLevel.COMMITTEE) == frozenset({Role.COMMITTEE_MEMBER})

    def test_parse_role_is_case_insensitive(self):
        assert parse_role(" head_of_section ") == Role.HEAD_OF_SECTION
        assert parse_role(Role.ADMIN) is Role.ADMIN

    def test_parse_role_rejects_unknown(self):
        with pytest.raises(UnmappedRoleError) as exc_info:
            parse_role("CHIEF_OF_STAFF")
        assert exc_info.value.details["role"] == "CHIEF_OF_STAFF"


class TestPermissions:
    def test_practitioner_can_submit(self):
        assert check_permission(Role.PRACTITIONER, "submit_request") is True

    def test_practitioner_cannot_decide(self):
        assert check_permission(Role.PRACTITIONER, "decide_request") is False

    def test_reviewers_can_decide(self):
        for role in (Role.HEAD_OF_SECTION, Role.HEAD_OF_DEPT,
                     Role.COMMITTEE_MEMBER, Role.MEDICAL_DIRECTOR):
            assert check_permission(role, "decide_request") is True

    def test_auditor_can_export_but_not_submit(self):
        assert check_permission(Role.AUDITOR, "export_audit") is True
        assert check_permission(Role.AUDITOR, "submit_request") is False

    def test_unknown_action_denied(self):
        assert check_permission(Role.ADMIN, "drop_tables") is False

    def test_require_permission_raises_forbidden(self):
        with pytest.raises(Forbidden) as exc_info:
            require_permission(Role.PRACTITIONER, "export_audit")
        assert exc_info.value.code == "FORBIDDEN"

    def test_require_permission_passes_on_allowed(self):
        require_permission(Role.ADMIN, "export_audit")  # should not raise
