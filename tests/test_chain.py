"""
Tests for privilegeflow.chain -- Chain Builder.

Covers: in-specialty vs. cross-specialty chains for an orthodontist,
supervisor resolution and silent skipping, department scoping, lowest-id
tie-break, requester exclusion, NoApproverAvailable naming the level,
input validation, and core auto-approval.
"""

from __future__ import annotations

import pytest

from privilegeflow.chain import ChainBuilder, parse_request_kind
from privilegeflow.directory import OrganizationDirectory
from privilegeflow.errors import NoApproverAvailable, NotFound, ValidationError
from privilegeflow.models import (
    Practitioner,
    PractitionerType,
    PrivilegeCategory,
    RequestKind,
    ReviewLevel,
    Role,
)

from conftest import build_practitioners


def _make_directory(drop=(), extra=(), patch=None) -> OrganizationDirectory:
    people = [p for p in build_practitioners() if p.practitioner_id not in drop]
    for p in people:
        for field, value in (patch or {}).get(p.practitioner_id, {}).items():
            setattr(p, field, value)
    return OrganizationDirectory([*people, *extra])


def _levels(result):
    return [(e.level, e.reviewer_id) for e in result.entries]


# ---------------------------------------------------------------------------
# 1. Specialty-driven chains
# ---------------------------------------------------------------------------

class TestSpecialtyChains:
    def test_all_orthodontics_gives_three_levels(self, directory, catalog, policy):
        builder = ChainBuilder(directory, catalog, policy)
        result = builder.build("dr_ortho", ["ORTHO-ADV-01", "ORTHO-ADV-02"], RequestKind.NEW)
        assert _levels(result) == [
            (ReviewLevel.SUPERVISOR, "sec_ortho"),
            (ReviewLevel.DEPARTMENT_HEAD, "hod_ortho"),
            (ReviewLevel.MEDICAL_DIRECTOR, "med_director"),
        ]
        assert result.specialty_match is True
        assert result.auto_approved is False

    def test_one_endodontics_privilege_adds_committee(self, directory, catalog, policy):
        builder = ChainBuilder(directory, catalog, policy)
        result = builder.build("dr_ortho", ["ORTHO-ADV-01", "ENDO-ADV-01"], RequestKind.NEW)
        assert result.levels == [
            ReviewLevel.SUPERVISOR,
            ReviewLevel.DEPARTMENT_HEAD,
            ReviewLevel.COMMITTEE,
            ReviewLevel.MEDICAL_DIRECTOR,
        ]
        assert ("COMMITTEE", "committee_chair") in [
            (lvl.value, rid) for lvl, rid in _levels(result)
        ]
        assert result.specialty_match is False

    def test_extra_privilege_adds_committee(self, directory, catalog, policy):
        builder = ChainBuilder(directory, catalog, policy)
        result = builder.build("dr_ortho", ["IMPLANT-EX-01"], RequestKind.RENEWAL)
        assert ReviewLevel.COMMITTEE in result.levels
        assert result.privilege_class == PrivilegeCategory.EXTRA

    def test_core_only_is_auto_approved(self, directory, catalog, policy):
        builder = ChainBuilder(directory, catalog, policy)
        result = builder.build("dr_ortho", ["ORTHO-CORE-01", "ORTHO-CORE-02"], RequestKind.NEW)
        assert result.entries == []
        assert result.auto_approved is True


# ---------------------------------------------------------------------------
# 2. Supervisor resolution
# ---------------------------------------------------------------------------

class TestSupervisor:
    def test_inactive_manager_is_skipped(self, catalog, policy):
        directory = _make_directory(patch={"sec_ortho": {"active": False}})
        result = ChainBuilder(directory, catalog, policy).build(
            "dr_ortho", ["ORTHO-ADV-01"], RequestKind.NEW,
        )
        assert ReviewLevel.SUPERVISOR not in result.levels
        assert result.levels[0] == ReviewLevel.DEPARTMENT_HEAD

    def test_manager_without_supervisor_role_is_skipped(self, catalog, policy):
        directory = _make_directory(patch={"dr_ortho": {"manager_id": "med_director"}})
        result = ChainBuilder(directory, catalog, policy).build(
            "dr_ortho", ["ORTHO-ADV-01"], RequestKind.NEW,
        )
        assert ReviewLevel.SUPERVISOR not in result.levels

    def test_missing_manager_is_skipped(self, catalog, policy):
        directory = _make_directory(patch={"dr_ortho": {"manager_id": None}})
        result = ChainBuilder(directory, catalog, policy).build(
            "dr_ortho", ["ORTHO-ADV-01"], RequestKind.NEW,
        )
        assert result.levels == [ReviewLevel.DEPARTMENT_HEAD, ReviewLevel.MEDICAL_DIRECTOR]

    def test_manager_pointer_is_not_walked(self, catalog, policy):
        # dr_ortho -> mso_office (admin) -> sec_ortho: the section head two hops
        # away must not be picked up.
        directory = _make_directory(
            patch={
                "dr_ortho": {"manager_id": "mso_office"},
                "mso_office": {"manager_id": "sec_ortho"},
            }
        )
        result = ChainBuilder(directory, catalog, policy).build(
            "dr_ortho", ["ORTHO-ADV-01"], RequestKind.NEW,
        )
        assert ReviewLevel.SUPERVISOR not in result.levels


# ---------------------------------------------------------------------------
# 3. Reviewer lookup for mandatory levels
# ---------------------------------------------------------------------------

class TestMandatoryLevels:
    def test_missing_department_head_fails_naming_level(self, catalog, policy):
        directory = _make_directory(drop={"hod_ortho"})
        with pytest.raises(NoApproverAvailable) as exc_info:
            ChainBuilder(directory, catalog, policy).build(
                "dr_ortho", ["ORTHO-ADV-01"], RequestKind.NEW,
            )
        assert exc_info.value.level == ReviewLevel.DEPARTMENT_HEAD
        assert exc_info.value.to_dict()["level"] == "DEPARTMENT_HEAD"

    def test_department_head_from_other_department_is_not_used(self, catalog, policy):
        other = Practitioner(
            practitioner_id="hod_endo", role=Role.HEAD_OF_DEPT, department_id="endo",
        )
        directory = _make_directory(drop={"hod_ortho"}, extra=[other])
        with pytest.raises(NoApproverAvailable):
            ChainBuilder(directory, catalog, policy).build(
                "dr_ortho", ["ORTHO-ADV-01"], RequestKind.NEW,
            )

    def test_missing_committee_fails_only_strict_chain(self, catalog, policy):
        directory = _make_directory(drop={"committee_chair"})
        builder = ChainBuilder(directory, catalog, policy)
        builder.build("dr_ortho", ["ORTHO-ADV-01"], RequestKind.NEW)
        with pytest.raises(NoApproverAvailable) as exc_info:
            builder.build("dr_ortho", ["ENDO-ADV-01"], RequestKind.NEW)
        assert exc_info.value.level == ReviewLevel.COMMITTEE

    def test_committee_tie_break_is_lowest_id(self, catalog, policy):
        extra = [
            Practitioner(practitioner_id="aaa_committee", role=Role.COMMITTEE_MEMBER),
            Practitioner(practitioner_id="zzz_committee", role=Role.COMMITTEE_MEMBER),
        ]
        directory = _make_directory(extra=extra)
        result = ChainBuilder(directory, catalog, policy).build(
            "dr_ortho", ["ENDO-ADV-01"], RequestKind.NEW,
        )
        assert dict(_levels(result))[ReviewLevel.COMMITTEE] == "aaa_committee"

    def test_inactive_reviewer_is_not_picked(self, catalog, policy):
        directory = _make_directory(patch={"med_director": {"active": False}})
        with pytest.raises(NoApproverAvailable) as exc_info:
            ChainBuilder(directory, catalog, policy).build(
                "dr_ortho", ["ORTHO-ADV-01"], RequestKind.NEW,
            )
        assert exc_info.value.level == ReviewLevel.MEDICAL_DIRECTOR

    def test_requester_is_never_own_reviewer(self, catalog, policy):
        # The only department head requests privileges for themselves.
        directory = _make_directory()
        with pytest.raises(NoApproverAvailable) as exc_info:
            ChainBuilder(directory, catalog, policy).build(
                "hod_ortho", ["ORTHO-ADV-01"], RequestKind.NEW,
            )
        assert exc_info.value.level == ReviewLevel.DEPARTMENT_HEAD

    def test_requester_excluded_but_peer_found(self, catalog, policy):
        peer = Practitioner(
            practitioner_id="hod_ortho_2", role=Role.HEAD_OF_DEPT, department_id="ortho",
        )
        directory = _make_directory(extra=[peer])
        result = ChainBuilder(directory, catalog, policy).build(
            "hod_ortho", ["ORTHO-ADV-01"], RequestKind.NEW,
        )
        assert dict(_levels(result))[ReviewLevel.DEPARTMENT_HEAD] == "hod_ortho_2"


# ---------------------------------------------------------------------------
# 4. Input validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_empty_privilege_list(self, directory, catalog, policy):
        with pytest.raises(ValidationError):
            ChainBuilder(directory, catalog, policy).build("dr_ortho", [], RequestKind.NEW)

    def test_unknown_privilege(self, directory, catalog, policy):
        with pytest.raises(ValidationError) as exc_info:
            ChainBuilder(directory, catalog, policy).build(
                "dr_ortho", ["ORTHO-ADV-01", "NOPE-99"], RequestKind.NEW,
            )
        assert exc_info.value.details["unknown"] == ["NOPE-99"]

    def test_duplicate_privilege(self, directory, catalog, policy):
        with pytest.raises(ValidationError):
            ChainBuilder(directory, catalog, policy).build(
                "dr_ortho", ["ORTHO-ADV-01", "ORTHO-ADV-01"], RequestKind.NEW,
            )

    def test_unknown_requester(self, directory, catalog, policy):
        with pytest.raises(NotFound):
            ChainBuilder(directory, catalog, policy).build(
                "ghost", ["ORTHO-ADV-01"], RequestKind.NEW,
            )

    def test_request_kind_parsed_from_string(self):
        assert parse_request_kind("expansion") == RequestKind.EXPANSION
        with pytest.raises(ValidationError):
            parse_request_kind("upgrade")

    def test_gp_without_specialty_gets_strict_chain(self, directory, catalog, policy):
        result = ChainBuilder(directory, catalog, policy).build(
            "dr_gp", ["ORTHO-ADV-01"], "NEW",
        )
        assert directory.get_practitioner("dr_gp").practitioner_type == PractitionerType.GP
        assert ReviewLevel.COMMITTEE in result.levels
