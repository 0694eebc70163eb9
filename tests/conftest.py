"""
Shared fixtures: a throwaway SQLite database per test, a manually advanced
clock, and a small synthetic dental-hospital organization.

Organization (department ``ortho`` unless noted)::

    med_director      MEDICAL_DIRECTOR   (org-wide)
    committee_chair   COMMITTEE_MEMBER   (org-wide, dept endo)
    hod_ortho         HEAD_OF_DEPT       manager -> med_director
    sec_ortho         HEAD_OF_SECTION    manager -> hod_ortho
    dr_ortho          PRACTITIONER       SPECIALIST, ORTHODONTICS, manager -> sec_ortho
    dr_gp             PRACTITIONER       GP, no specialty, manager -> sec_ortho
    dr_consultant     PRACTITIONER       CONSULTANT, ORTHODONTICS, manager -> sec_ortho
    mso_office        ADMIN
    auditor_1         AUDITOR
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from privilegeflow.audit import AuditLog
from privilegeflow.config import WorkflowPolicy
from privilegeflow.db import Database
from privilegeflow.directory import OrganizationDirectory, PrivilegeCatalog
from privilegeflow.engine import WorkflowEngine
from privilegeflow.models import (
    Practitioner,
    PractitionerType,
    Privilege,
    PrivilegeCategory,
    Role,
)
from privilegeflow.notifications import RecordingDispatcher

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def build_practitioners() -> list[Practitioner]:
    return [
        Practitioner(practitioner_id="med_director", role=Role.MEDICAL_DIRECTOR,
                     practitioner_type=PractitionerType.CONSULTANT),
        Practitioner(practitioner_id="committee_chair", role=Role.COMMITTEE_MEMBER,
                     practitioner_type=PractitionerType.CONSULTANT,
                     specialty="Endodontics", department_id="endo"),
        Practitioner(practitioner_id="hod_ortho", role=Role.HEAD_OF_DEPT,
                     practitioner_type=PractitionerType.CONSULTANT,
                     specialty="Orthodontics", department_id="ortho",
                     manager_id="med_director"),
        Practitioner(practitioner_id="sec_ortho", role=Role.HEAD_OF_SECTION,
                     practitioner_type=PractitionerType.CONSULTANT,
                     specialty="Orthodontics", department_id="ortho",
                     manager_id="hod_ortho"),
        Practitioner(practitioner_id="dr_ortho", role=Role.PRACTITIONER,
                     practitioner_type=PractitionerType.SPECIALIST,
                     specialty="Orthodontics", department_id="ortho",
                     manager_id="sec_ortho", email="dr.ortho@example.org"),
        Practitioner(practitioner_id="dr_gp", role=Role.PRACTITIONER,
                     practitioner_type=PractitionerType.GP,
                     department_id="ortho", manager_id="sec_ortho"),
        Practitioner(practitioner_id="dr_consultant", role=Role.PRACTITIONER,
                     practitioner_type=PractitionerType.CONSULTANT,
                     specialty="Orthodontics", department_id="ortho",
                     manager_id="sec_ortho"),
        Practitioner(practitioner_id="mso_office", role=Role.ADMIN),
        Practitioner(practitioner_id="auditor_1", role=Role.AUDITOR),
    ]


def build_privileges() -> list[Privilege]:
    return [
        Privilege(privilege_id="ORTHO-CORE-01", category=PrivilegeCategory.CORE,
                  required_specialty="Orthodontics"),
        Privilege(privilege_id="ORTHO-CORE-02", category=PrivilegeCategory.CORE,
                  required_specialty="Orthodontics"),
        Privilege(privilege_id="ORTHO-ADV-01", category=PrivilegeCategory.NON_CORE,
                  required_specialty="Orthodontics"),
        Privilege(privilege_id="ORTHO-ADV-02", category=PrivilegeCategory.NON_CORE,
                  required_specialty="Orthodontics"),
        Privilege(privilege_id="ENDO-ADV-01", category=PrivilegeCategory.NON_CORE,
                  required_specialty="Endodontics"),
        Privilege(privilege_id="GEN-01", category=PrivilegeCategory.NON_CORE),
        Privilege(privilege_id="IMPLANT-EX-01", category=PrivilegeCategory.EXTRA,
                  required_specialty="Oral Surgery"),
    ]


@pytest.fixture
def policy() -> WorkflowPolicy:
    return WorkflowPolicy(
        facility_id="test_facility",
        facility_name="Test Dental Hospital",
        escalation_contact_id="mso_office",
    )


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'privileging.db'}")
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def directory() -> OrganizationDirectory:
    return OrganizationDirectory(build_practitioners())


@pytest.fixture
def catalog() -> PrivilegeCatalog:
    return PrivilegeCatalog(build_privileges())


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog()


@pytest.fixture
def make_engine(db, directory, catalog, policy, dispatcher, audit_log, clock):
    def _make(**overrides) -> WorkflowEngine:
        kwargs = dict(
            db=db,
            directory=directory,
            catalog=catalog,
            policy=policy,
            dispatcher=dispatcher,
            audit_log=audit_log,
            clock=clock,
        )
        kwargs.update(overrides)
        return WorkflowEngine(**kwargs)
    return _make


@pytest.fixture
def engine(make_engine) -> WorkflowEngine:
    return make_engine()
