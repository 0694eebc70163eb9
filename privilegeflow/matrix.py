"""
Approval Matrix -- which review levels a request must pass through.

A pure lookup from ``(practitioner type, request kind, specialty match,
privilege class)`` to an ordered list of ``ReviewLevel``.  It performs no
I/O, never raises, and always returns the same answer for the same inputs,
so the chain builder can evaluate it unconditionally.

Policy:

* Core privileges only -> empty chain (auto-approved on submission).
* Non-core, all within the requester's specialties ->
  supervisor (where applicable), department head, medical director.
* Any privilege outside the requester's specialties, any additional
  (``EXTRA``) privilege, or any ``EXPANSION`` request ->
  supervisor (where applicable), department head, committee,
  medical director.

Specialty matching is conservative: a single mismatching privilege forces
the stricter chain.
"""

from __future__ import annotations

from typing import Iterable, Optional

from privilegeflow.config import DEFAULT_POLICY, WorkflowPolicy
from privilegeflow.models import (
    REVIEW_LEVEL_ORDER,
    Practitioner,
    PractitionerType,
    Privilege,
    PrivilegeCategory,
    RequestKind,
    ReviewLevel,
)

_SAME_SPECIALTY_LEVELS = (
    ReviewLevel.SUPERVISOR,
    ReviewLevel.DEPARTMENT_HEAD,
    ReviewLevel.MEDICAL_DIRECTOR,
)

_FULL_REVIEW_LEVELS = REVIEW_LEVEL_ORDER


def privilege_matches(practitioner: Practitioner, privilege: Privilege) -> bool:
    """Whether one privilege falls within the practitioner's specialties.

    A privilege with no required specialty always matches; a practitioner
    without any specialty matches only such privileges.
    """
    if privilege.required_specialty is None:
        return True
    return privilege.required_specialty in practitioner.specialties()


def specialty_match(practitioner: Practitioner, privileges: Iterable[Privilege]) -> bool:
    """True only if *every* requested privilege matches the practitioner."""
    return all(privilege_matches(practitioner, p) for p in privileges)


def privilege_class(privileges: Iterable[Privilege]) -> PrivilegeCategory:
    """Collapse the categories of a request's privileges into one class.

    ``CORE`` only when every privilege is core; ``EXTRA`` as soon as one
    additional privilege is present; otherwise ``NON_CORE``.  An empty
    request is classed ``NON_CORE`` so it never auto-approves.
    """
    categories = {p.category for p in privileges}
    if not categories:
        return PrivilegeCategory.NON_CORE
    if PrivilegeCategory.EXTRA in categories:
        return PrivilegeCategory.EXTRA
    if categories == {PrivilegeCategory.CORE}:
        return PrivilegeCategory.CORE
    return PrivilegeCategory.NON_CORE


def required_levels(
    practitioner_type: Optional[PractitionerType],
    request_kind: RequestKind,
    specialty_match: bool,
    privilege_class: PrivilegeCategory = PrivilegeCategory.NON_CORE,
    policy: WorkflowPolicy = DEFAULT_POLICY,
) -> list[ReviewLevel]:
    """Return the ordered review levels a request must pass through.

    Args:
        practitioner_type: Requester's grade (None for non-clinical staff,
            which is treated like a grade that gets supervisor review).
        request_kind: Kind of request.
        specialty_match: Result of ``specialty_match()`` for the request.
        privilege_class: Result of ``privilege_class()`` for the request.
        policy: Facility policy (supervisor applicability, core auto-approval).

    Returns:
        Levels in ascending ``ReviewLevel`` order.  Empty means the request
        is auto-approved.
    """
    strict = (
        request_kind == RequestKind.EXPANSION
        or privilege_class == PrivilegeCategory.EXTRA
        or not specialty_match
    )

    if privilege_class == PrivilegeCategory.CORE and not strict and policy.auto_approve_core:
        return []

    levels = _FULL_REVIEW_LEVELS if strict else _SAME_SPECIALTY_LEVELS

    wants_supervisor = (
        practitioner_type is None or practitioner_type in policy.supervisor_review
    )
    return [
        level for level in levels
        if level != ReviewLevel.SUPERVISOR or wants_supervisor
    ]
