"""
Role-Based Access Control for PrivilegeFlow.

Two tables live here:

* ``_ROLE_LEVELS`` -- the exhaustive mapping from organizational ``Role`` to
  the ``ReviewLevel`` a holder of that role reviews at (or ``None`` for
  roles that never review).  Every ``Role`` member has an entry; a role
  string outside the enum is rejected by ``parse_role()`` at the directory
  boundary instead of silently becoming a non-reviewer deep in chain logic.
* ``_PERMISSIONS`` -- coarse (role, action) permissions for the engine's
  exposed operations.

Whether a *specific* reviewer may decide a *specific* request right now is
not a role question; that is answered by the decision processor from the
approval ledger (level-and-identity match on the active record).
"""

from __future__ import annotations

from typing import Optional

from privilegeflow.errors import Forbidden, UnmappedRoleError
from privilegeflow.models import ReviewLevel, Role


# ---------------------------------------------------------------------------
# Role -> review level
# ---------------------------------------------------------------------------

_ROLE_LEVELS: dict[Role, Optional[ReviewLevel]] = {
    Role.PRACTITIONER: None,
    Role.HEAD_OF_SECTION: ReviewLevel.SUPERVISOR,
    Role.HEAD_OF_DEPT: ReviewLevel.DEPARTMENT_HEAD,
    Role.COMMITTEE_MEMBER: ReviewLevel.COMMITTEE,
    Role.MEDICAL_DIRECTOR: ReviewLevel.MEDICAL_DIRECTOR,
    Role.ADMIN: None,
    Role.AUDITOR: None,
}


def parse_role(value: str | Role) -> Role:
    """Parse an external role string into the closed ``Role`` enum.

    Raises:
        UnmappedRoleError: If the value names no known role.
    """
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().upper())
    except ValueError:
        raise UnmappedRoleError(
            f"Role '{value}' is not a recognized organizational role.",
            role=str(value),
        ) from None


def level_for_role(role: Role) -> Optional[ReviewLevel]:
    """Return the review level a role reviews at, or None for non-reviewers."""
    return _ROLE_LEVELS[role]


def roles_for_level(level: ReviewLevel) -> frozenset[Role]:
    """Return every role whose holders review at ``level``."""
    return frozenset(r for r, lvl in _ROLE_LEVELS.items() if lvl == level)


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

_CLINICAL_ROLES = (
    Role.PRACTITIONER,
    Role.HEAD_OF_SECTION,
    Role.HEAD_OF_DEPT,
    Role.COMMITTEE_MEMBER,
    Role.MEDICAL_DIRECTOR,
)

_ACTIONS = (
    "submit_request",
    "decide_request",
    "export_audit",
)

# Maps (role, action) -> allowed
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    (role, action): False for role in Role for action in _ACTIONS
}
_PERMISSIONS.update({(role, "submit_request"): True for role in _CLINICAL_ROLES})
_PERMISSIONS.update({
    (role, "decide_request"): True
    for role, level in _ROLE_LEVELS.items()
    if level is not None
})
_PERMISSIONS.update({
    (Role.ADMIN, "export_audit"): True,
    (Role.AUDITOR, "export_audit"): True,
})


def check_permission(role: Role, action: str) -> bool:
    """Check whether a role has permission to perform an action.

    Args:
        role: The actor's role.
        action: The action to check (e.g., 'decide_request').

    Returns:
        True if the role is permitted to perform the action, False otherwise.
    """
    return _PERMISSIONS.get((role, action), False)


def require_permission(role: Role, action: str) -> None:
    """Enforce a permission check; raise if denied.

    Raises:
        Forbidden: If the role is not permitted.
    """
    if not check_permission(role, action):
        raise Forbidden(
            f"Role '{role.value}' is not permitted to perform action '{action}'.",
            role=role.value,
            action=action,
        )
