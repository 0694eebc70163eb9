"""
Chain Builder -- resolves review levels into concrete reviewers.

Given a requester, the privileges they ask for and the request kind, the
builder asks the approval matrix which levels apply and then finds one
reviewer per level in the organization directory:

* ``SUPERVISOR`` is the requester's direct manager, and only when that
  manager is active and holds a supervisor role.  Otherwise the level is
  skipped without error.  The manager pointer is followed exactly one hop.
* Every other level is mandatory.  The department head is looked up in the
  requester's department; committee and medical director are looked up
  organization-wide.  A mandatory level with nobody to resolve it fails the
  whole build with ``NoApproverAvailable``.

The requester is never picked as their own reviewer.  The builder performs
no writes, so a failed build leaves nothing behind.
"""

from __future__ import annotations

import logging
from typing import Iterable

from pydantic import BaseModel, Field

from privilegeflow.config import DEFAULT_POLICY, WorkflowPolicy
from privilegeflow.directory import OrganizationDirectory, PrivilegeCatalog, ReviewScope
from privilegeflow.errors import NoApproverAvailable, NotFound, ValidationError
from privilegeflow.matrix import privilege_class, required_levels, specialty_match
from privilegeflow.models import (
    ChainEntry,
    Privilege,
    PrivilegeCategory,
    RequestKind,
    ReviewLevel,
)
from privilegeflow.rbac import level_for_role

logger = logging.getLogger(__name__)


class ChainResult(BaseModel):
    """Outcome of a successful chain build."""

    requester_id: str
    request_kind: RequestKind
    specialty_match: bool
    privilege_class: PrivilegeCategory
    entries: list[ChainEntry] = Field(default_factory=list)

    @property
    def auto_approved(self) -> bool:
        """An empty chain means the request needs no review at all."""
        return not self.entries

    @property
    def levels(self) -> list[ReviewLevel]:
        return [e.level for e in self.entries]


def parse_request_kind(value: RequestKind | str) -> RequestKind:
    """Parse an external request kind, raising ``ValidationError`` if unknown."""
    if isinstance(value, RequestKind):
        return value
    try:
        return RequestKind(str(value).strip().upper())
    except ValueError:
        raise ValidationError(
            f"Unknown request kind '{value}'.", field="request_kind",
        ) from None


class ChainBuilder:
    """Computes the ordered reviewer chain for a request."""

    def __init__(
        self,
        directory: OrganizationDirectory,
        catalog: PrivilegeCatalog,
        policy: WorkflowPolicy = DEFAULT_POLICY,
    ) -> None:
        self._directory = directory
        self._catalog = catalog
        self._policy = policy

    def resolve_privileges(self, privilege_ids: Iterable[str]) -> list[Privilege]:
        """Look up catalog entries for ``privilege_ids``.

        Raises:
            ValidationError: If the list is empty, repeats an id, or names a
                privilege that is not in the catalog.
        """
        ids = list(privilege_ids)
        if not ids:
            raise ValidationError(
                "A request must include at least one privilege.", field="privilege_ids",
            )
        if len(set(ids)) != len(ids):
            raise ValidationError(
                "A privilege may be requested only once per request.", field="privilege_ids",
            )
        unknown = [pid for pid in ids if pid not in self._catalog]
        if unknown:
            raise ValidationError(
                f"Unknown privilege ids: {', '.join(unknown)}.",
                field="privilege_ids",
                unknown=unknown,
            )
        return [self._catalog.get(pid) for pid in ids]

    def build(
        self,
        requester_id: str,
        privilege_ids: Iterable[str],
        request_kind: RequestKind | str,
    ) -> ChainResult:
        """Build the reviewer chain.

        Raises:
            ValidationError: Bad privilege list or request kind.
            NotFound: Unknown requester.
            NoApproverAvailable: A mandatory level has no eligible reviewer.
        """
        kind = parse_request_kind(request_kind)
        privileges = self.resolve_privileges(privilege_ids)

        requester = self._directory.get_practitioner(requester_id)
        if requester is None:
            raise NotFound(f"Requester '{requester_id}' not found.", requester_id=requester_id)

        matches = specialty_match(requester, privileges)
        pclass = privilege_class(privileges)
        levels = required_levels(
            requester.practitioner_type, kind, matches, pclass, self._policy,
        )

        scope = ReviewScope(
            department_id=requester.department_id,
            exclude_ids=frozenset({requester_id}),
        )
        entries: list[ChainEntry] = []
        for level in levels:
            if level == ReviewLevel.SUPERVISOR:
                manager = self._directory.get_manager(requester_id)
                if (
                    manager is None
                    or not manager.active
                    or manager.practitioner_id in scope.exclude_ids
                    or level_for_role(manager.role) != ReviewLevel.SUPERVISOR
                ):
                    logger.debug("Supervisor level skipped for requester %s", requester_id)
                    continue
                entries.append(ChainEntry(level=level, reviewer_id=manager.practitioner_id))
                continue

            reviewer = self._directory.get_reviewer_for_level(level, scope)
            if reviewer is None:
                logger.warning(
                    "No reviewer for level %s (requester %s)", level.value, requester_id,
                )
                raise NoApproverAvailable(level)
            entries.append(ChainEntry(level=level, reviewer_id=reviewer.practitioner_id))

        return ChainResult(
            requester_id=requester_id,
            request_kind=kind,
            specialty_match=matches,
            privilege_class=pclass,
            entries=entries,
        )
