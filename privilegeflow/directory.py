"""
Organization Directory and Privilege Catalog.

The directory is the engine's read-only view of the organization:
practitioners with their role, grade, specialties, department, active flag
and a single direct-manager reference.  The catalog lists the privileges a
practitioner can request.

Both are in-memory and loaded from YAML (or built directly from models); a
deployment that syncs practitioners from an HR system only has to rebuild
them.  The engine depends on three lookups:

* ``get_practitioner(identity)``
* ``get_manager(identity)`` -- a single hop, never walked transitively.
* ``get_reviewer_for_level(level, scope)`` -- one active, correctly-roled
  reviewer, department-scoped for supervisor and department head,
  organization-wide for committee and medical director.  Ties are broken
  by lowest practitioner id so resolution is deterministic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from privilegeflow.models import Practitioner, Privilege, ReviewLevel
from privilegeflow.rbac import level_for_role, parse_role

logger = logging.getLogger(__name__)

_DEPARTMENT_SCOPED_LEVELS = frozenset({ReviewLevel.SUPERVISOR, ReviewLevel.DEPARTMENT_HEAD})


class ReviewScope(BaseModel):
    """Context for resolving a reviewer: the requester's department and the
    identities that must not be picked (at least the requester)."""

    model_config = ConfigDict(frozen=True)

    department_id: Optional[str] = None
    exclude_ids: frozenset[str] = Field(default_factory=frozenset)


class OrganizationDirectory:
    """In-memory organization directory keyed by practitioner id."""

    def __init__(self, practitioners: Iterable[Practitioner] = ()) -> None:
        self._practitioners: dict[str, Practitioner] = {}
        for p in practitioners:
            self.add(p)

    def add(self, practitioner: Practitioner) -> None:
        if practitioner.practitioner_id in self._practitioners:
            raise ValueError(
                f"Practitioner '{practitioner.practitioner_id}' already in directory."
            )
        self._practitioners[practitioner.practitioner_id] = practitioner

    def get_practitioner(self, identity: str) -> Optional[Practitioner]:
        return self._practitioners.get(identity)

    def get_manager(self, identity: str) -> Optional[Practitioner]:
        """Return the direct manager of ``identity``, if any."""
        person = self._practitioners.get(identity)
        if person is None or person.manager_id is None:
            return None
        return self._practitioners.get(person.manager_id)

    def get_reviewer_for_level(
        self, level: ReviewLevel, scope: ReviewScope
    ) -> Optional[Practitioner]:
        """Return one active reviewer for ``level`` within ``scope``, or None."""
        candidates = [
            p for p in self._practitioners.values()
            if p.active
            and level_for_role(p.role) == level
            and p.practitioner_id not in scope.exclude_ids
            and (
                level not in _DEPARTMENT_SCOPED_LEVELS
                or (scope.department_id is not None and p.department_id == scope.department_id)
            )
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda p: p.practitioner_id)

    def __len__(self) -> int:
        return len(self._practitioners)

    def __contains__(self, identity: str) -> bool:
        return identity in self._practitioners


class PrivilegeCatalog:
    """In-memory privilege catalog keyed by privilege id."""

    def __init__(self, privileges: Iterable[Privilege] = ()) -> None:
        self._privileges = {p.privilege_id: p for p in privileges}

    def get(self, privilege_id: str) -> Optional[Privilege]:
        return self._privileges.get(privilege_id)

    def __len__(self) -> int:
        return len(self._privileges)

    def __contains__(self, privilege_id: str) -> bool:
        return privilege_id in self._privileges


# ---------------------------------------------------------------------------
# YAML loaders
# ---------------------------------------------------------------------------

def _read_section(path: str | Path, key: str) -> list[dict]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Directory file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or key not in raw:
        raise ValueError(f"YAML file must contain a top-level '{key}' key with a list of entries.")
    entries = raw[key]
    if not isinstance(entries, list):
        raise ValueError(f"'{key}' must be a list.")
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"'{key}' entry at index {idx} must be a mapping.")
    return entries


def load_directory_from_yaml(path: str | Path) -> OrganizationDirectory:
    """Load practitioners from the ``practitioners`` key of a YAML file.

    Role strings are parsed through ``parse_role`` so an unknown role fails
    the load with ``UnmappedRoleError``.
    """
    practitioners = []
    for entry in _read_section(path, "practitioners"):
        entry = dict(entry)
        if "role" in entry:
            entry["role"] = parse_role(entry["role"])
        practitioners.append(Practitioner(**entry))
    logger.info("Loaded %d practitioners from %s", len(practitioners), path)
    return OrganizationDirectory(practitioners)


def load_catalog_from_yaml(path: str | Path) -> PrivilegeCatalog:
    """Load privileges from the ``privileges`` key of a YAML file."""
    privileges = [Privilege(**entry) for entry in _read_section(path, "privileges")]
    logger.info("Loaded %d privileges from %s", len(privileges), path)
    return PrivilegeCatalog(privileges)
