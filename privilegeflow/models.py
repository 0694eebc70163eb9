"""
Core data models for the PrivilegeFlow clinical privileging engine.

Enumerations here are closed: every review level, role, request kind and
status the engine understands is listed explicitly, and string values coming
from outside the engine are parsed into these enums at the boundary.

``ReviewLevel`` carries a total order (``rank``) that matches the order in
which levels appear in a reviewer chain.
"""

from __future__ import annotations

import enum
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ReviewLevel(str, enum.Enum):
    """An ordered rung in the approval hierarchy.

    * ``SUPERVISOR``       -- the requester's immediate supervisor (optional).
    * ``DEPARTMENT_HEAD``  -- head of the requester's department.
    * ``COMMITTEE``        -- privileging committee (organization-wide).
    * ``MEDICAL_DIRECTOR`` -- final sign-off (organization-wide).
    """

    SUPERVISOR = "SUPERVISOR"
    DEPARTMENT_HEAD = "DEPARTMENT_HEAD"
    COMMITTEE = "COMMITTEE"
    MEDICAL_DIRECTOR = "MEDICAL_DIRECTOR"

    @property
    def rank(self) -> int:
        return REVIEW_LEVEL_ORDER.index(self)


REVIEW_LEVEL_ORDER: tuple[ReviewLevel, ...] = (
    ReviewLevel.SUPERVISOR,
    ReviewLevel.DEPARTMENT_HEAD,
    ReviewLevel.COMMITTEE,
    ReviewLevel.MEDICAL_DIRECTOR,
)


class Role(str, enum.Enum):
    """Organizational roles known to the directory.

    Only some roles map to a ``ReviewLevel``; the mapping table lives in
    ``privilegeflow.rbac``.
    """

    PRACTITIONER = "PRACTITIONER"
    HEAD_OF_SECTION = "HEAD_OF_SECTION"
    HEAD_OF_DEPT = "HEAD_OF_DEPT"
    COMMITTEE_MEMBER = "COMMITTEE_MEMBER"
    MEDICAL_DIRECTOR = "MEDICAL_DIRECTOR"
    ADMIN = "ADMIN"
    AUDITOR = "AUDITOR"


class PractitionerType(str, enum.Enum):
    GP = "GP"
    SPECIALIST = "SPECIALIST"
    CONSULTANT = "CONSULTANT"


class RequestKind(str, enum.Enum):
    NEW = "NEW"
    RENEWAL = "RENEWAL"
    REAPPLICATION = "REAPPLICATION"
    EXPANSION = "EXPANSION"


class PrivilegeCategory(str, enum.Enum):
    """Catalog category of a single privilege.

    ``EXTRA`` privileges are additional privileges outside the practitioner's
    normal scope; requesting one always takes the strictest review path.
    """

    CORE = "CORE"
    NON_CORE = "NON_CORE"
    EXTRA = "EXTRA"


class RequestStatus(str, enum.Enum):
    """Lifecycle status of a privilege request.

    ``DRAFT -> PENDING -> IN_REVIEW -> {APPROVED | REJECTED}``, with
    ``PENDING``/``IN_REVIEW`` looping back to ``PENDING`` when a reviewer
    returns the request for modification.
    """

    DRAFT = "DRAFT"
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


DECIDABLE_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.IN_REVIEW})
TERMINAL_STATUSES = frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED})


class ApprovalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Decision(str, enum.Enum):
    """A reviewer's decision on the ApprovalRecord assigned to them."""

    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETURNED_FOR_MODIFICATION = "RETURNED_FOR_MODIFICATION"


class LineDecision(str, enum.Enum):
    UNDECIDED = "UNDECIDED"
    GRANTED = "GRANTED"
    DENIED = "DENIED"


# ---------------------------------------------------------------------------
# Directory data models
# ---------------------------------------------------------------------------

def _normalize_specialty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().upper()
    return value or None


class Practitioner(BaseModel):
    """A person in the organization directory.

    ``manager_id`` is a single direct-manager reference.  The engine only
    ever follows it one hop (for the supervisor level), so cycles in the
    org chart are harmless.
    """

    practitioner_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for the practitioner.",
    )
    name: str = Field(default="", description="Display name.")
    email: str = Field(default="", description="Contact address used by notification collaborators.")
    role: Role = Field(default=Role.PRACTITIONER)
    practitioner_type: Optional[PractitionerType] = Field(
        default=None,
        description="Clinical grade.  Non-clinical staff leave this unset.",
    )
    specialty: Optional[str] = Field(default=None, description="Primary specialty, e.g. 'ORTHODONTICS'.")
    additional_specialties: list[str] = Field(default_factory=list)
    department_id: Optional[str] = Field(default=None)
    manager_id: Optional[str] = Field(default=None)
    active: bool = Field(default=True)

    @field_validator("specialty")
    @classmethod
    def normalize_specialty(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_specialty(v)

    @field_validator("additional_specialties")
    @classmethod
    def normalize_additional(cls, v: list[str]) -> list[str]:
        return [s for s in (_normalize_specialty(x) for x in v) if s]

    def specialties(self) -> frozenset[str]:
        """Primary plus additional specialties."""
        found = set(self.additional_specialties)
        if self.specialty:
            found.add(self.specialty)
        return frozenset(found)


class Privilege(BaseModel):
    """A single clinical privilege from the privilege catalog."""

    privilege_id: str = Field(..., min_length=1)
    name: str = Field(default="")
    category: PrivilegeCategory = Field(default=PrivilegeCategory.NON_CORE)
    required_specialty: Optional[str] = Field(
        default=None,
        description="Specialty a practitioner must hold for this privilege to count as in-specialty.",
    )

    @field_validator("required_specialty")
    @classmethod
    def normalize_required(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_specialty(v)


# ---------------------------------------------------------------------------
# Workflow value objects
# ---------------------------------------------------------------------------

class ChainEntry(BaseModel):
    """One resolved rung of a reviewer chain."""

    model_config = ConfigDict(frozen=True)

    level: ReviewLevel
    reviewer_id: str


class LineDecisionInput(BaseModel):
    """A reviewer's decision on one requested privilege line."""

    privilege_id: str = Field(..., min_length=1)
    decision: LineDecision
    comment: str = Field(default="")

    @field_validator("decision")
    @classmethod
    def must_be_decided(cls, v: LineDecision) -> LineDecision:
        if v == LineDecision.UNDECIDED:
            raise ValueError("A line decision must be GRANTED or DENIED.")
        return v
