"""
Workflow Policy -- Facility Configuration for PrivilegeFlow.

This module holds the facility-configurable settings that govern how the
approval workflow and escalation tracker behave: the SLA thresholds that
drive reminders and escalations, which practitioner grades go through a
supervisor review, who receives the final escalation tier, and whether
core-only requests are approved automatically.

Policies are plain pydantic models, validated on construction, and can be
loaded from YAML so that facilities keep their settings next to the rest of
their deployment configuration.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from privilegeflow.models import PractitionerType


# ---------------------------------------------------------------------------
# Escalation threshold model
# ---------------------------------------------------------------------------

class EscalationThresholds(BaseModel):
    """SLA thresholds for pending reviewer decisions, in whole days.

    A decision that has been pending for more than ``warning_days`` gets a
    one-time reminder.  Past ``escalation_days`` it is escalated; every
    further ``tier_interval_days`` raises the escalation level by one, up to
    ``max_escalation_level``.
    """

    warning_days: int = Field(
        default=3,
        ge=0,
        description="Days pending after which the reviewer gets a one-time reminder.",
    )
    escalation_days: int = Field(
        default=5,
        ge=0,
        description="Days pending after which the decision is escalated (level 1).",
    )
    tier_interval_days: int = Field(
        default=2,
        gt=0,
        description="Additional days pending per further escalation level.",
    )
    max_escalation_level: int = Field(
        default=3,
        ge=1,
        description="Highest escalation level; the level never grows past it.",
    )

    @field_validator("escalation_days")
    @classmethod
    def escalation_not_before_warning(cls, v: int, info) -> int:
        warning = info.data.get("warning_days")
        if warning is not None and v < warning:
            raise ValueError(
                f"escalation_days ({v}) must be >= warning_days ({warning})"
            )
        return v

    def level_for(self, days_pending: int) -> int:
        """Escalation level for a decision pending ``days_pending`` whole days."""
        if days_pending <= self.escalation_days:
            return 0
        tier = 1 + (days_pending - self.escalation_days - 1) // self.tier_interval_days
        return min(tier, self.max_escalation_level)


# ---------------------------------------------------------------------------
# Workflow policy model
# ---------------------------------------------------------------------------

class WorkflowPolicy(BaseModel):
    """Complete workflow policy for a single facility."""

    facility_id: str = Field(..., min_length=1)
    facility_name: str = Field(..., min_length=1)
    escalation_thresholds: EscalationThresholds = Field(
        default_factory=EscalationThresholds,
    )
    escalation_enabled: bool = Field(
        default=True,
        description="When False, escalation sweeps close stale records but raise no events.",
    )
    escalation_contact_id: Optional[str] = Field(
        default=None,
        description=(
            "Practitioner id notified from escalation level 3 upwards "
            "(typically the medical staff office).  Falls back to the "
            "reviewer's manager when unset."
        ),
    )
    supervisor_review: list[PractitionerType] = Field(
        default_factory=lambda: list(PractitionerType),
        description=(
            "Practitioner grades whose requests include the immediate "
            "supervisor level.  The level is still skipped when the "
            "requester's manager is not an active section head."
        ),
    )
    auto_approve_core: bool = Field(
        default=True,
        description="Approve requests consisting only of core privileges on submission.",
    )
    notify_all_reviewers_on_submit: bool = Field(
        default=False,
        description=(
            "Notify every reviewer in the chain on submission instead of "
            "only the first one."
        ),
    )


DEFAULT_POLICY = WorkflowPolicy(
    facility_id="default",
    facility_name="Default Policy",
)
"""Built-in policy used when a facility does not configure its own."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_policy_from_yaml(path: str | Path) -> WorkflowPolicy:
    """Load a facility workflow policy from a YAML file.

    Example YAML structure::

        policy:
          facility_id: "main_campus"
          facility_name: "Main Campus Dental Hospital"
          escalation_thresholds:
            warning_days: 2
            escalation_days: 4

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If the policy fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "policy" not in raw:
        raise ValueError("YAML file must contain a top-level 'policy' key.")

    entry = raw["policy"]
    if not isinstance(entry, dict):
        raise ValueError("'policy' must be a mapping.")

    return WorkflowPolicy(**entry)
