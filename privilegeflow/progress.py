"""
Request progress projection and the reviewer-facing progress report.

``build_progress`` turns a request row, its ledger and its open escalation
record into a ``RequestProgress`` snapshot: the chain with each level's
status, the level currently waiting, how long it has waited and whether it
has been escalated.  Nothing here is stored; every field is derived at read
time.

``generate_progress_report`` adds a chronological timeline built from the
request's creation time and its audit trail, for committee and
medical-staff office review.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from privilegeflow.audit import AuditEntry, AuditEventType
from privilegeflow.escalation import days_pending as _days_pending
from privilegeflow.ledger import active_record
from privilegeflow.models import (
    ApprovalStatus,
    LineDecision,
    RequestKind,
    RequestStatus,
    ReviewLevel,
)
from privilegeflow.orm import EscalationRecordRow, PrivilegeRequestRow


class LineProgress(BaseModel):
    privilege_id: str
    decision: LineDecision
    comment: str = ""


class LevelProgress(BaseModel):
    sequence: int
    level: ReviewLevel
    reviewer_id: str
    status: ApprovalStatus
    comment: str = ""
    decided_at: Optional[datetime] = None
    returned_count: int = 0
    is_current: bool = False


class RequestProgress(BaseModel):
    """Snapshot of where a request stands in its review chain."""

    request_id: str
    requester_id: str
    request_kind: RequestKind
    status: RequestStatus
    lines: list[LineProgress] = Field(default_factory=list)
    levels: list[LevelProgress] = Field(default_factory=list)
    current_level: Optional[ReviewLevel] = None
    current_reviewer_id: Optional[str] = None
    is_escalated: bool = False
    escalation_level: int = 0
    days_pending: Optional[int] = None
    submission_count: int = 0
    created_at: datetime
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def build_progress(
    request: PrivilegeRequestRow,
    open_escalation: Optional[EscalationRecordRow],
    now: datetime,
) -> RequestProgress:
    """Project a request row into ``RequestProgress`` as of ``now``."""
    active = active_record(request)
    levels = [
        LevelProgress(
            sequence=r.sequence,
            level=r.level,
            reviewer_id=r.reviewer_id,
            status=r.status,
            comment=r.comment,
            decided_at=r.decided_at,
            returned_count=r.returned_count,
            is_current=active is not None and r.id == active.id,
        )
        for r in request.approval_records
    ]

    escalation = None
    if active is not None and open_escalation is not None:
        if open_escalation.approval_record_id == active.id:
            escalation = open_escalation

    return RequestProgress(
        request_id=request.id,
        requester_id=request.requester_id,
        request_kind=request.request_kind,
        status=request.status,
        lines=[
            LineProgress(privilege_id=l.privilege_id, decision=l.decision, comment=l.comment)
            for l in request.lines
        ],
        levels=levels,
        current_level=active.level if active is not None else None,
        current_reviewer_id=active.reviewer_id if active is not None else None,
        is_escalated=escalation is not None and escalation.level > 0,
        escalation_level=escalation.level if escalation is not None else 0,
        days_pending=(
            _days_pending(escalation.received_at, now) if escalation is not None else None
        ),
        submission_count=request.submission_count,
        created_at=request.created_at,
        submitted_at=request.submitted_at,
        completed_at=request.completed_at,
    )


class ProgressReport:
    """A structured progress report for reviewer and committee review."""

    def __init__(
        self,
        progress: RequestProgress,
        timeline: list[dict[str, str]],
        generated_at: str,
    ) -> None:
        self.progress = progress
        self.timeline = timeline
        self.generated_at = generated_at

    @property
    def request_id(self) -> str:
        return self.progress.request_id

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        p = self.progress
        return {
            "report_type": "Privilege Request Progress Report",
            "request_id": p.request_id,
            "requester_id": p.requester_id,
            "request_kind": p.request_kind.value,
            "status": p.status.value,
            "current_level": p.current_level.value if p.current_level else None,
            "current_reviewer_id": p.current_reviewer_id,
            "days_pending": p.days_pending,
            "escalation_level": p.escalation_level,
            "chain": [
                {
                    "level": lvl.level.value,
                    "reviewer_id": lvl.reviewer_id,
                    "status": lvl.status.value,
                    "comment": lvl.comment,
                }
                for lvl in p.levels
            ],
            "privileges": [
                {"privilege_id": line.privilege_id, "decision": line.decision.value}
                for line in p.lines
            ],
            "timeline": self.timeline,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return f"ProgressReport(request_id={self.request_id}, status={self.progress.status.value})"


def generate_progress_report(
    progress: RequestProgress,
    audit_entries: list[AuditEntry],
    now: Optional[datetime] = None,
) -> ProgressReport:
    """Build a ``ProgressReport`` from a progress snapshot and its audit entries."""
    now = now or datetime.now(timezone.utc)
    return ProgressReport(
        progress=progress,
        timeline=_build_timeline(progress, audit_entries),
        generated_at=now.isoformat(),
    )


def _build_timeline(
    progress: RequestProgress, audit_entries: list[AuditEntry]
) -> list[dict[str, str]]:
    """Creation plus every audit entry for the request, oldest first."""
    events: list[tuple[datetime, dict[str, str]]] = [(
        progress.created_at,
        {"event": "CREATED", "timestamp": progress.created_at.isoformat(),
         "description": f"Request created by {progress.requester_id}."},
    )]

    for entry in audit_entries:
        if entry.event_type == AuditEventType.REQUEST_CREATED:
            continue
        detail = entry.metadata.get("comment") or ""
        description = (
            f"{entry.event_type.value.replace('_', ' ').capitalize()} by {entry.actor_id}."
        )
        if detail:
            description += f" Comment: {detail}"
        events.append((
            entry.timestamp,
            {"event": entry.event_type.value, "timestamp": entry.timestamp.isoformat(),
             "description": description},
        ))

    events.sort(key=lambda pair: pair[0])
    return [event for _, event in events]
