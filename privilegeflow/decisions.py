"""
Decision Processor -- applies one reviewer decision atomically.

Preconditions are checked in a fixed order, each with its own error:

1. ``ValidationError``  -- unknown decision, malformed or unknown line
   decisions, or a rejection / return without a comment.
2. ``NotFound``         -- no such request.
3. ``InvalidState``     -- the request is not ``PENDING`` or ``IN_REVIEW``.
4. ``AlreadyDecided``   -- the reviewer already decided their record and
   holds no other pending record on this request.
5. ``NotYourTurn``      -- the reviewer is not assigned to the active record.
6. ``Forbidden``        -- the assigned reviewer is no longer active or no
   longer holds a role for the record's level.

The effect runs in one transaction: a conditional write on the active
record (``status = PENDING AND revision = :seen``), line decisions, the
derived request status, and the escalation hand-off (close the open record,
open one for the next active record).  Losing the conditional write rolls
everything back and raises ``AlreadyDecided``.

Notifications and audit entries go out only after the commit.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from privilegeflow.audit import AuditEventType, AuditLog
from privilegeflow.config import DEFAULT_POLICY, WorkflowPolicy
from privilegeflow.db import Database, utcnow
from privilegeflow.directory import OrganizationDirectory
from privilegeflow.errors import (
    AlreadyDecided,
    Forbidden,
    InvalidState,
    NotFound,
    NotYourTurn,
    ValidationError,
)
from privilegeflow.escalation import CloseReason, EscalationTracker
from privilegeflow.ledger import active_record, derive_status, settle_lines, write_decision
from privilegeflow.models import (
    DECIDABLE_STATUSES,
    TERMINAL_STATUSES,
    ApprovalStatus,
    Decision,
    LineDecisionInput,
    RequestStatus,
    ReviewLevel,
)
from privilegeflow.notifications import (
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationKind,
)
from privilegeflow.orm import PrivilegeRequestRow
from privilegeflow.rbac import check_permission, level_for_role

logger = logging.getLogger(__name__)

_COMMENT_REQUIRED = frozenset({Decision.REJECTED, Decision.RETURNED_FOR_MODIFICATION})

_DECISION_EVENTS = {
    Decision.APPROVED: AuditEventType.LEVEL_APPROVED,
    Decision.REJECTED: AuditEventType.LEVEL_REJECTED,
    Decision.RETURNED_FOR_MODIFICATION: AuditEventType.RETURNED_FOR_MODIFICATION,
}


class DecisionResult(BaseModel):
    """What a successful decision did to the request."""

    request_id: str
    requester_id: str
    approval_record_id: str
    level: ReviewLevel
    reviewer_id: str
    decision: Decision
    status: RequestStatus
    decided_at: datetime
    completed_at: Optional[datetime] = None
    next_level: Optional[ReviewLevel] = None
    next_reviewer_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def parse_decision(value: Decision | str) -> Decision:
    if isinstance(value, Decision):
        return value
    try:
        return Decision(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown decision '{value}'.", field="decision") from None


def parse_line_decisions(
    line_decisions: Optional[Iterable[LineDecisionInput | dict[str, Any]]],
) -> list[LineDecisionInput]:
    """Validate per-line decisions; each privilege may appear once."""
    parsed: list[LineDecisionInput] = []
    for item in line_decisions or ():
        if isinstance(item, LineDecisionInput):
            parsed.append(item)
            continue
        try:
            parsed.append(LineDecisionInput(**item))
        except (PydanticValidationError, TypeError) as exc:
            raise ValidationError(
                f"Malformed line decision: {exc}", field="line_decisions",
            ) from None

    ids = [d.privilege_id for d in parsed]
    if len(set(ids)) != len(ids):
        raise ValidationError(
            "Each privilege line may be decided once per decision.", field="line_decisions",
        )
    return parsed


class DecisionProcessor:
    """Applies reviewer decisions to the approval ledger."""

    def __init__(
        self,
        db: Database,
        directory: OrganizationDirectory,
        tracker: EscalationTracker,
        policy: WorkflowPolicy = DEFAULT_POLICY,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._directory = directory
        self._tracker = tracker
        self._policy = policy
        self._dispatcher = dispatcher or LoggingDispatcher()
        self._audit_log = audit_log if audit_log is not None else AuditLog()
        self._clock = clock

    def submit_decision(
        self,
        request_id: str,
        reviewer_id: str,
        decision: Decision | str,
        comment: str = "",
        line_decisions: Optional[Iterable[LineDecisionInput | dict[str, Any]]] = None,
    ) -> DecisionResult:
        """Record ``reviewer_id``'s decision on the request's active record."""
        parsed = parse_decision(decision)
        comment = (comment or "").strip()
        if parsed in _COMMENT_REQUIRED and not comment:
            raise ValidationError(
                f"A comment is required when the decision is {parsed.value}.", field="comment",
            )
        lines = parse_line_decisions(line_decisions)
        now = self._clock()

        with self._db.session_scope() as session:
            result = self._apply(session, request_id, reviewer_id, parsed, comment, lines, now)

        logger.info(
            "Request %s: %s at %s by %s -> %s",
            request_id, parsed.value, result.level.value, reviewer_id, result.status.value,
        )
        self._after_commit(result, comment, lines)
        return result

    # -- transaction body --

    def _apply(
        self,
        session: Session,
        request_id: str,
        reviewer_id: str,
        decision: Decision,
        comment: str,
        lines: list[LineDecisionInput],
        now: datetime,
    ) -> DecisionResult:
        request = session.get(PrivilegeRequestRow, request_id)
        if request is None:
            raise NotFound(f"Request '{request_id}' not found.", request_id=request_id)

        by_privilege = {line.privilege_id: line for line in request.lines}
        unknown = [d.privilege_id for d in lines if d.privilege_id not in by_privilege]
        if unknown:
            raise ValidationError(
                f"Request has no lines for privileges: {', '.join(unknown)}.",
                field="line_decisions",
                unknown=unknown,
            )

        if request.status not in DECIDABLE_STATUSES:
            raise InvalidState(
                f"Request '{request_id}' is {request.status.value} and cannot be decided.",
                request_id=request_id,
                status=request.status.value,
            )

        mine = [r for r in request.approval_records if r.reviewer_id == reviewer_id]
        if mine and all(r.status != ApprovalStatus.PENDING for r in mine):
            raise AlreadyDecided(
                f"Reviewer '{reviewer_id}' has already decided request '{request_id}'.",
                request_id=request_id,
            )

        active = active_record(request)
        if active is None:
            raise InvalidState(
                f"Request '{request_id}' has no record awaiting a decision.",
                request_id=request_id,
                status=request.status.value,
            )
        if active.reviewer_id != reviewer_id:
            raise NotYourTurn(
                f"Request '{request_id}' is waiting on {active.level.value}, "
                f"not on reviewer '{reviewer_id}'.",
                request_id=request_id,
                current_level=active.level.value,
            )
        self._check_reviewer(reviewer_id, active.level)

        if not write_decision(session, active, active.revision, decision, comment, now):
            raise AlreadyDecided(
                f"Record {active.level.value} of request '{request_id}' was decided concurrently.",
                request_id=request_id,
            )

        for d in lines:
            line = by_privilege[d.privilege_id]
            line.decision = d.decision
            line.comment = d.comment

        status = derive_status([r.status for r in request.approval_records], decision)
        request.status = status
        if status in TERMINAL_STATUSES:
            request.completed_at = now
            settle_lines(request, status)

        reason = (
            CloseReason.RETURNED
            if decision == Decision.RETURNED_FOR_MODIFICATION
            else CloseReason.DECIDED
        )
        self._tracker.close_open_records(session, request.id, now, reason)
        next_record = active_record(request)
        if next_record is not None:
            self._tracker.open_record(session, next_record, now)

        return DecisionResult(
            request_id=request.id,
            requester_id=request.requester_id,
            approval_record_id=active.id,
            level=active.level,
            reviewer_id=reviewer_id,
            decision=decision,
            status=status,
            decided_at=now,
            completed_at=request.completed_at,
            next_level=next_record.level if next_record is not None else None,
            next_reviewer_id=next_record.reviewer_id if next_record is not None else None,
        )

    def _check_reviewer(self, reviewer_id: str, level: ReviewLevel) -> None:
        person = self._directory.get_practitioner(reviewer_id)
        if (
            person is None
            or not person.active
            or not check_permission(person.role, "decide_request")
            or level_for_role(person.role) != level
        ):
            raise Forbidden(
                f"Reviewer '{reviewer_id}' may no longer review at {level.value}.",
                reviewer_id=reviewer_id,
                level=level.value,
            )

    # -- post-commit effects --

    def _after_commit(
        self, result: DecisionResult, comment: str, lines: list[LineDecisionInput]
    ) -> None:
        context = {
            "request_id": result.request_id,
            "level": result.level.value,
            "reviewer_id": result.reviewer_id,
            "comment": comment,
        }
        if result.status == RequestStatus.APPROVED:
            self._dispatcher.notify(NotificationKind.APPROVAL_COMPLETE, result.requester_id, context)
        elif result.status == RequestStatus.REJECTED:
            self._dispatcher.notify(NotificationKind.REJECTION, result.requester_id, context)
        elif result.decision == Decision.RETURNED_FOR_MODIFICATION:
            self._dispatcher.notify(
                NotificationKind.MODIFICATIONS_REQUESTED, result.requester_id, context,
            )
        else:
            self._dispatcher.notify(NotificationKind.APPROVAL_PROGRESS, result.requester_id, context)
            if result.next_reviewer_id is not None:
                self._dispatcher.notify(
                    NotificationKind.APPROVAL_REQUIRED,
                    result.next_reviewer_id,
                    {"request_id": result.request_id, "level": result.next_level.value},
                )

        person = self._directory.get_practitioner(result.reviewer_id)
        self._audit_log.record(
            facility_id=self._policy.facility_id,
            event_type=_DECISION_EVENTS[result.decision],
            actor_id=result.reviewer_id,
            actor_role=person.role.value if person is not None else "UNKNOWN",
            target_entity=result.request_id,
            metadata={
                "level": result.level.value,
                "comment": comment,
                "status": result.status.value,
                "lines": {d.privilege_id: d.decision.value for d in lines},
            },
            timestamp=result.decided_at,
        )
        if result.is_terminal:
            self._audit_log.record(
                facility_id=self._policy.facility_id,
                event_type=(
                    AuditEventType.REQUEST_APPROVED
                    if result.status == RequestStatus.APPROVED
                    else AuditEventType.REQUEST_REJECTED
                ),
                actor_id="SYSTEM",
                target_entity=result.request_id,
                timestamp=result.decided_at,
            )
