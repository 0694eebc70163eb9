"""
Workflow Engine -- the public face of PrivilegeFlow.

``WorkflowEngine`` wires the chain builder, approval ledger, decision
processor and escalation tracker to one database, one organization
directory and one facility policy, and exposes the operations callers use:

* ``build_chain``          -- preview the reviewer chain for a request.
* ``create_draft`` / ``update_draft_lines`` -- requester-owned drafts.
* ``submit_request``       -- atomic submission (or resubmission after a
  rejection); either the whole ledger is written or nothing is.
* ``submit_decision``      -- one reviewer decision.
* ``get_progress``         -- derived progress snapshot.
* ``pending_for_reviewer`` -- a reviewer's inbox.
* ``sweep_escalations``    -- SLA sweep, usually run from a scheduler.
* ``progress_report``      -- timeline report for committee review.
* ``export_audit``         -- audit bundle for auditors and administrators.

Errors are raised as ``privilegeflow.errors.WorkflowError`` subclasses;
successes come back as pydantic models.  Time comes from an injectable
``clock`` so SLA behavior can be tested without waiting.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from privilegeflow.audit import AuditEventType, AuditLog
from privilegeflow.chain import ChainBuilder, ChainResult, parse_request_kind
from privilegeflow.config import DEFAULT_POLICY, WorkflowPolicy
from privilegeflow.db import Database, utcnow
from privilegeflow.decisions import DecisionProcessor, DecisionResult
from privilegeflow.directory import OrganizationDirectory, PrivilegeCatalog
from privilegeflow.errors import Forbidden, InvalidState, NotFound, ValidationError
from privilegeflow.escalation import CloseReason, EscalationEvent, EscalationTracker
from privilegeflow.ledger import active_record, derive_status, initialize_ledger, settle_lines
from privilegeflow.logging_config import bind_workflow_context, clear_workflow_context
from privilegeflow.models import (
    DECIDABLE_STATUSES,
    ApprovalStatus,
    ChainEntry,
    Decision,
    LineDecision,
    LineDecisionInput,
    RequestKind,
    RequestStatus,
)
from privilegeflow.notifications import (
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationKind,
)
from privilegeflow.orm import ApprovalRecordRow, PrivilegeRequestRow, RequestedPrivilegeRow
from privilegeflow.progress import (
    ProgressReport,
    RequestProgress,
    build_progress,
    generate_progress_report,
)
from privilegeflow.rbac import require_permission

logger = logging.getLogger(__name__)

_SUBMITTABLE_STATUSES = frozenset({RequestStatus.DRAFT, RequestStatus.REJECTED})


def _claim_submission(session: Session, row: PrivilegeRequestRow) -> bool:
    """Bump the submission counter if the request is still submittable at the
    counter value that was read.  False means another submission got there first."""
    seen = row.submission_count
    result = session.execute(
        update(PrivilegeRequestRow)
        .where(
            PrivilegeRequestRow.id == row.id,
            PrivilegeRequestRow.status.in_(_SUBMITTABLE_STATUSES),
            PrivilegeRequestRow.submission_count == seen,
        )
        .values(submission_count=seen + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    row.submission_count = seen + 1
    return True


class SubmitResult(BaseModel):
    """Outcome of a successful submission."""

    request_id: str
    status: RequestStatus
    entries: list[ChainEntry] = Field(default_factory=list)
    submitted_at: datetime
    completed_at: Optional[datetime] = None
    submission_count: int

    @property
    def auto_approved(self) -> bool:
        return self.status == RequestStatus.APPROVED and not self.entries


class WorkflowEngine:
    """Approval workflow and escalation engine for one facility."""

    def __init__(
        self,
        db: Database,
        directory: OrganizationDirectory,
        catalog: PrivilegeCatalog,
        policy: WorkflowPolicy = DEFAULT_POLICY,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._directory = directory
        self._policy = policy
        self._dispatcher = dispatcher or LoggingDispatcher()
        self._audit_log = audit_log if audit_log is not None else AuditLog()
        self._clock = clock

        self._chain_builder = ChainBuilder(directory, catalog, policy)
        self._tracker = EscalationTracker(
            db, directory, policy, self._dispatcher, self._audit_log,
        )
        self._processor = DecisionProcessor(
            db, directory, self._tracker, policy, self._dispatcher, self._audit_log, clock,
        )

    @property
    def policy(self) -> WorkflowPolicy:
        return self._policy

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    # -- chain preview --

    def build_chain(
        self,
        requester_id: str,
        privilege_ids: Iterable[str],
        request_kind: RequestKind | str,
    ) -> ChainResult:
        return self._chain_builder.build(requester_id, privilege_ids, request_kind)

    # -- drafts --

    def create_draft(
        self,
        requester_id: str,
        request_kind: RequestKind | str,
        privilege_ids: Iterable[str] = (),
    ) -> RequestProgress:
        """Create a DRAFT request owned by ``requester_id``."""
        kind = parse_request_kind(request_kind)
        ids = self._validate_draft_privileges(privilege_ids)
        requester = self._directory.get_practitioner(requester_id)
        if requester is None:
            raise NotFound(f"Requester '{requester_id}' not found.", requester_id=requester_id)
        require_permission(requester.role, "submit_request")

        now = self._clock()
        with self._db.session_scope() as session:
            row = PrivilegeRequestRow(
                requester_id=requester_id,
                request_kind=kind,
                status=RequestStatus.DRAFT,
                created_at=now,
                submission_count=0,
            )
            row.lines = _make_lines(ids)
            session.add(row)
            session.flush()
            progress = build_progress(row, None, now)

        logger.info(
            "Draft %s created by %s (%d privileges)", progress.request_id, requester_id, len(ids),
        )
        self._audit_log.record(
            facility_id=self._policy.facility_id,
            event_type=AuditEventType.REQUEST_CREATED,
            actor_id=requester_id,
            actor_role=requester.role.value,
            target_entity=progress.request_id,
            metadata={"request_kind": kind.value, "privilege_ids": ids},
            timestamp=now,
        )
        return progress

    def update_draft_lines(
        self,
        request_id: str,
        requester_id: str,
        privilege_ids: Iterable[str],
    ) -> RequestProgress:
        """Replace the privilege lines of a DRAFT request."""
        ids = self._validate_draft_privileges(privilege_ids)
        now = self._clock()
        with self._db.session_scope() as session:
            row = self._get_request(session, request_id)
            if row.requester_id != requester_id:
                raise Forbidden(
                    f"Only the requester may edit request '{request_id}'.",
                    request_id=request_id,
                )
            if row.status != RequestStatus.DRAFT:
                raise InvalidState(
                    f"Request '{request_id}' is {row.status.value}; only drafts can be edited.",
                    request_id=request_id,
                    status=row.status.value,
                )
            row.lines.clear()
            session.flush()
            row.lines.extend(_make_lines(ids))
            session.flush()
            progress = build_progress(row, None, now)

        self._audit_log.record(
            facility_id=self._policy.facility_id,
            event_type=AuditEventType.DRAFT_UPDATED,
            actor_id=requester_id,
            actor_role=self._role_of(requester_id),
            target_entity=request_id,
            metadata={"privilege_ids": ids},
            timestamp=now,
        )
        return progress

    def _validate_draft_privileges(self, privilege_ids: Iterable[str]) -> list[str]:
        ids = list(privilege_ids)
        if ids:
            self._chain_builder.resolve_privileges(ids)
        return ids

    # -- submission --

    def submit_request(self, request_id: str, requester_id: Optional[str] = None) -> SubmitResult:
        """Submit a draft, or resubmit a rejected request, in one transaction.

        Raises:
            NotFound: Unknown request.
            Forbidden: ``requester_id`` given and not the owner.
            InvalidState: Request is neither DRAFT nor REJECTED.
            ValidationError: Request has no privilege lines.
            NoApproverAvailable: A mandatory review level cannot be staffed.
        """
        bind_workflow_context(request_id, requester_id, self._policy.facility_id)
        try:
            result, owner_id = self._submit(request_id, requester_id)
            self._after_submit(result, owner_id)
        finally:
            clear_workflow_context()
        return result

    def _submit(
        self, request_id: str, requester_id: Optional[str]
    ) -> tuple[SubmitResult, str]:
        now = self._clock()
        with self._db.session_scope() as session:
            row = self._get_request(session, request_id)
            if requester_id is not None and row.requester_id != requester_id:
                raise Forbidden(
                    f"Only the requester may submit request '{request_id}'.",
                    request_id=request_id,
                )
            if row.status not in _SUBMITTABLE_STATUSES:
                raise InvalidState(
                    f"Request '{request_id}' is {row.status.value} and cannot be submitted.",
                    request_id=request_id,
                    status=row.status.value,
                )
            if not row.lines:
                raise ValidationError(
                    "A request must include at least one privilege.", field="privilege_ids",
                )

            chain = self._chain_builder.build(
                row.requester_id, [line.privilege_id for line in row.lines], row.request_kind,
            )

            if not _claim_submission(session, row):
                raise InvalidState(
                    f"Request '{request_id}' was submitted concurrently.",
                    request_id=request_id,
                )
            self._tracker.close_open_records(session, row.id, now, CloseReason.RESUBMITTED)
            records = initialize_ledger(session, row, chain.entries, now)

            row.submitted_at = now
            row.completed_at = None
            row.status = derive_status([r.status for r in records])
            if row.status == RequestStatus.APPROVED:
                row.completed_at = now
                settle_lines(row, row.status)
            else:
                self._tracker.open_record(session, records[0], now)

            result = SubmitResult(
                request_id=row.id,
                status=row.status,
                entries=chain.entries,
                submitted_at=now,
                completed_at=row.completed_at,
                submission_count=row.submission_count,
            )
            owner_id = row.requester_id

        logger.info(
            "Request %s submitted (%d levels, submission %d) -> %s",
            request_id, len(result.entries), result.submission_count, result.status.value,
        )
        return result, owner_id

    def _after_submit(self, result: SubmitResult, requester_id: str) -> None:
        if result.auto_approved:
            self._dispatcher.notify(
                NotificationKind.APPROVAL_COMPLETE, requester_id, {"request_id": result.request_id},
            )
        else:
            recipients = result.entries
            if not self._policy.notify_all_reviewers_on_submit:
                recipients = recipients[:1]
            for entry in recipients:
                self._dispatcher.notify(
                    NotificationKind.APPROVAL_REQUIRED,
                    entry.reviewer_id,
                    {"request_id": result.request_id, "level": entry.level.value},
                )

        self._audit_log.record(
            facility_id=self._policy.facility_id,
            event_type=AuditEventType.REQUEST_SUBMITTED,
            actor_id=requester_id,
            actor_role=self._role_of(requester_id),
            target_entity=result.request_id,
            metadata={
                "submission": result.submission_count,
                "chain": [{"level": e.level.value, "reviewer_id": e.reviewer_id} for e in result.entries],
            },
            timestamp=result.submitted_at,
        )
        if result.auto_approved:
            self._audit_log.record(
                facility_id=self._policy.facility_id,
                event_type=AuditEventType.REQUEST_AUTO_APPROVED,
                actor_id="SYSTEM",
                target_entity=result.request_id,
                timestamp=result.submitted_at,
            )

    # -- decisions --

    def submit_decision(
        self,
        request_id: str,
        reviewer_id: str,
        decision: Decision | str,
        comment: str = "",
        line_decisions: Optional[Iterable[LineDecisionInput | dict[str, Any]]] = None,
    ) -> DecisionResult:
        bind_workflow_context(request_id, reviewer_id, self._policy.facility_id)
        try:
            return self._processor.submit_decision(
                request_id, reviewer_id, decision, comment, line_decisions,
            )
        finally:
            clear_workflow_context()

    # -- reads --

    def get_progress(self, request_id: str) -> RequestProgress:
        with self._db.session_scope() as session:
            row = self._get_request(session, request_id)
            return build_progress(row, self._tracker.open_record_for(session, row.id), self._clock())

    def pending_for_reviewer(self, reviewer_id: str) -> list[RequestProgress]:
        """Requests whose active record is assigned to ``reviewer_id``, oldest submission first."""
        now = self._clock()
        with self._db.session_scope() as session:
            rows = session.scalars(
                select(PrivilegeRequestRow)
                .join(PrivilegeRequestRow.approval_records)
                .where(
                    ApprovalRecordRow.reviewer_id == reviewer_id,
                    ApprovalRecordRow.status == ApprovalStatus.PENDING,
                    PrivilegeRequestRow.status.in_(sorted(DECIDABLE_STATUSES)),
                )
                .distinct()
                .order_by(PrivilegeRequestRow.submitted_at, PrivilegeRequestRow.id)
            ).all()

            inbox = []
            for row in rows:
                active = active_record(row)
                if active is None or active.reviewer_id != reviewer_id:
                    continue
                inbox.append(build_progress(row, self._tracker.open_record_for(session, row.id), now))
        return inbox

    def progress_report(self, request_id: str) -> ProgressReport:
        progress = self.get_progress(request_id)
        entries = self._audit_log.query(self._policy.facility_id, target_entity=request_id)
        return generate_progress_report(progress, entries, self._clock())

    # -- escalation --

    def sweep_escalations(self, now: Optional[datetime] = None) -> list[EscalationEvent]:
        return self._tracker.sweep(now or self._clock())

    # -- audit --

    def export_audit(
        self,
        actor_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Export the facility audit trail; restricted to auditors and administrators."""
        actor = self._directory.get_practitioner(actor_id)
        if actor is None:
            raise NotFound(f"Practitioner '{actor_id}' not found.", actor_id=actor_id)
        require_permission(actor.role, "export_audit")

        bundle = self._audit_log.export_for_review(self._policy.facility_id, time_start, time_end)
        self._audit_log.record(
            facility_id=self._policy.facility_id,
            event_type=AuditEventType.AUDIT_EXPORTED,
            actor_id=actor_id,
            actor_role=actor.role.value,
            metadata={"entry_count": bundle["export_metadata"]["entry_count"]},
            timestamp=self._clock(),
        )
        return bundle

    # -- helpers --

    @staticmethod
    def _get_request(session: Session, request_id: str) -> PrivilegeRequestRow:
        row = session.get(PrivilegeRequestRow, request_id)
        if row is None:
            raise NotFound(f"Request '{request_id}' not found.", request_id=request_id)
        return row

    def _role_of(self, practitioner_id: str) -> str:
        person = self._directory.get_practitioner(practitioner_id)
        return person.role.value if person is not None else "UNKNOWN"


def _make_lines(privilege_ids: list[str]) -> list[RequestedPrivilegeRow]:
    return [
        RequestedPrivilegeRow(
            position=position,
            privilege_id=pid,
            decision=LineDecision.UNDECIDED,
            comment="",
        )
        for position, pid in enumerate(privilege_ids, start=1)
    ]
