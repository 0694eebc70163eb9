"""
Escalation Tracker -- SLA clocks on pending reviewer decisions.

Every request that is waiting on a reviewer has exactly one open
``EscalationRecord`` watching the active approval record.  The record is
closed the moment that approval record is decided, and a new one is opened
for the next active record.

``sweep(now)`` evaluates every open record against the facility thresholds:

    days_pending = floor((now - received_at) / 1 day)

    warning_days < days_pending <= escalation_days
        -> one-time reminder to the reviewer (WARNING)

    days_pending > escalation_days
        -> level = min(max_level,
                       1 + (days_pending - escalation_days - 1) // tier_interval)
        -> ESCALATED event whenever the level goes up

**Routing by tier:**

* tier 1  -> the reviewer
* tier 2  -> the reviewer's manager (falls back to the reviewer)
* tier 3+ -> the facility escalation contact (falls back to the manager,
  then the reviewer)

Each record is updated with a conditional write guarded by
``closed_at IS NULL`` and the level (or warning flag) that was read, so two
sweeps running at once, or a sweep racing a decision, never fire the same
event twice.  A record closed underneath the sweep is skipped silently.

The tracker never changes a request's status.
"""

from __future__ import annotations

import enum
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from privilegeflow.audit import AuditEventType, AuditLog
from privilegeflow.config import DEFAULT_POLICY, WorkflowPolicy
from privilegeflow.db import Database
from privilegeflow.directory import OrganizationDirectory
from privilegeflow.ledger import active_record
from privilegeflow.notifications import (
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationKind,
)
from privilegeflow.orm import ApprovalRecordRow, EscalationRecordRow, PrivilegeRequestRow

logger = logging.getLogger(__name__)

_ONE_DAY = timedelta(days=1)


class CloseReason(str, enum.Enum):
    DECIDED = "DECIDED"
    RETURNED = "RETURNED"
    RESUBMITTED = "RESUBMITTED"
    STALE = "STALE"


class EscalationEventKind(str, enum.Enum):
    WARNING = "WARNING"
    ESCALATED = "ESCALATED"


class EscalationEvent(BaseModel):
    """An SLA event raised by a sweep."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: EscalationEventKind
    request_id: str
    approval_record_id: str
    escalation_record_id: str
    reviewer_id: str
    level: int = Field(..., ge=0, description="Escalation level after the event; 0 for warnings.")
    days_pending: int
    recipient_id: str
    notification_kind: NotificationKind
    occurred_at: datetime


def days_pending(received_at: datetime, now: datetime) -> int:
    """Whole days elapsed since ``received_at`` (never negative)."""
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return max(0, (now - received_at) // _ONE_DAY)


class EscalationTracker:
    """Opens, closes and sweeps escalation records."""

    def __init__(
        self,
        db: Database,
        directory: OrganizationDirectory,
        policy: WorkflowPolicy = DEFAULT_POLICY,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self._db = db
        self._directory = directory
        self._policy = policy
        self._dispatcher = dispatcher or LoggingDispatcher()
        self._audit_log = audit_log if audit_log is not None else AuditLog()

    # -- record lifecycle (called inside the caller's transaction) --

    def open_record(
        self,
        session: Session,
        approval_record: ApprovalRecordRow,
        now: datetime,
    ) -> EscalationRecordRow:
        """Start the clock on ``approval_record``."""
        record = EscalationRecordRow(
            request_id=approval_record.request_id,
            approval_record_id=approval_record.id,
            reviewer_id=approval_record.reviewer_id,
            received_at=now,
            level=0,
            close_reason="",
        )
        session.add(record)
        session.flush()
        return record

    def close_open_records(
        self,
        session: Session,
        request_id: str,
        now: datetime,
        reason: CloseReason,
    ) -> int:
        """Close whatever record is open for ``request_id``; return the count."""
        result = session.execute(
            update(EscalationRecordRow)
            .where(
                EscalationRecordRow.request_id == request_id,
                EscalationRecordRow.closed_at.is_(None),
            )
            .values(closed_at=now, close_reason=reason.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    def open_record_for(session: Session, request_id: str) -> Optional[EscalationRecordRow]:
        return session.scalars(
            select(EscalationRecordRow).where(
                EscalationRecordRow.request_id == request_id,
                EscalationRecordRow.closed_at.is_(None),
            )
        ).first()

    # -- routing --

    def route(self, level: int, reviewer_id: str) -> tuple[str, NotificationKind]:
        """Return ``(recipient_id, notification kind)`` for an escalation level."""
        if level <= 1:
            return reviewer_id, NotificationKind.ESCALATION_REVIEWER

        manager = self._directory.get_manager(reviewer_id)
        manager_id = manager.practitioner_id if manager is not None and manager.active else None
        if level == 2:
            return manager_id or reviewer_id, NotificationKind.ESCALATION_MANAGER

        contact = self._policy.escalation_contact_id or manager_id or reviewer_id
        return contact, NotificationKind.ESCALATION_CONTACT

    # -- sweep --

    def sweep(self, now: datetime) -> list[EscalationEvent]:
        """Evaluate every open record at ``now`` and return the events raised."""
        with self._db.session_scope() as session:
            open_ids = list(session.scalars(
                select(EscalationRecordRow.id)
                .where(EscalationRecordRow.closed_at.is_(None))
                .order_by(EscalationRecordRow.received_at, EscalationRecordRow.id)
            ))

        events: list[EscalationEvent] = []
        for record_id in open_ids:
            event = self._sweep_record(record_id, now)
            if event is not None:
                self._publish(event)
                events.append(event)

        logger.info(
            "Escalation sweep at %s: %d open records, %d events",
            now.isoformat(), len(open_ids), len(events),
        )
        return events

    def _sweep_record(self, record_id: str, now: datetime) -> Optional[EscalationEvent]:
        with self._db.session_scope() as session:
            record = session.get(EscalationRecordRow, record_id)
            if record is None or record.closed_at is not None:
                return None

            request = session.get(PrivilegeRequestRow, record.request_id)
            active = active_record(request) if request is not None else None
            if active is None or active.id != record.approval_record_id:
                self._close_stale(session, record, now)
                return None

            if not self._policy.escalation_enabled:
                return None
            return self._evaluate(session, record, now)

    def _close_stale(self, session: Session, record: EscalationRecordRow, now: datetime) -> None:
        result = session.execute(
            update(EscalationRecordRow)
            .where(
                EscalationRecordRow.id == record.id,
                EscalationRecordRow.closed_at.is_(None),
            )
            .values(closed_at=now, close_reason=CloseReason.STALE.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Closed stale escalation record %s", record.id)

    def _evaluate(
        self, session: Session, record: EscalationRecordRow, now: datetime
    ) -> Optional[EscalationEvent]:
        thresholds = self._policy.escalation_thresholds
        days = days_pending(record.received_at, now)
        level = thresholds.level_for(days)

        if level > record.level:
            result = session.execute(
                update(EscalationRecordRow)
                .where(
                    EscalationRecordRow.id == record.id,
                    EscalationRecordRow.closed_at.is_(None),
                    EscalationRecordRow.level == record.level,
                )
                .values(level=level, last_escalated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            recipient_id, notification_kind = self.route(level, record.reviewer_id)
            logger.info(
                "Request %s escalated to level %d after %d days", record.request_id, level, days,
            )
            return self._event(
                record, EscalationEventKind.ESCALATED, level, days,
                recipient_id, notification_kind, now,
            )

        if level == 0 and days > thresholds.warning_days and record.warning_sent_at is None:
            result = session.execute(
                update(EscalationRecordRow)
                .where(
                    EscalationRecordRow.id == record.id,
                    EscalationRecordRow.closed_at.is_(None),
                    EscalationRecordRow.warning_sent_at.is_(None),
                )
                .values(warning_sent_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return self._event(
                record, EscalationEventKind.WARNING, 0, days,
                record.reviewer_id, NotificationKind.REVIEW_REMINDER, now,
            )

        return None

    @staticmethod
    def _event(
        record: EscalationRecordRow,
        kind: EscalationEventKind,
        level: int,
        days: int,
        recipient_id: str,
        notification_kind: NotificationKind,
        now: datetime,
    ) -> EscalationEvent:
        return EscalationEvent(
            kind=kind,
            request_id=record.request_id,
            approval_record_id=record.approval_record_id,
            escalation_record_id=record.id,
            reviewer_id=record.reviewer_id,
            level=level,
            days_pending=days,
            recipient_id=recipient_id,
            notification_kind=notification_kind,
            occurred_at=now,
        )

    def _publish(self, event: EscalationEvent) -> None:
        """Notify and audit one committed event."""
        self._dispatcher.notify(
            event.notification_kind,
            event.recipient_id,
            {
                "request_id": event.request_id,
                "reviewer_id": event.reviewer_id,
                "level": event.level,
                "days_pending": event.days_pending,
            },
        )
        self._audit_log.record(
            facility_id=self._policy.facility_id,
            event_type=(
                AuditEventType.REVIEW_ESCALATED
                if event.kind == EscalationEventKind.ESCALATED
                else AuditEventType.REVIEW_REMINDER_SENT
            ),
            actor_id="SYSTEM",
            target_entity=event.request_id,
            metadata={
                "reviewer_id": event.reviewer_id,
                "recipient_id": event.recipient_id,
                "level": event.level,
                "days_pending": event.days_pending,
            },
            timestamp=event.occurred_at,
        )
