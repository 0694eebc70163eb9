"""
Approval Ledger -- the approval records of a request and the status they imply.

The request's aggregate status is never edited directly by callers; it is
derived from the ledger after each write:

* any record ``REJECTED``          -> ``REJECTED`` (terminal)
* the decision was a return        -> ``PENDING`` (same record re-opened)
* every record ``APPROVED``        -> ``APPROVED`` (terminal)
* some record ``APPROVED``         -> ``IN_REVIEW``
* otherwise                        -> ``PENDING``

The *active* record is likewise derived, never stored: the lowest-sequence
``PENDING`` record of a request whose status is ``PENDING`` or
``IN_REVIEW``.

Decision writes use optimistic check-and-set on ``revision``: the update
only matches while the record is still ``PENDING`` at the revision the
caller read.  A zero-row update means somebody else got there first.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from privilegeflow.models import (
    DECIDABLE_STATUSES,
    ApprovalStatus,
    ChainEntry,
    Decision,
    LineDecision,
    RequestStatus,
)
from privilegeflow.orm import ApprovalRecordRow, PrivilegeRequestRow

logger = logging.getLogger(__name__)


def derive_status(
    statuses: Sequence[ApprovalStatus],
    last_decision: Optional[Decision] = None,
) -> RequestStatus:
    """Derive the request status from its approval record statuses.

    ``statuses`` is in chain order.  An empty ledger derives ``APPROVED``:
    that is the auto-approved, no-review case.
    """
    if ApprovalStatus.REJECTED in statuses:
        return RequestStatus.REJECTED
    if last_decision == Decision.RETURNED_FOR_MODIFICATION:
        return RequestStatus.PENDING
    if all(s == ApprovalStatus.APPROVED for s in statuses):
        return RequestStatus.APPROVED
    if ApprovalStatus.APPROVED in statuses:
        return RequestStatus.IN_REVIEW
    return RequestStatus.PENDING


def active_record(request: PrivilegeRequestRow) -> Optional[ApprovalRecordRow]:
    """Return the record currently awaiting a decision, or None."""
    if request.status not in DECIDABLE_STATUSES:
        return None
    pending = [r for r in request.approval_records if r.status == ApprovalStatus.PENDING]
    if not pending:
        return None
    return min(pending, key=lambda r: r.sequence)


def initialize_ledger(
    session: Session,
    request: PrivilegeRequestRow,
    entries: Sequence[ChainEntry],
    now: datetime,
) -> list[ApprovalRecordRow]:
    """Replace the request's approval records with a fresh chain.

    Records from a previous submission are deleted first, so the ledger
    always matches exactly one computed chain.  Lines are reset to
    ``UNDECIDED``.
    """
    if request.approval_records:
        logger.info(
            "Discarding %d approval records of request %s",
            len(request.approval_records), request.id,
        )
        request.approval_records.clear()
        session.flush()

    for line in request.lines:
        line.decision = LineDecision.UNDECIDED
        line.comment = ""

    records = [
        ApprovalRecordRow(
            request_id=request.id,
            sequence=position,
            level=entry.level,
            reviewer_id=entry.reviewer_id,
            status=ApprovalStatus.PENDING,
            comment="",
            created_at=now,
            revision=0,
            returned_count=0,
        )
        for position, entry in enumerate(entries, start=1)
    ]
    request.approval_records.extend(records)
    session.flush()
    return records


def write_decision(
    session: Session,
    record: ApprovalRecordRow,
    seen_revision: int,
    decision: Decision,
    comment: str,
    now: datetime,
) -> bool:
    """Conditionally record ``decision`` on ``record``.

    Returns False when the record is no longer ``PENDING`` at
    ``seen_revision``.  On success ``record`` is refreshed from the row.
    """
    values: dict = {
        "comment": comment,
        "revision": ApprovalRecordRow.revision + 1,
    }
    if decision == Decision.RETURNED_FOR_MODIFICATION:
        values["returned_count"] = ApprovalRecordRow.returned_count + 1
    else:
        values["status"] = ApprovalStatus(decision.value)
        values["decided_at"] = now

    result = session.execute(
        update(ApprovalRecordRow)
        .where(
            ApprovalRecordRow.id == record.id,
            ApprovalRecordRow.status == ApprovalStatus.PENDING,
            ApprovalRecordRow.revision == seen_revision,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    session.refresh(record)
    return True


def settle_lines(request: PrivilegeRequestRow, status: RequestStatus) -> None:
    """Resolve still-undecided lines once the request reaches a terminal status."""
    if status == RequestStatus.APPROVED:
        outcome = LineDecision.GRANTED
    elif status == RequestStatus.REJECTED:
        outcome = LineDecision.DENIED
    else:
        return
    for line in request.lines:
        if line.decision == LineDecision.UNDECIDED:
            line.decision = outcome
