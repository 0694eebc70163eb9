"""
ORM rows for privilege requests and their approval ledger.

Tables:

* ``privilege_requests``     -- one row per request.
* ``requested_privileges``   -- the request's privilege lines.
* ``approval_records``       -- one row per (request, review level) in the
  chain; ``sequence`` is the position in the chain.
* ``escalation_records``     -- SLA clocks; at most one open row per request.

Constraints enforce the ledger shape: a level and a sequence position occur
at most once per request, and only one escalation record per request may
have ``closed_at IS NULL``.  ``approval_records.revision`` is the
check-and-set counter the decision processor conditions its write on.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from privilegeflow.db import Base
from privilegeflow.models import (
    ApprovalStatus,
    LineDecision,
    RequestKind,
    RequestStatus,
    ReviewLevel,
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls) -> Enum:
    return Enum(enum_cls, native_enum=False, length=40, validate_strings=True)


class PrivilegeRequestRow(Base):
    __tablename__ = "privilege_requests"

    __table_args__ = (
        Index("ix_privilege_requests_requester", "requester_id"),
        Index("ix_privilege_requests_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    requester_id: Mapped[str] = mapped_column(String(100), nullable=False)
    request_kind: Mapped[RequestKind] = mapped_column(_enum(RequestKind), nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        _enum(RequestStatus), nullable=False, default=RequestStatus.DRAFT,
    )
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    submission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    lines: Mapped[list["RequestedPrivilegeRow"]] = relationship(
        back_populates="request",
        order_by="RequestedPrivilegeRow.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    approval_records: Mapped[list["ApprovalRecordRow"]] = relationship(
        back_populates="request",
        order_by="ApprovalRecordRow.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<PrivilegeRequest {self.id} status={self.status.value}>"


class RequestedPrivilegeRow(Base):
    __tablename__ = "requested_privileges"

    __table_args__ = (
        UniqueConstraint("request_id", "privilege_id", name="uq_requested_privileges_line"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("privilege_requests.id", ondelete="CASCADE"), nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    privilege_id: Mapped[str] = mapped_column(String(100), nullable=False)
    decision: Mapped[LineDecision] = mapped_column(
        _enum(LineDecision), nullable=False, default=LineDecision.UNDECIDED,
    )
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")

    request: Mapped[PrivilegeRequestRow] = relationship(back_populates="lines")


class ApprovalRecordRow(Base):
    __tablename__ = "approval_records"

    __table_args__ = (
        UniqueConstraint("request_id", "level", name="uq_approval_records_level"),
        UniqueConstraint("request_id", "sequence", name="uq_approval_records_sequence"),
        Index("ix_approval_records_reviewer_status", "reviewer_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("privilege_requests.id", ondelete="CASCADE"), nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    level: Mapped[ReviewLevel] = mapped_column(_enum(ReviewLevel), nullable=False)
    reviewer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[ApprovalStatus] = mapped_column(
        _enum(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING,
    )
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    decided_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    returned_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    request: Mapped[PrivilegeRequestRow] = relationship(back_populates="approval_records")

    def __repr__(self) -> str:
        return (
            f"<ApprovalRecord {self.id} request={self.request_id} "
            f"level={self.level.value} status={self.status.value}>"
        )


class EscalationRecordRow(Base):
    __tablename__ = "escalation_records"

    __table_args__ = (
        Index(
            "ux_escalation_records_open_request",
            "request_id",
            unique=True,
            sqlite_where=text("closed_at IS NULL"),
            postgresql_where=text("closed_at IS NULL"),
        ),
        Index("ix_escalation_records_closed_at", "closed_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("privilege_requests.id", ondelete="CASCADE"), nullable=False,
    )
    approval_record_id: Mapped[str] = mapped_column(String(36), nullable=False)
    reviewer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    received_at: Mapped[datetime] = mapped_column(nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warning_sent_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_escalated_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    close_reason: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    def __repr__(self) -> str:
        state = "open" if self.closed_at is None else "closed"
        return f"<EscalationRecord {self.id} request={self.request_id} level={self.level} {state}>"
