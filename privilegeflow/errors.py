"""
Typed error taxonomy for the workflow engine.

Every failure the engine reports is one of these classes, each carrying a
stable machine-readable ``code`` so API layers can map errors to responses
without parsing messages::

    WorkflowError
    +-- ValidationError         (bad input, rejected before any mutation)
    +-- NoApproverAvailable     (a mandatory review level has no reviewer)
    +-- NotFound                (unknown request or practitioner)
    +-- Forbidden               (identity may not act on this request)
    |   +-- NotYourTurn         (reviewer is not on the active record)
    +-- InvalidState            (request is not in a status that allows it)
    +-- AlreadyDecided          (lost the race for an ApprovalRecord)
    +-- UnmappedRoleError       (role string outside the closed Role enum)
"""

from __future__ import annotations

from typing import Any, Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""

    code: str = "WORKFLOW_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(WorkflowError):
    code = "VALIDATION_ERROR"


class NoApproverAvailable(WorkflowError):
    """Raised when a mandatory review level resolves to nobody.

    The requester has to contact an administrator; nothing is persisted.
    """

    code = "NO_APPROVER_AVAILABLE"

    def __init__(self, level: Any, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"No active reviewer available for level {getattr(level, 'value', level)}.",
            level=getattr(level, "value", level),
        )
        self.level = level


class NotFound(WorkflowError):
    code = "NOT_FOUND"


class Forbidden(WorkflowError):
    code = "FORBIDDEN"


class NotYourTurn(Forbidden):
    code = "NOT_YOUR_TURN"


class InvalidState(WorkflowError):
    code = "INVALID_STATE"


class AlreadyDecided(WorkflowError):
    code = "ALREADY_DECIDED"


class UnmappedRoleError(WorkflowError):
    code = "UNMAPPED_ROLE"
