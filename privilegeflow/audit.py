"""
Append-Only, Tamper-Evident Audit Trail (Hash-Chained).

Every workflow action -- draft changes, submissions, reviewer decisions,
terminal outcomes and SLA escalations -- is recorded as an append-only
audit entry.  Entries are linked via a SHA-256 hash chain: modifying any
entry after the fact makes ``verify_chain()`` report the first broken link.

Entries are written only after the database transaction that caused them
has committed, so the trail never shows an action that was rolled back.

Queries and exports are scoped by ``facility_id``.  Exports strip contact
details from metadata before leaving the engine.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Every auditable workflow action."""

    # Drafts
    REQUEST_CREATED = "REQUEST_CREATED"
    DRAFT_UPDATED = "DRAFT_UPDATED"

    # Submission
    REQUEST_SUBMITTED = "REQUEST_SUBMITTED"
    REQUEST_AUTO_APPROVED = "REQUEST_AUTO_APPROVED"

    # Reviewer decisions
    LEVEL_APPROVED = "LEVEL_APPROVED"
    LEVEL_REJECTED = "LEVEL_REJECTED"
    RETURNED_FOR_MODIFICATION = "RETURNED_FOR_MODIFICATION"

    # Terminal outcomes
    REQUEST_APPROVED = "REQUEST_APPROVED"
    REQUEST_REJECTED = "REQUEST_REJECTED"

    # SLA tracking
    REVIEW_REMINDER_SENT = "REVIEW_REMINDER_SENT"
    REVIEW_ESCALATED = "REVIEW_ESCALATED"

    # Audit operations
    AUDIT_EXPORTED = "AUDIT_EXPORTED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit trail entry: who did what to which request, and when."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    facility_id: str = Field(..., description="Facility the action belongs to.")
    actor_id: str = Field(..., description="Practitioner id, or SYSTEM for engine actions.")
    actor_role: str = Field(..., description="Role of the actor at the time of the action.")
    event_type: AuditEventType
    target_entity: str = Field(default="", description="Usually the request id.")
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "facility_id": self.facility_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Export redaction
# ---------------------------------------------------------------------------

_CONTACT_PATTERNS: dict[str, re.Pattern] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
}

_CONTACT_KEYS = {"email", "phone", "mobile", "address", "national_id"}


def redact_contact_details(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with contact details replaced by markers."""
    redacted = {}
    for key, value in metadata.items():
        if key.lower() in _CONTACT_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            for name, pattern in _CONTACT_PATTERNS.items():
                value = pattern.sub(f"[REDACTED-{name.upper()}]", value)
            redacted[key] = value
        elif isinstance(value, dict):
            redacted[key] = redact_contact_details(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There are no update or delete methods.  Appends are serialized with a
    lock because decisions on different requests may commit concurrently.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the current tail and append it."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        facility_id: str,
        event_type: AuditEventType,
        actor_id: str,
        actor_role: str = "SYSTEM",
        target_entity: str = "",
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        entry = AuditEntry(
            facility_id=facility_id,
            actor_id=actor_id,
            actor_role=actor_role,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata or {},
        )
        if timestamp is not None:
            entry.timestamp = timestamp
        return self.append(entry)

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)``; ``broken_at`` is the index of the first
            broken link, or None if the chain is intact.
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)

        for i, entry in enumerate(entries):
            expected_prev = "" if i == 0 else entries[i - 1].compute_hash()
            if entry.previous_hash != expected_prev:
                return (False, i)
            if hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        facility_id: str,
        event_type: Optional[AuditEventType] = None,
        target_entity: Optional[str] = None,
        actor_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Return copies of the matching entries for one facility, oldest first."""
        with self._lock:
            entries = list(self._entries)

        results = []
        for entry in entries:
            if entry.facility_id != facility_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if target_entity is not None and entry.target_entity != target_entity:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        facility_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable export bundle for a privileging audit."""
        entries = self.query(facility_id, time_start=time_start, time_end=time_end)

        exported = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_contact_details(entry.metadata)
            exported.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "facility_id": facility_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }

    def __len__(self) -> int:
        return len(self._entries)
