"""
Notification Dispatcher -- the engine's outbound messaging contract.

The engine never delivers email, SMS or push messages itself.  It calls
``notify(kind, recipient_id, context)`` on a dispatcher supplied by the
deployment.  Delivery is fire-and-forget: a dispatcher that raises is
logged and ignored, and never rolls back the workflow change that caused
the notification.

Two dispatchers ship with the package:

* ``LoggingDispatcher``   -- writes each notification to the log.
* ``RecordingDispatcher`` -- keeps notifications in memory (tests, demos).
"""

from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    """Every notification the engine can emit."""

    # Review flow
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    APPROVAL_PROGRESS = "APPROVAL_PROGRESS"
    APPROVAL_COMPLETE = "APPROVAL_COMPLETE"
    REJECTION = "REJECTION"
    MODIFICATIONS_REQUESTED = "MODIFICATIONS_REQUESTED"

    # SLA
    REVIEW_REMINDER = "REVIEW_REMINDER"
    ESCALATION_REVIEWER = "ESCALATION_REVIEWER"
    ESCALATION_MANAGER = "ESCALATION_MANAGER"
    ESCALATION_CONTACT = "ESCALATION_CONTACT"


class Notification(BaseModel):
    """One outbound notification."""

    kind: NotificationKind
    recipient_id: str
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationDispatcher:
    """Base class for dispatchers.  Subclasses implement ``send``."""

    def send(self, notification: Notification) -> None:
        raise NotImplementedError

    def notify(
        self,
        kind: NotificationKind,
        recipient_id: str,
        context: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Send one notification; return False if delivery failed.

        Failures are logged at WARNING and never propagated.
        """
        notification = Notification(kind=kind, recipient_id=recipient_id, context=context or {})
        try:
            self.send(notification)
        except Exception:
            logger.warning(
                "Notification %s to %s failed", kind.value, recipient_id, exc_info=True,
            )
            return False
        return True


class LoggingDispatcher(NotificationDispatcher):
    """Writes notifications to the log instead of delivering them."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "Notify %s: %s %s",
            notification.recipient_id,
            notification.kind.value,
            notification.context,
        )


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every notification in memory, in send order."""

    def __init__(self) -> None:
        self._sent: list[Notification] = []
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> None:
        with self._lock:
            self._sent.append(notification)

    @property
    def sent(self) -> list[Notification]:
        with self._lock:
            return list(self._sent)

    def for_recipient(self, recipient_id: str) -> list[Notification]:
        return [n for n in self.sent if n.recipient_id == recipient_id]

    def of_kind(self, kind: NotificationKind) -> list[Notification]:
        return [n for n in self.sent if n.kind == kind]

    def clear(self) -> None:
        with self._lock:
            self._sent.clear()
