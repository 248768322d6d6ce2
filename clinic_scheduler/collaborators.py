"""External capabilities the core calls out to.

The core only decides *that* a patient should be notified and *that* a
transition happened; delivery (SMS/email) and audit transport live elsewhere
and are injected.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from clinic_scheduler.logging_config import get_logger

logger = get_logger(__name__)


class NotificationDispatcher(Protocol):
    """Fire-and-forget patient notification."""

    def send(self, patient_id: str, message: str) -> None:
        ...


class AuditLog(Protocol):
    """Records every state transition."""

    def record(self, action: str, actor_id: str, target_id: str) -> None:
        ...


class LoggingNotificationDispatcher:
    """Default dispatcher: writes the notification to the structured log."""

    def send(self, patient_id: str, message: str) -> None:
        logger.info("patient_notification", patient_id=patient_id, message=message)


@dataclass(frozen=True)
class AuditEntry:
    action: str
    actor_id: str
    target_id: str
    at: datetime = field(default_factory=datetime.now)


class InMemoryAuditLog:
    """Append-only audit trail kept in memory."""

    def __init__(self):
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def record(self, action: str, actor_id: str, target_id: str) -> None:
        with self._lock:
            self._entries.append(AuditEntry(action, actor_id, target_id))
        logger.info("audit", action=action, actor_id=actor_id, target_id=target_id)

    def entries(self, target_id: Optional[str] = None) -> List[AuditEntry]:
        with self._lock:
            if target_id is None:
                return list(self._entries)
            return [e for e in self._entries if e.target_id == target_id]


def notify_safely(dispatcher: NotificationDispatcher, patient_id: str, message: str) -> None:
    """Deliver a notification without letting delivery failures undo a transition."""
    try:
        dispatcher.send(patient_id, message)
    except Exception:
        logger.error("notification_failed", patient_id=patient_id, exc_info=True)
