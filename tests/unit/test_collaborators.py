"""Tests for audit log, notifications and keyed locks."""
import threading

from clinic_scheduler.collaborators import (
    InMemoryAuditLog,
    LoggingNotificationDispatcher,
    notify_safely,
)
from clinic_scheduler.locks import KeyedLocks


class TestAuditLog:
    """Append-only audit trail."""

    def test_record_and_filter(self):
        audit = InMemoryAuditLog()
        audit.record("appointment.book", "pat-1", "APPT-1001")
        audit.record("appointment.cancel", "rec-1", "APPT-1001")
        audit.record("waitlist.enqueue", "pat-2", "wait-1")

        assert len(audit.entries()) == 3
        assert [e.action for e in audit.entries("APPT-1001")] == [
            "appointment.book", "appointment.cancel",
        ]
        assert audit.entries("APPT-1001")[1].actor_id == "rec-1"

    def test_entries_returns_copy(self):
        audit = InMemoryAuditLog()
        audit.record("slot.add", "system", "slot-1")
        audit.entries().clear()
        assert len(audit.entries()) == 1


class TestNotifications:
    """Fire-and-forget delivery."""

    def test_logging_dispatcher(self):
        LoggingNotificationDispatcher().send("pat-1", "hello")

    def test_notify_safely_swallows_failures(self):
        class Broken:
            def send(self, patient_id, message):
                raise ConnectionError("gateway down")

        notify_safely(Broken(), "pat-1", "hello")

    def test_notify_safely_delivers(self):
        sent = []

        class Recorder:
            def send(self, patient_id, message):
                sent.append((patient_id, message))

        notify_safely(Recorder(), "pat-1", "hello")
        assert sent == [("pat-1", "hello")]


class TestKeyedLocks:
    """Per-key re-entrant locks."""

    def test_reentrant(self):
        locks = KeyedLocks()
        with locks.hold(("dr-a", 1)):
            with locks.hold(("dr-a", 1), ("dr-b", 1)):
                pass

    def test_duplicate_keys_ignored(self):
        locks = KeyedLocks()
        with locks.hold("a", "a", "b"):
            pass

    def test_excludes_other_threads(self):
        locks = KeyedLocks()
        acquired = threading.Event()
        release = threading.Event()
        blocked_result = []

        def holder():
            with locks.hold("bucket"):
                acquired.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=holder)
        thread.start()
        acquired.wait(timeout=5)

        lock = locks._lock_for("bucket")
        blocked_result.append(lock.acquire(blocking=False))
        release.set()
        thread.join(timeout=5)

        assert blocked_result == [False]

    def test_released_after_block(self):
        locks = KeyedLocks()
        with locks.hold("bucket"):
            pass

        result = []
        thread = threading.Thread(target=lambda: result.append(locks._lock_for("bucket").acquire(blocking=False)))
        thread.start()
        thread.join(timeout=5)
        assert result == [True]
