"""Waitlist queue with notify/expire semantics.

Patients queue per (provider, service) key when a provider's calendar is full.
When a booked range frees up, the earliest matching ACTIVE entry is NOTIFIED
and the freed slot is held for it until its deadline. Confirming inside the
deadline books the held slot; otherwise the entry EXPIRES and the offer
cascades to the next candidate.

Lock order: schedule bucket first, then queue keys (sorted). Enqueue takes a
single queue key and never a bucket.
"""
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from pydantic import ValidationError

from clinic_scheduler.appointment_service import AppointmentService
from clinic_scheduler.collaborators import (
    AuditLog,
    InMemoryAuditLog,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    notify_safely,
)
from clinic_scheduler.config import Settings
from clinic_scheduler.errors import (
    DuplicateActiveEntryError,
    InvalidStateError,
    InvalidTimePreferenceError,
    NotFoundError,
    WaitlistExpiredError,
)
from clinic_scheduler.locks import KeyedLocks
from clinic_scheduler.logging_config import get_logger
from clinic_scheduler.models import Appointment, DateRange, WaitlistEntry
from clinic_scheduler.schedule_store import SYSTEM_ACTOR, ScheduleStore, bucket_key
from clinic_scheduler.state import OPEN_WAITLIST_STATES, WaitlistStatus
from clinic_scheduler.time_range import TimeRange
from clinic_scheduler.time_windows import TimeWindowLabel, matches_any_window, parse_labels

logger = get_logger(__name__)

QueueKey = Tuple[str, str]


def _offered_day(entry: WaitlistEntry) -> Optional[date]:
    """Date of the bucket holding an open offer, if any."""
    if entry.status == WaitlistStatus.NOTIFIED and entry.offered_range is not None:
        return entry.offered_range.date
    return None


class ExpiryReport(NamedTuple):
    expired_count: int
    promoted_count: int


class WaitlistManager:
    """Per-queue-key waitlist with monotonic positions."""

    def __init__(
        self,
        store: ScheduleStore,
        appointments: AppointmentService,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLog] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = datetime.now,
        locks: Optional[KeyedLocks] = None
    ):
        self._store = store
        self._appointments = appointments
        self._settings = settings or store.settings
        self._audit = audit or InMemoryAuditLog()
        self._notifier = notifier or LoggingNotificationDispatcher()
        self._clock = clock
        self._locks = locks or KeyedLocks()

        self._entries: Dict[str, WaitlistEntry] = {}
        self._queues: Dict[QueueKey, List[str]] = defaultdict(list)
        self._last_position: Dict[QueueKey, int] = defaultdict(int)
        self._registry_lock = threading.Lock()

        appointments.add_slot_freed_listener(self.on_slot_freed)

    # ===== QUERIES =====

    def get_entry(self, entry_id: str) -> WaitlistEntry:
        return self._require(entry_id).model_copy(deep=True)

    def list_entries(
        self,
        provider_id: Optional[str] = None,
        service: Optional[str] = None,
        patient_id: Optional[str] = None,
        status: Optional[WaitlistStatus] = None
    ) -> List[WaitlistEntry]:
        """Entries ordered by queue key, then position."""
        with self._registry_lock:
            entries = list(self._entries.values())
        found = [
            e.model_copy(deep=True) for e in entries
            if (provider_id is None or e.preferred_provider_id == provider_id)
            and (service is None or e.preferred_service == service)
            and (patient_id is None or e.patient_id == patient_id)
            and (status is None or e.status == status)
        ]
        return sorted(found, key=lambda e: (e.queue_key, e.position))

    # ===== COMMANDS =====

    def enqueue(
        self,
        patient_id: str,
        provider_id: str,
        service: str,
        date_from: date,
        date_to: date,
        time_preferences: Iterable,
        actor_id: Optional[str] = None
    ) -> WaitlistEntry:
        """
        Add a patient to the (provider, service) queue.

        Args:
            patient_id: Patient waiting
            provider_id: Preferred provider
            service: Preferred service type
            date_from: First acceptable date (inclusive)
            date_to: Last acceptable date (inclusive)
            time_preferences: One or more TimeWindowLabel values or display labels
            actor_id: Who enqueued (defaults to the patient)

        Returns:
            The new ACTIVE entry; ``position`` is its place in the queue

        Raises:
            InvalidTimePreferenceError: No/unknown preferences or bad date range
            DuplicateActiveEntryError: Patient already waiting in this queue
        """
        labels = parse_labels(time_preferences or [])
        if not labels:
            raise InvalidTimePreferenceError("Please select at least one preferred time")
        try:
            wanted = DateRange(start=date_from, end=date_to)
        except ValidationError:
            raise InvalidTimePreferenceError(
                f"Invalid date range {date_from} to {date_to}: end must be on or after start"
            )
        if wanted.end < self._clock().date():
            raise InvalidTimePreferenceError(
                f"Date range {date_from} to {date_to} is already in the past"
            )

        key: QueueKey = (provider_id, service)
        with self._locks.hold(key):
            for entry_id in self._queues.get(key, []):
                other = self._entries[entry_id]
                if other.patient_id == patient_id and other.status in OPEN_WAITLIST_STATES:
                    raise DuplicateActiveEntryError(
                        f"Patient {patient_id} is already on the waitlist for "
                        f"{service} with {provider_id} (position {other.position})",
                        entry_id=other.id,
                        position=other.position,
                    )

            entry = WaitlistEntry(
                patient_id=patient_id,
                preferred_provider_id=provider_id,
                preferred_service=service,
                date_range_wanted=wanted,
                time_preferences=labels,
                position=self._last_position[key] + 1,
                added_at=self._clock(),
            )
            with self._registry_lock:
                self._last_position[key] = entry.position
                self._entries[entry.id] = entry
                self._queues[key].append(entry.id)

        self._audit.record("waitlist.enqueue", actor_id or patient_id, entry.id)
        logger.info("waitlist_enqueued", entry_id=entry.id, patient_id=patient_id,
                    provider_id=provider_id, service=service, position=entry.position)
        return entry.model_copy(deep=True)

    def on_slot_freed(self, provider_id: str, time_range: TimeRange) -> Optional[WaitlistEntry]:
        """
        Offer a freed range to the earliest matching ACTIVE entry.

        Runs under the range's bucket lock (re-entrant when called from
        cancel), so the slot cannot be booked by someone else in between.

        Returns:
            The promoted entry, or None if nobody matches
        """
        with self._provider_locked(provider_id, time_range.date) as keys:
            promoted = self._promote_next(keys, provider_id, time_range, self._clock())
        return promoted.model_copy(deep=True) if promoted else None

    def confirm_notified(self, entry_id: str, actor_id: Optional[str] = None) -> Appointment:
        """
        Book the slot offered to a NOTIFIED entry.

        Raises:
            NotFoundError: Unknown entry
            WaitlistExpiredError: Deadline passed (the offer moves to the next candidate)
            InvalidStateError: Entry is not NOTIFIED
        """
        seen = self._require(entry_id)
        if seen.status == WaitlistStatus.EXPIRED:
            raise WaitlistExpiredError(f"Waitlist offer for entry {entry_id} has expired")
        if seen.status != WaitlistStatus.NOTIFIED or seen.offered_range is None:
            raise InvalidStateError(
                f"Waitlist entry {entry_id} has no open offer (status {seen.status.value})"
            )

        provider_id = seen.preferred_provider_id
        with self._provider_locked(provider_id, seen.offered_range.date) as keys:
            entry = self._require(entry_id)
            if entry.status == WaitlistStatus.EXPIRED:
                raise WaitlistExpiredError(f"Waitlist offer for entry {entry_id} has expired")
            if entry.status != WaitlistStatus.NOTIFIED or entry.offered_range != seen.offered_range:
                raise InvalidStateError(
                    f"Waitlist entry {entry_id} has no open offer (status {entry.status.value})"
                )

            now = self._clock()
            if now >= entry.notify_deadline:
                freed = entry.offered_range
                self._expire(entry)
                self._promote_next(keys, provider_id, freed, now)
                raise WaitlistExpiredError(
                    f"Waitlist offer for entry {entry_id} expired at "
                    f"{entry.notify_deadline.isoformat(timespec='minutes')}"
                )

            appointment = self._appointments.book(
                patient_id=entry.patient_id,
                provider_id=provider_id,
                service_type=entry.preferred_service,
                time_range=entry.offered_range,
                actor_id=actor_id or entry.patient_id,
                hold_token=entry.id,
            )
            entry.status = WaitlistStatus.SCHEDULED
            entry.appointment_id = appointment.id

        self._audit.record("waitlist.schedule", actor_id or entry.patient_id, entry_id)
        logger.info("waitlist_scheduled", entry_id=entry_id, appointment_id=appointment.id)
        return appointment

    def expire_overdue(self, now: Optional[datetime] = None) -> ExpiryReport:
        """
        Expire every NOTIFIED entry whose deadline has passed at ``now``.

        Each expiry releases the held slot and cascades the offer to the next
        matching ACTIVE entry. The cascade is automatic and only logged.

        Returns:
            ExpiryReport(expired_count, promoted_count)
        """
        now = now or self._clock()
        with self._registry_lock:
            overdue = [
                e for e in self._entries.values()
                if e.status == WaitlistStatus.NOTIFIED and e.notify_deadline <= now
            ]
        overdue.sort(key=lambda e: (e.notify_deadline, e.id))

        expired = promoted = 0
        for seen in overdue:
            provider_id = seen.preferred_provider_id
            with self._provider_locked(provider_id, seen.offered_range.date) as keys:
                entry = self._entries.get(seen.id)
                if (
                    entry is None
                    or entry.status != WaitlistStatus.NOTIFIED
                    or entry.notify_deadline > now
                ):
                    continue
                freed = entry.offered_range
                self._expire(entry)
                expired += 1
                if self._promote_next(keys, provider_id, freed, now) is not None:
                    promoted += 1

        logger.info("waitlist_expiry_sweep", expired_count=expired, promoted_count=promoted)
        return ExpiryReport(expired, promoted)

    def remove(self, entry_id: str, actor_id: Optional[str] = None) -> None:
        """
        Receptionist removal from any non-SCHEDULED state.

        A NOTIFIED entry's held slot is released and offered onward.

        Raises:
            NotFoundError: Unknown entry
            InvalidStateError: Entry already SCHEDULED
        """
        while True:
            seen = self._require(entry_id)
            if seen.status == WaitlistStatus.SCHEDULED:
                raise InvalidStateError(f"Waitlist entry {entry_id} is already scheduled")

            provider_id = seen.preferred_provider_id
            day = _offered_day(seen)
            with self._provider_locked(provider_id, day) as keys:
                entry = self._require(entry_id)
                if entry.status == WaitlistStatus.SCHEDULED:
                    raise InvalidStateError(f"Waitlist entry {entry_id} is already scheduled")
                # Promoted after the unlocked read; its bucket must be locked first
                if _offered_day(entry) not in (None, day):
                    continue

                freed = entry.offered_range if entry.status == WaitlistStatus.NOTIFIED else None
                with self._registry_lock:
                    del self._entries[entry_id]
                    self._queues[entry.queue_key].remove(entry_id)
                if freed is not None:
                    self._store.release_hold(entry_id, provider_id, freed.date)
                    self._promote_next(keys, provider_id, freed, self._clock())
                break

        self._audit.record("waitlist.remove", actor_id or SYSTEM_ACTOR, entry_id)
        logger.info("waitlist_removed", entry_id=entry_id, patient_id=entry.patient_id,
                    position=entry.position)

    # ===== INTERNALS =====

    def _require(self, entry_id: str) -> WaitlistEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Waitlist entry '{entry_id}' not found")
        return entry

    def _provider_keys(self, provider_id: str) -> List[QueueKey]:
        with self._registry_lock:
            return [key for key in self._queues if key[0] == provider_id]

    @contextmanager
    def _provider_locked(self, provider_id: str, day: Optional[date]) -> Iterator[List[QueueKey]]:
        """Bucket lock (if a date is given) then every queue key of the provider.

        Yields the locked keys; queues created afterwards are not candidates.
        """
        buckets = [bucket_key(provider_id, day)] if day is not None else []
        with self._store.locked(*buckets):
            keys = self._provider_keys(provider_id)
            with self._locks.hold(*keys):
                yield keys

    def _next_candidate(self, keys: List[QueueKey], time_range: TimeRange) -> Optional[WaitlistEntry]:
        candidates = []
        for key in keys:
            for entry_id in list(self._queues[key]):
                entry = self._entries[entry_id]
                if (
                    entry.status == WaitlistStatus.ACTIVE
                    and entry.date_range_wanted.contains(time_range.date)
                    and (
                        TimeWindowLabel.ANY in entry.time_preferences
                        or matches_any_window(time_range, entry.time_preferences)
                    )
                ):
                    candidates.append(entry)
        if not candidates:
            return None
        return min(candidates, key=lambda e: (e.added_at, e.position, e.id))

    def _promote_next(
        self,
        keys: List[QueueKey],
        provider_id: str,
        time_range: TimeRange,
        now: datetime
    ) -> Optional[WaitlistEntry]:
        if time_range.start_datetime <= now:
            logger.info("waitlist_slot_started", provider_id=provider_id, range=str(time_range))
            return None

        entry = self._next_candidate(keys, time_range)
        if entry is None:
            logger.info("waitlist_no_candidate", provider_id=provider_id, range=str(time_range))
            return None

        deadline = now + timedelta(hours=self._settings.waitlist_notify_hours)
        if not self._store.place_hold(provider_id, time_range, entry.id, deadline):
            logger.info("waitlist_slot_unavailable", provider_id=provider_id,
                        range=str(time_range), entry_id=entry.id)
            return None

        entry.status = WaitlistStatus.NOTIFIED
        entry.notify_deadline = deadline
        entry.offered_range = time_range

        self._audit.record("waitlist.notify", SYSTEM_ACTOR, entry.id)
        logger.info("waitlist_promoted", entry_id=entry.id, patient_id=entry.patient_id,
                    provider_id=provider_id, range=str(time_range),
                    notify_deadline=deadline.isoformat())
        notify_safely(
            self._notifier,
            entry.patient_id,
            f"A slot opened with {provider_id} on {time_range}. "
            f"Confirm by {deadline.isoformat(timespec='minutes')} to book it.",
        )
        return entry

    def _expire(self, entry: WaitlistEntry) -> None:
        self._store.release_hold(entry.id, entry.preferred_provider_id, entry.offered_range.date)
        entry.status = WaitlistStatus.EXPIRED

        self._audit.record("waitlist.expire", SYSTEM_ACTOR, entry.id)
        logger.info("waitlist_expired", entry_id=entry.id, patient_id=entry.patient_id,
                    notify_deadline=entry.notify_deadline.isoformat())
        notify_safely(
            self._notifier,
            entry.patient_id,
            f"Your waitlist offer for {entry.offered_range} has expired",
        )
