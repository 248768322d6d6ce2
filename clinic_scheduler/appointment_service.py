"""Appointment lifecycle: book, reschedule, cancel, advance status.

Every operation that touches slots runs check-then-act under the target
bucket's lock, so two overlapping bookings for the same provider can never
both commit.

Pattern: appointments are never deleted; cancel only flips the status.
"""
import itertools
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional

from clinic_scheduler.collaborators import (
    AuditLog,
    InMemoryAuditLog,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    notify_safely,
)
from clinic_scheduler.config import Settings
from clinic_scheduler.conflict_checker import SlotConflictChecker
from clinic_scheduler.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
)
from clinic_scheduler.logging_config import get_logger
from clinic_scheduler.models import Appointment
from clinic_scheduler.schedule_store import ScheduleStore, bucket_key
from clinic_scheduler.state import (
    ACTIVE_APPOINTMENT_STATES,
    AppointmentStatus,
    validate_transition,
)
from clinic_scheduler.time_range import TimeRange

logger = get_logger(__name__)

SlotFreedListener = Callable[[str, TimeRange], object]


class AppointmentService:
    """Creates and drives appointments against the schedule store."""

    def __init__(
        self,
        store: ScheduleStore,
        checker: Optional[SlotConflictChecker] = None,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLog] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self._store = store
        self._settings = settings or store.settings
        self._clock = clock
        self._checker = checker or SlotConflictChecker(store, self._settings, clock)
        self._audit = audit or InMemoryAuditLog()
        self._notifier = notifier or LoggingNotificationDispatcher()
        self._appointments: Dict[str, Appointment] = {}
        self._listeners: List[SlotFreedListener] = []
        # Confirmation numbers: APPT-1001, APPT-1002, ...
        self._counter = itertools.count(1001)
        self._counter_lock = threading.Lock()

    def add_slot_freed_listener(self, listener: SlotFreedListener) -> None:
        """Register a callback run (under the bucket lock) whenever a booked range frees up."""
        self._listeners.append(listener)

    # ===== QUERIES =====

    def get(self, appointment_id: str) -> Appointment:
        return self._require(appointment_id).model_copy(deep=True)

    def list_appointments(
        self,
        provider_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        include_cancelled: bool = True
    ) -> List[Appointment]:
        """Appointments ordered by date and start time."""
        found = [
            a.model_copy(deep=True) for a in list(self._appointments.values())
            if (provider_id is None or a.provider_id == provider_id)
            and (patient_id is None or a.patient_id == patient_id)
            and (include_cancelled or a.status != AppointmentStatus.CANCELLED)
        ]
        return sorted(found, key=lambda a: (a.range.date, a.range.start, a.id))

    # ===== COMMANDS =====

    def book(
        self,
        patient_id: str,
        provider_id: str,
        service_type: str,
        time_range: TimeRange,
        location: Optional[str] = None,
        notes: str = "",
        actor_id: Optional[str] = None,
        hold_token: Optional[str] = None
    ) -> Appointment:
        """
        Book a range for a patient.

        Args:
            patient_id: Patient being booked
            provider_id: Provider whose calendar is used
            service_type: Service id or name
            time_range: Requested [start, end)
            location: Defaults to settings.default_location
            notes: Free text
            actor_id: Who performed the booking (defaults to the patient)
            hold_token: Waitlist entry id allowed to use a slot held for it

        Returns:
            The new appointment in SCHEDULED state

        Raises:
            PastDateError: Range starts in the past
            OutsideBusinessHoursError: Range leaves business hours
            SlotConflictError: Range overlaps a booking, block, or foreign hold
        """
        self._checker.validate_request(time_range)

        with self._store.locked(bucket_key(provider_id, time_range.date)):
            self._checker.ensure_available(provider_id, time_range, hold_token=hold_token)

            now = self._clock()
            appointment = Appointment(
                id=self._next_id(),
                patient_id=patient_id,
                provider_id=provider_id,
                service_type=service_type,
                range=time_range,
                location=location or self._settings.default_location,
                notes=notes,
                created_at=now,
                updated_at=now,
            )
            self._store.bind(appointment.id, provider_id, time_range, hold_token=hold_token)
            self._appointments[appointment.id] = appointment

        self._audit.record("appointment.book", actor_id or patient_id, appointment.id)
        logger.info(
            "appointment_booked",
            appointment_id=appointment.id,
            patient_id=patient_id,
            provider_id=provider_id,
            range=str(time_range),
        )
        notify_safely(
            self._notifier,
            patient_id,
            f"Your appointment {appointment.id} is booked for {time_range}",
        )
        return appointment.model_copy(deep=True)

    def reschedule(
        self,
        appointment_id: str,
        new_range: TimeRange,
        new_provider_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Appointment:
        """
        Move an active appointment to a new range (and optionally provider).

        The old slot is freed and the new one booked together; if binding the
        new range fails, both buckets are restored and the original booking
        stays exactly as it was.

        Raises:
            NotFoundError: Unknown appointment
            InvalidStateError: Appointment is completed or cancelled
            PastDateError / OutsideBusinessHoursError: Bad new range
            SlotConflictError: New range is occupied
        """
        current = self._require(appointment_id)
        provider_id = new_provider_id or current.provider_id
        self._checker.validate_request(new_range)
        new_key = bucket_key(provider_id, new_range.date)

        with self._hold_appointment(appointment_id, new_key) as appointment:
            if appointment.status not in ACTIVE_APPOINTMENT_STATES:
                raise InvalidStateError(
                    f"Cannot reschedule appointment {appointment_id}: it is {appointment.status.value}"
                )
            old_range = appointment.range
            old_provider = appointment.provider_id
            if old_provider == provider_id and old_range == new_range:
                return appointment.model_copy(deep=True)

            self._checker.ensure_available(
                provider_id, new_range, exclude_appointment_id=appointment_id
            )

            old_key = bucket_key(old_provider, old_range.date)
            saved = {key: self._store.snapshot(key) for key in {old_key, new_key}}
            try:
                self._store.release(appointment_id, old_provider, old_range.date)
                self._store.bind(appointment_id, provider_id, new_range)
            except Exception:
                for key, slots in saved.items():
                    self._store.restore(key, slots)
                logger.warning("reschedule_rolled_back", appointment_id=appointment_id,
                               range=str(new_range), exc_info=True)
                raise

            now = self._clock()
            appointment.provider_id = provider_id
            appointment.range = new_range
            appointment.rescheduled_at = now
            appointment.updated_at = now

            if old_key != new_key or not old_range.overlaps(new_range):
                self._emit_slot_freed(old_provider, old_range)
            updated = appointment.model_copy(deep=True)

        self._audit.record("appointment.reschedule", actor_id or updated.patient_id, appointment_id)
        logger.info(
            "appointment_rescheduled",
            appointment_id=appointment_id,
            old_provider_id=old_provider,
            old_range=str(old_range),
            provider_id=provider_id,
            range=str(new_range),
        )
        notify_safely(
            self._notifier,
            updated.patient_id,
            f"Your appointment {appointment_id} has been moved to {new_range}",
        )
        return updated

    def cancel(self, appointment_id: str, actor_id: Optional[str] = None) -> Appointment:
        """
        Cancel an appointment and free its slot.

        Slot-freed listeners (the waitlist) run before the bucket lock is
        released, so the freed slot cannot be grabbed by a concurrent Book
        before it has been offered.

        Raises:
            NotFoundError: Unknown appointment
            InvalidStateError: Already cancelled or completed
        """
        with self._hold_appointment(appointment_id) as appointment:
            if appointment.status not in ACTIVE_APPOINTMENT_STATES:
                raise InvalidStateError(
                    f"Cannot cancel appointment {appointment_id}: it is {appointment.status.value}"
                )
            self._store.release(appointment_id, appointment.provider_id, appointment.range.date)

            now = self._clock()
            appointment.status = AppointmentStatus.CANCELLED
            appointment.cancelled_at = now
            appointment.updated_at = now
            cancelled = appointment.model_copy(deep=True)

            logger.info("slot_freed", appointment_id=appointment_id,
                        provider_id=cancelled.provider_id, range=str(cancelled.range))
            self._emit_slot_freed(cancelled.provider_id, cancelled.range)

        self._audit.record("appointment.cancel", actor_id or cancelled.patient_id, appointment_id)
        logger.info("appointment_cancelled", appointment_id=appointment_id,
                    provider_id=cancelled.provider_id, range=str(cancelled.range))
        return cancelled

    def advance_status(
        self,
        appointment_id: str,
        next_status,
        actor_id: Optional[str] = None
    ) -> Appointment:
        """
        Move an appointment one step along the lifecycle.

        ``cancelled`` is routed through cancel() so the slot is freed.

        Raises:
            NotFoundError: Unknown appointment
            InvalidTransitionError: Step not allowed from the current state
        """
        target = AppointmentStatus(next_status)
        if target == AppointmentStatus.CANCELLED:
            current = self._require(appointment_id)
            if not validate_transition(current.status, target):
                raise InvalidTransitionError(
                    f"Cannot move appointment {appointment_id} from "
                    f"{current.status.value} to {target.value}"
                )
            return self.cancel(appointment_id, actor_id=actor_id)

        with self._hold_appointment(appointment_id) as appointment:
            previous = appointment.status
            if not validate_transition(previous, target):
                raise InvalidTransitionError(
                    f"Cannot move appointment {appointment_id} from "
                    f"{previous.value} to {target.value}"
                )
            appointment.status = target
            appointment.updated_at = self._clock()
            updated = appointment.model_copy(deep=True)

        self._audit.record(
            f"appointment.{target.value}", actor_id or updated.patient_id, appointment_id
        )
        logger.info("appointment_status_changed", appointment_id=appointment_id,
                    from_status=previous.value, to_status=target.value)
        return updated

    # ===== INTERNALS =====

    def _require(self, appointment_id: str) -> Appointment:
        appointment = self._appointments.get(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment '{appointment_id}' not found")
        return appointment

    def _next_id(self) -> str:
        with self._counter_lock:
            return f"APPT-{next(self._counter)}"

    @contextmanager
    def _hold_appointment(self, appointment_id: str, *extra_keys) -> Iterator[Appointment]:
        """
        Lock the appointment's current bucket (plus extra_keys) and yield it.

        The bucket is read before locking, so re-check after acquiring; a
        concurrent reschedule may have moved the appointment meanwhile.
        """
        while True:
            seen = self._require(appointment_id)
            key = bucket_key(seen.provider_id, seen.range.date)
            with self._store.locked(key, *extra_keys):
                appointment = self._require(appointment_id)
                if bucket_key(appointment.provider_id, appointment.range.date) == key:
                    yield appointment
                    return

    def _emit_slot_freed(self, provider_id: str, time_range: TimeRange) -> None:
        for listener in self._listeners:
            try:
                listener(provider_id, time_range)
            except Exception:
                logger.error("slot_freed_listener_failed", provider_id=provider_id,
                             range=str(time_range), exc_info=True)
