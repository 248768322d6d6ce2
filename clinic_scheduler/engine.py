"""Wiring for the scheduling core.

SchedulingEngine builds the store, checker, appointment service, waitlist and
calendar around one shared set of bucket locks and collaborators, and exposes
the synchronous operations UI/API handlers call.
"""
from datetime import date, datetime, time
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from clinic_scheduler.appointment_service import AppointmentService
from clinic_scheduler.calendar_view import CalendarView
from clinic_scheduler.collaborators import (
    AuditLog,
    InMemoryAuditLog,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
)
from clinic_scheduler.config import Settings
from clinic_scheduler.conflict_checker import Availability, SlotConflictChecker
from clinic_scheduler.errors import SlotConflictError
from clinic_scheduler.locks import KeyedLocks
from clinic_scheduler.logging_config import get_logger
from clinic_scheduler.models import Appointment, SlotPatch, TimeSlot, WaitlistEntry
from clinic_scheduler.schedule_store import SYSTEM_ACTOR, ScheduleStore
from clinic_scheduler.time_range import TimeRange
from clinic_scheduler.waitlist import ExpiryReport, WaitlistManager

logger = get_logger(__name__)


class SchedulingEngine:
    """In-process facade over the scheduling components."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
        notifier: Optional[NotificationDispatcher] = None,
        audit: Optional[AuditLog] = None
    ):
        self.settings = settings or Settings()
        self.clock = clock
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.audit = audit or InMemoryAuditLog()

        self.store = ScheduleStore(self.settings, KeyedLocks(), self.audit, clock)
        self.checker = SlotConflictChecker(self.store, self.settings, clock)
        self.appointments = AppointmentService(
            self.store, self.checker, self.settings, self.audit, self.notifier, clock
        )
        self.waitlist = WaitlistManager(
            self.store, self.appointments, self.settings, self.audit, self.notifier, clock,
            locks=KeyedLocks(),
        )
        self.calendar = CalendarView(self.appointments)

    # ===== APPOINTMENTS =====

    def check_available(
        self,
        provider_id: str,
        time_range: TimeRange,
        exclude_appointment_id: Optional[str] = None
    ) -> Availability:
        self.checker.validate_request(time_range)
        return self.checker.check_available(provider_id, time_range, exclude_appointment_id)

    def book(
        self,
        patient_id: str,
        provider_id: str,
        service_type: str,
        time_range: TimeRange,
        location: Optional[str] = None,
        notes: str = "",
        actor_id: Optional[str] = None
    ) -> Appointment:
        """
        Book an appointment.

        On SLOT_CONFLICT the error carries ``waitlist_offered``: True when the
        provider has no free slot left that day, so the caller can offer the
        waitlist instead of another time.
        """
        try:
            return self.appointments.book(
                patient_id, provider_id, service_type, time_range,
                location=location, notes=notes, actor_id=actor_id,
            )
        except SlotConflictError as e:
            fully_booked = self.store.is_fully_booked(provider_id, time_range.date)
            e.details["waitlist_offered"] = fully_booked
            logger.info("booking_conflict", provider_id=provider_id, range=str(time_range),
                        conflicting_range=str(e.conflicting_range), waitlist_offered=fully_booked)
            raise

    def reschedule(
        self,
        appointment_id: str,
        new_range: TimeRange,
        new_provider_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Appointment:
        return self.appointments.reschedule(
            appointment_id, new_range, new_provider_id=new_provider_id, actor_id=actor_id
        )

    def cancel(self, appointment_id: str, actor_id: Optional[str] = None) -> Appointment:
        return self.appointments.cancel(appointment_id, actor_id=actor_id)

    def advance_status(self, appointment_id: str, next_status, actor_id: Optional[str] = None) -> Appointment:
        return self.appointments.advance_status(appointment_id, next_status, actor_id=actor_id)

    def get_appointment(self, appointment_id: str) -> Appointment:
        return self.appointments.get(appointment_id)

    # ===== PROVIDER SCHEDULES =====

    def open_day(
        self,
        provider_id: str,
        day: date,
        slot_minutes: Optional[int] = None,
        lunch_break: Optional[Tuple[time, time]] = None,
        actor_id: str = SYSTEM_ACTOR
    ) -> List[TimeSlot]:
        return self.store.open_day(provider_id, day, slot_minutes, lunch_break, actor_id)

    def get_schedule(self, provider_id: str, day: date) -> List[TimeSlot]:
        return self.store.get_slots(provider_id, day)

    def add_slot(self, slot: TimeSlot, actor_id: str = SYSTEM_ACTOR) -> TimeSlot:
        return self.store.add_slot(slot, actor_id)

    def update_slot(self, slot_id: str, patch: SlotPatch, actor_id: str = SYSTEM_ACTOR) -> TimeSlot:
        return self.store.update_slot(slot_id, patch, actor_id)

    def remove_slot(self, slot_id: str, actor_id: str = SYSTEM_ACTOR) -> None:
        self.store.remove_slot(slot_id, actor_id)

    def validate_schedule_batch(self, provider_id: str, day: date, slots: Sequence[TimeSlot]) -> bool:
        """Raises OverlapError for the first overlapping pair; True otherwise."""
        self.store.validate_batch(
            [s.model_copy(update={"provider_id": provider_id}) for s in slots], day
        )
        return True

    def commit_schedule_batch(
        self,
        provider_id: str,
        day: date,
        slots: Sequence[TimeSlot],
        actor_id: str = SYSTEM_ACTOR
    ) -> List[TimeSlot]:
        return self.store.commit_batch(provider_id, day, slots, actor_id)

    # ===== WAITLIST =====

    def enqueue_waitlist(
        self,
        patient_id: str,
        provider_id: str,
        service: str,
        date_from: date,
        date_to: date,
        time_preferences: Iterable,
        actor_id: Optional[str] = None
    ) -> WaitlistEntry:
        return self.waitlist.enqueue(
            patient_id, provider_id, service, date_from, date_to, time_preferences, actor_id
        )

    def confirm_waitlist_slot(self, entry_id: str, actor_id: Optional[str] = None) -> Appointment:
        return self.waitlist.confirm_notified(entry_id, actor_id=actor_id)

    def remove_waitlist_entry(self, entry_id: str, actor_id: Optional[str] = None) -> None:
        self.waitlist.remove(entry_id, actor_id=actor_id)

    def expire_overdue(self, now: Optional[datetime] = None) -> ExpiryReport:
        return self.waitlist.expire_overdue(now)
