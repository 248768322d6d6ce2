"""Slot conflict detection.

Pure queries over ScheduleStore: nothing here mutates state. Callers that act
on the answer (Book, Reschedule) must hold the bucket lock around both the
check and the commit.
"""
from datetime import datetime
from typing import Callable, NamedTuple, Optional

from clinic_scheduler.config import Settings
from clinic_scheduler.errors import (
    OutsideBusinessHoursError,
    PastDateError,
    SlotConflictError,
)
from clinic_scheduler.schedule_store import ScheduleStore
from clinic_scheduler.state import SlotStatus
from clinic_scheduler.time_range import TimeRange


class Availability(NamedTuple):
    ok: bool
    conflict: Optional[TimeRange] = None


class SlotConflictChecker:
    """Decides whether a proposed range is free for a provider."""

    def __init__(
        self,
        store: ScheduleStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self._store = store
        self._settings = settings or store.settings
        self._clock = clock

    def validate_request(self, time_range: TimeRange) -> None:
        """
        Request-shape checks that do not depend on occupancy.

        Raises:
            PastDateError: Range starts before now
            OutsideBusinessHoursError: Range leaves the business-hours window
        """
        if time_range.start_datetime < self._clock():
            raise PastDateError(f"Cannot book {time_range}: that time has already passed")

        opens = self._settings.business_hours_start
        closes = self._settings.business_hours_end
        if time_range.start < opens or time_range.end > closes:
            raise OutsideBusinessHoursError(
                f"Requested time {time_range} is outside business hours "
                f"({opens.strftime('%H:%M')}-{closes.strftime('%H:%M')})"
            )

    def check_available(
        self,
        provider_id: str,
        time_range: TimeRange,
        exclude_appointment_id: Optional[str] = None,
        hold_token: Optional[str] = None
    ) -> Availability:
        """
        Scan the provider's day for anything occupying the range.

        Booked slots (other than ``exclude_appointment_id``'s own), blocked
        slots and slots held for someone other than ``hold_token`` conflict.
        Adjacent ranges never conflict.

        Returns:
            Availability(ok, conflict) where conflict is the first clash found
        """
        now = self._clock()
        for slot in self._store.overlapping(provider_id, time_range):
            if slot.status == SlotStatus.BOOKED:
                if exclude_appointment_id is None or slot.appointment_id != exclude_appointment_id:
                    return Availability(False, slot.range)
            elif slot.status == SlotStatus.BLOCKED:
                return Availability(False, slot.range)
            elif slot.is_held(now) and slot.held_for != hold_token:
                return Availability(False, slot.range)
        return Availability(True, None)

    def ensure_available(
        self,
        provider_id: str,
        time_range: TimeRange,
        exclude_appointment_id: Optional[str] = None,
        hold_token: Optional[str] = None
    ) -> None:
        """Raise SlotConflictError naming the clashing range if not free."""
        result = self.check_available(provider_id, time_range, exclude_appointment_id, hold_token)
        if not result.ok:
            raise SlotConflictError(
                f"Requested time {time_range} conflicts with an existing booking "
                f"at {result.conflict.start.strftime('%H:%M')}-{result.conflict.end.strftime('%H:%M')}",
                conflicting_range=result.conflict,
            )
