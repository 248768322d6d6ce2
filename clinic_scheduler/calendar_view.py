"""Read-only calendar projections of appointments (day / week / month / history)."""
import calendar
from collections import OrderedDict
from datetime import date, timedelta
from typing import Dict, List, Optional

from clinic_scheduler.appointment_service import AppointmentService
from clinic_scheduler.models import Appointment
from clinic_scheduler.state import AppointmentStatus


class CalendarView:
    """Groups appointments by date for the provider/receptionist calendars."""

    def __init__(self, appointments: AppointmentService):
        self._appointments = appointments

    def day(
        self,
        day: date,
        provider_id: Optional[str] = None,
        include_cancelled: bool = False
    ) -> Dict[date, List[Appointment]]:
        return self._window(day, day, provider_id, include_cancelled)

    def week(
        self,
        day: date,
        provider_id: Optional[str] = None,
        include_cancelled: bool = False
    ) -> Dict[date, List[Appointment]]:
        """Monday to Sunday of the week containing ``day``."""
        monday = day - timedelta(days=day.weekday())
        return self._window(monday, monday + timedelta(days=6), provider_id, include_cancelled)

    def month(
        self,
        year: int,
        month: int,
        provider_id: Optional[str] = None,
        include_cancelled: bool = False
    ) -> Dict[date, List[Appointment]]:
        last_day = calendar.monthrange(year, month)[1]
        return self._window(
            date(year, month, 1), date(year, month, last_day), provider_id, include_cancelled
        )

    def patient_history(
        self,
        patient_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        provider_id: Optional[str] = None
    ) -> List[Appointment]:
        """
        One patient's appointments, newest first.

        Args:
            patient_id: Patient whose history is listed
            date_from: Optional first date (inclusive)
            date_to: Optional last date (inclusive)
            provider_id: Optional provider filter

        Returns:
            Appointments of every status, most recent date/time first
        """
        history = [
            a for a in self._appointments.list_appointments(
                provider_id=provider_id, patient_id=patient_id
            )
            if (date_from is None or a.range.date >= date_from)
            and (date_to is None or a.range.date <= date_to)
        ]
        history.reverse()
        return history

    def _window(
        self,
        first: date,
        last: date,
        provider_id: Optional[str],
        include_cancelled: bool
    ) -> Dict[date, List[Appointment]]:
        grouped: Dict[date, List[Appointment]] = OrderedDict()
        current = first
        while current <= last:
            grouped[current] = []
            current += timedelta(days=1)

        for appointment in self._appointments.list_appointments(
            provider_id=provider_id, include_cancelled=include_cancelled
        ):
            if first <= appointment.range.date <= last:
                grouped[appointment.range.date].append(appointment)
        return grouped


def count_active(grouped: Dict[date, List[Appointment]]) -> int:
    """Number of non-cancelled appointments across a projection."""
    return sum(
        1 for items in grouped.values() for a in items
        if a.status != AppointmentStatus.CANCELLED
    )
