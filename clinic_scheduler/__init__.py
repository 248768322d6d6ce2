"""Clinic appointment scheduling and slot-conflict engine."""
from clinic_scheduler.engine import SchedulingEngine
from clinic_scheduler.errors import SchedulingError
from clinic_scheduler.models import Appointment, TimeSlot, WaitlistEntry
from clinic_scheduler.time_range import TimeRange

__all__ = [
    "Appointment",
    "SchedulingEngine",
    "SchedulingError",
    "TimeRange",
    "TimeSlot",
    "WaitlistEntry",
]
