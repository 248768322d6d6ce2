"""Domain records: time slots, appointments and waitlist entries.

Pattern: pydantic models so the same shapes validate API payloads and
serialise to JSON with model_dump(mode="json").
"""
import uuid
from datetime import date, datetime, time
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from clinic_scheduler.state import AppointmentStatus, SlotStatus, WaitlistStatus
from clinic_scheduler.time_range import TimeRange
from clinic_scheduler.time_windows import TimeWindowLabel


def new_slot_id() -> str:
    return f"slot-{uuid.uuid4().hex[:10]}"


def new_waitlist_id() -> str:
    return f"wait-{uuid.uuid4().hex[:10]}"


class TimeSlot(BaseModel):
    """
    One provider slot inside a (provider, date) bucket.

    Owned by ScheduleStore; a slot is BOOKED only while bound to exactly one
    non-cancelled appointment (``appointment_id``). ``held_for`` marks an
    available slot reserved for a notified waitlist entry until ``held_until``.
    """
    id: str = Field(default_factory=new_slot_id)
    provider_id: str = Field(..., min_length=1)
    range: TimeRange
    status: SlotStatus = SlotStatus.AVAILABLE
    notes: Optional[str] = Field(None, max_length=512)
    appointment_id: Optional[str] = None
    held_for: Optional[str] = None
    held_until: Optional[datetime] = None

    model_config = ConfigDict(validate_assignment=True)

    @property
    def date(self) -> date:
        return self.range.date

    def is_held(self, now: datetime) -> bool:
        return (
            self.status == SlotStatus.AVAILABLE
            and self.held_for is not None
            and self.held_until is not None
            and now < self.held_until
        )


class SlotPatch(BaseModel):
    """Partial update for a slot; unset fields are left alone."""
    day: Optional[date] = Field(None, alias="date")
    start: Optional[time] = None
    end: Optional[time] = None
    status: Optional[SlotStatus] = None
    notes: Optional[str] = Field(None, max_length=512)

    model_config = ConfigDict(populate_by_name=True)

    def changes_range(self) -> bool:
        return any(v is not None for v in (self.day, self.start, self.end))

    def apply_to(self, current: TimeRange) -> TimeRange:
        return TimeRange(
            date=self.day or current.date,
            start=self.start or current.start,
            end=self.end or current.end,
        )


class Appointment(BaseModel):
    """
    A patient's booking with one provider.

    Never deleted: cancelling only flips ``status`` so the history stays
    auditable.
    """
    id: str
    patient_id: str = Field(..., min_length=1)
    provider_id: str = Field(..., min_length=1)
    service_type: str = Field(..., min_length=1)
    range: TimeRange
    location: str
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    notes: str = Field(default="", max_length=512)
    created_at: datetime
    updated_at: datetime
    cancelled_at: Optional[datetime] = None
    rescheduled_at: Optional[datetime] = None

    model_config = ConfigDict(validate_assignment=True)


class DateRange(BaseModel):
    """Inclusive range of dates a waitlisted patient can attend."""
    start: date
    end: date

    @model_validator(mode="after")
    def check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("End date must be on or after start date")
        return self

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


class WaitlistEntry(BaseModel):
    """
    A patient queued for a provider/service when the calendar is full.

    ``position`` is assigned once on enqueue and never renumbered.
    ``offered_range`` is the freed slot (with the preferred provider) while
    the entry is NOTIFIED.
    """
    id: str = Field(default_factory=new_waitlist_id)
    patient_id: str = Field(..., min_length=1)
    preferred_provider_id: str = Field(..., min_length=1)
    preferred_service: str = Field(..., min_length=1)
    date_range_wanted: DateRange
    time_preferences: List[TimeWindowLabel]
    position: int = 0
    status: WaitlistStatus = WaitlistStatus.ACTIVE
    added_at: Optional[datetime] = None
    notify_deadline: Optional[datetime] = None
    offered_range: Optional[TimeRange] = None
    appointment_id: Optional[str] = None

    model_config = ConfigDict(validate_assignment=True)

    @property
    def queue_key(self) -> tuple:
        return (self.preferred_provider_id, self.preferred_service)
