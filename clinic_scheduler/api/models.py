"""Pydantic models for API request/response validation."""
from datetime import date, datetime, time
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from clinic_scheduler import config
from clinic_scheduler.models import SlotPatch, TimeSlot
from clinic_scheduler.state import AppointmentStatus, SlotStatus
from clinic_scheduler.time_range import TimeRange


class BookRequest(BaseModel):
    """Request schema for POST /appointments."""
    patient_id: str = Field(..., min_length=1, max_length=100)
    provider_id: str = Field(..., min_length=1, max_length=100)
    service_type: str = Field(
        ...,
        min_length=1,
        description="Service id or name",
        examples=["srv-001", "General Consultation"]
    )
    date: date
    start_time: time
    end_time: Optional[time] = Field(
        None,
        description="Defaults to start_time plus the service duration"
    )
    location: Optional[str] = None
    notes: str = Field(default="", max_length=512)
    actor_id: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "patient_id": "pat-001",
                "provider_id": "dr-a",
                "service_type": "srv-001",
                "date": "2024-06-10",
                "start_time": "09:00",
                "end_time": "09:30"
            }
        }
    )

    def to_range(self, default_minutes: int) -> TimeRange:
        if self.end_time is not None:
            return TimeRange(date=self.date, start=self.start_time, end=self.end_time)
        service = config.get_service(self.service_type)
        minutes = service["duration_minutes"] if service else default_minutes
        return TimeRange.from_duration(self.date, self.start_time, minutes)


class RescheduleRequest(BaseModel):
    """Request schema for PUT /appointments/<id>/reschedule."""
    date: date
    start_time: time
    end_time: time
    provider_id: Optional[str] = Field(None, description="Move to another provider")
    actor_id: Optional[str] = None

    def to_range(self) -> TimeRange:
        return TimeRange(date=self.date, start=self.start_time, end=self.end_time)


class ActorRequest(BaseModel):
    """Optional body carrying who performed an action."""
    actor_id: Optional[str] = None


class StatusRequest(BaseModel):
    """Request schema for PATCH /appointments/<id>/status."""
    status: AppointmentStatus
    actor_id: Optional[str] = None


class SlotRequest(BaseModel):
    """One slot in a slot or schedule-batch request."""
    id: Optional[str] = None
    date: date
    start_time: time
    end_time: time
    status: SlotStatus = SlotStatus.AVAILABLE
    notes: Optional[str] = Field(None, max_length=512)

    def to_slot(self, provider_id: str) -> TimeSlot:
        fields = dict(
            provider_id=provider_id,
            range=TimeRange(date=self.date, start=self.start_time, end=self.end_time),
            status=self.status,
            notes=self.notes,
        )
        if self.id:
            fields["id"] = self.id
        return TimeSlot(**fields)


class SlotPatchRequest(BaseModel):
    """Request schema for PATCH /slots/<id>; unset fields are left alone."""
    day: Optional[date] = Field(None, alias="date")
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    status: Optional[SlotStatus] = None
    notes: Optional[str] = Field(None, max_length=512)
    actor_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    def to_patch(self) -> SlotPatch:
        return SlotPatch(
            day=self.day,
            start=self.start_time,
            end=self.end_time,
            status=self.status,
            notes=self.notes,
        )


class ScheduleBatchRequest(BaseModel):
    """Request schema for PUT /providers/<id>/schedule/<date>."""
    slots: List[SlotRequest]
    actor_id: Optional[str] = None


class OpenDayRequest(BaseModel):
    """Request schema for POST /providers/<id>/schedule/<date>/open."""
    slot_minutes: Optional[int] = Field(None, gt=0, le=480)
    skip_lunch: bool = False
    actor_id: Optional[str] = None


class WaitlistRequest(BaseModel):
    """Request schema for POST /waitlist."""
    patient_id: str = Field(..., min_length=1, max_length=100)
    provider_id: str = Field(..., min_length=1, max_length=100)
    service_type: str = Field(..., min_length=1)
    date_from: date
    date_to: date
    time_preferences: List[str] = Field(
        default_factory=list,
        examples=[["early_morning", "Late Afternoon (2:00-4:00 PM)"]]
    )
    actor_id: Optional[str] = None


class ExpireRequest(BaseModel):
    """Request schema for POST /waitlist/expire."""
    now: Optional[datetime] = Field(None, description="Sweep time; defaults to the server clock")


class ErrorResponse(BaseModel):
    """Error response schema."""
    success: bool = False
    error: str = Field(..., description="Error message")
    code: Optional[str] = Field(None, description="Error code")
    detail: Optional[str] = Field(None, description="Detailed error information")

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "success": False,
                "error": "Requested time 2024-06-10 09:15-09:45 conflicts with an existing booking at 09:00-09:30",
                "code": "SLOT_CONFLICT",
                "conflicting_range": {"date": "2024-06-10", "start_time": "09:00", "end_time": "09:30"}
            }
        }
    )
