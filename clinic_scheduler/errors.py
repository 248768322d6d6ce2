"""Typed errors returned by the scheduling core.

Every error carries a stable ``code`` so API handlers can map it to a
response without string matching. None of these are retried internally:
recovering (pick another time, fix the batch) needs a human decision.
"""
from typing import Any, Dict


class SchedulingError(Exception):
    """Base class for all scheduling failures."""
    code = "SCHEDULING_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "error": self.message}
        payload.update(self.details)
        return payload


class SlotConflictError(SchedulingError):
    """Another active appointment, block, or hold occupies the range."""
    code = "SLOT_CONFLICT"

    def __init__(self, message: str, conflicting_range=None, **details: Any):
        super().__init__(message, **details)
        self.conflicting_range = conflicting_range

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.conflicting_range is not None:
            payload["conflicting_range"] = self.conflicting_range.to_dict()
        return payload


class OverlapError(SchedulingError):
    """Two slots of the same provider/date overlap."""
    code = "OVERLAP"

    def __init__(self, message: str, first=None, second=None, **details: Any):
        super().__init__(message, **details)
        self.first = first
        self.second = second

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["detail"] = self.message
        payload["ranges"] = [r.to_dict() for r in (self.first, self.second) if r is not None]
        return payload


class PastDateError(SchedulingError):
    """Requested range starts in the past."""
    code = "PAST_DATE"


class OutsideBusinessHoursError(SchedulingError):
    """Requested range falls outside the configured business hours."""
    code = "OUTSIDE_HOURS"


class InvalidStateError(SchedulingError):
    """Operation not allowed in the object's current state."""
    code = "INVALID_STATE"


class InvalidTransitionError(SchedulingError):
    """Requested status change is not in the transition table."""
    code = "INVALID_TRANSITION"


class NotFoundError(SchedulingError):
    """Referenced appointment, slot, or waitlist entry does not exist."""
    code = "NOT_FOUND"


class DuplicateActiveEntryError(SchedulingError):
    """Patient already has an active or notified entry in this queue."""
    code = "DUPLICATE_ACTIVE"


class InvalidTimePreferenceError(SchedulingError):
    """Waitlist request has no usable time preferences or date range."""
    code = "INVALID_PREFERENCES"


class ImmutableBookedSlotError(SchedulingError):
    """A booked slot's range cannot be edited; cancel and rebook instead."""
    code = "IMMUTABLE_BOOKED_SLOT"


class SlotInUseError(SchedulingError):
    """A booked slot cannot be removed."""
    code = "SLOT_IN_USE"


class WaitlistExpiredError(SchedulingError):
    """Waitlist offer was confirmed after its deadline."""
    code = "EXPIRED"
