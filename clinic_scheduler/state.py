"""Status enums and lifecycle tables for slots, appointments and waitlist entries.

Appointments move strictly forward:
    scheduled -> confirmed -> checked_in -> completed
with cancelled reachable from the first three. Cancelled and completed
are terminal.
"""
from enum import Enum
from typing import Dict, List


class SlotStatus(str, Enum):
    """Occupancy of a provider time slot."""
    AVAILABLE = "available"
    BOOKED = "booked"
    BLOCKED = "blocked"


class AppointmentStatus(str, Enum):
    """Appointment lifecycle states."""
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked-in"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WaitlistStatus(str, Enum):
    """Waitlist entry lifecycle states."""
    ACTIVE = "active"
    NOTIFIED = "notified"
    SCHEDULED = "scheduled"
    EXPIRED = "expired"


# State machine transition map
# Pattern: Current state -> [allowed next states]
VALID_TRANSITIONS: Dict[AppointmentStatus, List[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: [
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
    ],
    AppointmentStatus.CONFIRMED: [
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.CANCELLED,
    ],
    AppointmentStatus.CHECKED_IN: [
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    ],
    AppointmentStatus.COMPLETED: [],
    AppointmentStatus.CANCELLED: [],
}

# Still holding a slot; these may be rescheduled or cancelled
ACTIVE_APPOINTMENT_STATES = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.CHECKED_IN,
})

# At most one entry per patient and queue key may sit in these states
OPEN_WAITLIST_STATES = frozenset({
    WaitlistStatus.ACTIVE,
    WaitlistStatus.NOTIFIED,
})


def validate_transition(
    current: AppointmentStatus,
    intended: AppointmentStatus
) -> bool:
    """
    Validate appointment status transition.

    Prevents:
    - Skipping states (scheduled -> completed)
    - Backward transitions
    - Leaving a terminal state

    Example:
        >>> validate_transition(
        ...     AppointmentStatus.SCHEDULED,
        ...     AppointmentStatus.CONFIRMED
        ... )
        True
    """
    allowed = VALID_TRANSITIONS.get(current, [])
    return intended in allowed
