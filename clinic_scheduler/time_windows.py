"""Time-of-day preference windows and slot filtering.

Patients joining the waitlist pick one or more windows ("Early Morning",
"Late Afternoon", ...). The same labels filter availability lists.
"""
import re
from datetime import date, time
from enum import Enum
from typing import Dict, Iterable, List, Sequence, Tuple

from clinic_scheduler.errors import InvalidTimePreferenceError
from clinic_scheduler.time_range import TimeRange


class TimeWindowLabel(str, Enum):
    """Time of day preferences."""
    EARLY_MORNING = "early_morning"  # 08:00-10:00
    LATE_MORNING = "late_morning"  # 10:00-12:00
    EARLY_AFTERNOON = "early_afternoon"  # 12:00-14:00
    LATE_AFTERNOON = "late_afternoon"  # 14:00-16:00
    EVENING = "evening"  # 16:00-17:00
    MORNING = "morning"  # Before 12:00
    AFTERNOON = "afternoon"  # 12:00 and after
    ANY = "any"


# MORNING, AFTERNOON and ANY are open-ended; business hours already bound real slots
WINDOW_BOUNDS: Dict[TimeWindowLabel, Tuple[time, time]] = {
    TimeWindowLabel.EARLY_MORNING: (time(8, 0), time(10, 0)),
    TimeWindowLabel.LATE_MORNING: (time(10, 0), time(12, 0)),
    TimeWindowLabel.EARLY_AFTERNOON: (time(12, 0), time(14, 0)),
    TimeWindowLabel.LATE_AFTERNOON: (time(14, 0), time(16, 0)),
    TimeWindowLabel.EVENING: (time(16, 0), time(17, 0)),
    TimeWindowLabel.MORNING: (time(0, 0), time(12, 0)),
    TimeWindowLabel.AFTERNOON: (time(12, 0), time(23, 59)),
    TimeWindowLabel.ANY: (time(0, 0), time(23, 59)),
}

_PARENTHESIS = re.compile(r"\(.*\)")


def parse_label(raw) -> TimeWindowLabel:
    """
    Normalise a preference label.

    Accepts enum values ("late_morning") and the display strings used by the
    portals ("Late Morning (10:00 AM-12:00 PM)", "Morning").

    Raises:
        InvalidTimePreferenceError: If the label is unknown
    """
    if isinstance(raw, TimeWindowLabel):
        return raw
    text = _PARENTHESIS.sub("", str(raw)).strip().lower()
    text = re.sub(r"[\s\-]+", "_", text)
    try:
        return TimeWindowLabel(text)
    except ValueError:
        raise InvalidTimePreferenceError(f"Unknown time preference: {raw!r}")


def parse_labels(raw: Iterable) -> List[TimeWindowLabel]:
    """Normalise and de-duplicate labels, preserving order."""
    labels: List[TimeWindowLabel] = []
    for item in raw:
        label = parse_label(item)
        if label not in labels:
            labels.append(label)
    return labels


def window_range(label: TimeWindowLabel, day: date) -> TimeRange:
    start, end = WINDOW_BOUNDS[label]
    return TimeRange(date=day, start=start, end=end)


def matches_any_window(time_range: TimeRange, labels: Sequence[TimeWindowLabel]) -> bool:
    """True if the range overlaps at least one preferred window."""
    return any(window_range(label, time_range.date).overlaps(time_range) for label in labels)


class TimeFilter:
    """Filter availability slots by time-of-day windows."""

    def filter_by_windows(self, slots: List, labels: Sequence[TimeWindowLabel]) -> List:
        """
        Keep slots whose range overlaps one of the windows.

        Args:
            slots: TimeSlot objects (anything with a ``range``)
            labels: Preferred windows; empty or ANY keeps everything

        Returns:
            Filtered slots, original order preserved
        """
        if not labels or TimeWindowLabel.ANY in labels:
            return list(slots)
        return [slot for slot in slots if matches_any_window(slot.range, labels)]

