"""TimeRange value type: a half-open [start, end) interval on one date."""
from datetime import date, datetime, time, timedelta
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, model_validator


class TimeRange(BaseModel):
    """
    Half-open interval on a single calendar date.

    Two ranges overlap iff they share the date and
    ``start < other.end and end > other.start``. Adjacent ranges
    (``a.end == b.start``) do not overlap, so back-to-back bookings are fine.
    """
    date: date
    start: time
    end: time

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_order(self) -> "TimeRange":
        if self.start >= self.end:
            raise ValueError(
                f"start ({self.start.strftime('%H:%M')}) must be before "
                f"end ({self.end.strftime('%H:%M')})"
            )
        return self

    @classmethod
    def parse(cls, day: str, start: str, end: str) -> "TimeRange":
        """Build a range from ``YYYY-MM-DD`` and ``HH:MM`` strings."""
        return cls(
            date=date.fromisoformat(day),
            start=time.fromisoformat(start),
            end=time.fromisoformat(end),
        )

    @classmethod
    def from_duration(cls, day: date, start: time, minutes: int) -> "TimeRange":
        start_dt = datetime.combine(day, start)
        end_dt = start_dt + timedelta(minutes=minutes)
        if end_dt.date() != day:
            raise ValueError("range must end on the same date it starts")
        return cls(date=day, start=start, end=end_dt.time())

    @property
    def start_datetime(self) -> datetime:
        return datetime.combine(self.date, self.start)

    def overlaps(self, other: "TimeRange") -> bool:
        if self.date != other.date:
            return False
        return self.start < other.end and self.end > other.start

    def contains(self, other: "TimeRange") -> bool:
        return self.date == other.date and self.start <= other.start and other.end <= self.end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "start_time": self.start.strftime("%H:%M"),
            "end_time": self.end.strftime("%H:%M"),
        }

    def __str__(self) -> str:
        return f"{self.date.isoformat()} {self.start.strftime('%H:%M')}-{self.end.strftime('%H:%M')}"
