"""Configuration for the clinic scheduling engine.

Business catalogue lives in module-level constants - modify as needed without
touching code. Runtime settings are read from the environment (and an optional
.env file) by load_settings().
"""
import os
from datetime import time
from typing import Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator


SERVICES = [
    {"id": "srv-001", "name": "General Consultation", "duration_minutes": 30},
    {"id": "srv-002", "name": "Specialized Consultation", "duration_minutes": 60},
    {"id": "srv-003", "name": "Follow-up Appointment", "duration_minutes": 20},
    {"id": "srv-004", "name": "Annual Physical", "duration_minutes": 60},
]

LOCATION = {
    "name": "Main Clinic",
    "address": "123 Main Street, Downtown",
    "city": "Springfield",
    "phone": "555-0100"
}

OPERATING_HOURS = {
    "start_time": "08:00",
    "end_time": "17:00",
    "slot_duration_minutes": 30,
    "lunch_break": {
        "start": "12:00",
        "end": "13:00"
    }
}

# Waitlist offers stay open this long before ExpireOverdue reclaims them
WAITLIST_NOTIFY_HOURS = 24

# API Configuration
API_HOST = "0.0.0.0"
API_PORT = 5000


def _parse_time(raw: str) -> time:
    try:
        return time.fromisoformat(raw.strip())
    except ValueError as e:
        raise ValueError(f"Invalid time value: {raw!r}. Expected HH:MM") from e


class Settings(BaseModel):
    """Runtime settings for the engine and the HTTP API."""
    business_hours_start: time = Field(default=_parse_time(OPERATING_HOURS["start_time"]))
    business_hours_end: time = Field(default=_parse_time(OPERATING_HOURS["end_time"]))
    slot_duration_minutes: int = Field(default=OPERATING_HOURS["slot_duration_minutes"], gt=0, le=480)
    waitlist_notify_hours: int = Field(default=WAITLIST_NOTIFY_HOURS, gt=0)
    default_location: str = Field(default=LOCATION["name"], min_length=1)
    log_level: str = "INFO"
    api_host: str = API_HOST
    api_port: int = Field(default=API_PORT, gt=0, lt=65536)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid LOG_LEVEL: {v!r}")
        return level

    @model_validator(mode="after")
    def check_business_hours(self) -> "Settings":
        if self.business_hours_start >= self.business_hours_end:
            raise ValueError("BUSINESS_HOURS_END must be after BUSINESS_HOURS_START")
        return self


def lunch_break() -> Tuple[time, time]:
    """Configured lunch break as (start, end)."""
    window = OPERATING_HOURS["lunch_break"]
    return _parse_time(window["start"]), _parse_time(window["end"])


def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        dotenv_path: Optional .env file (tests point this at a temp file)

    Returns:
        Validated Settings

    Raises:
        ValueError: If any variable is malformed
    """
    load_dotenv(dotenv_path=dotenv_path, override=False)

    return Settings(
        business_hours_start=_parse_time(
            os.getenv("BUSINESS_HOURS_START", OPERATING_HOURS["start_time"])
        ),
        business_hours_end=_parse_time(
            os.getenv("BUSINESS_HOURS_END", OPERATING_HOURS["end_time"])
        ),
        slot_duration_minutes=int(
            os.getenv("SLOT_DURATION_MINUTES", str(OPERATING_HOURS["slot_duration_minutes"]))
        ),
        waitlist_notify_hours=int(os.getenv("WAITLIST_NOTIFY_HOURS", str(WAITLIST_NOTIFY_HOURS))),
        default_location=os.getenv("DEFAULT_LOCATION", LOCATION["name"]),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        api_host=os.getenv("API_HOST", API_HOST),
        api_port=int(os.getenv("API_PORT", str(API_PORT))),
    )


def get_service(service_id: str) -> Optional[dict]:
    """Look up a service type by id or by name (case-insensitive)."""
    lowered = service_id.strip().lower()
    return next(
        (s for s in SERVICES if s["id"] == service_id or s["name"].lower() == lowered),
        None
    )
