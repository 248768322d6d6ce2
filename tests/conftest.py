"""Shared test fixtures."""
from datetime import date, datetime, timedelta

import pytest

from clinic_scheduler.api.server import create_app
from clinic_scheduler.collaborators import InMemoryAuditLog
from clinic_scheduler.config import Settings
from clinic_scheduler.engine import SchedulingEngine
from clinic_scheduler.time_range import TimeRange

# Monday; the fixed clock sits well before it
DAY = date(2024, 6, 10)
START_OF_TEST = datetime(2024, 6, 1, 9, 0)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Collects notifications instead of sending them."""

    def __init__(self):
        self.sent = []

    def send(self, patient_id: str, message: str) -> None:
        self.sent.append((patient_id, message))

    def messages_for(self, patient_id: str):
        return [m for p, m in self.sent if p == patient_id]


@pytest.fixture
def day() -> date:
    return DAY


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START_OF_TEST)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def engine(settings, clock, notifier, audit) -> SchedulingEngine:
    return SchedulingEngine(settings=settings, clock=clock, notifier=notifier, audit=audit)


@pytest.fixture
def make_range():
    """Build a TimeRange from 'HH:MM' strings (defaults to DAY)."""
    def _make(start: str, end: str, on: date = DAY) -> TimeRange:
        return TimeRange.parse(on.isoformat(), start, end)
    return _make


@pytest.fixture
def app(engine):
    flask_app = create_app(engine)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
