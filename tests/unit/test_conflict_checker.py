"""Tests for SlotConflictChecker."""
from datetime import date, datetime, time

import pytest

from clinic_scheduler.errors import OutsideBusinessHoursError, PastDateError, SlotConflictError
from clinic_scheduler.models import TimeSlot
from clinic_scheduler.state import SlotStatus


@pytest.fixture
def checker(engine):
    return engine.checker


class TestCheckAvailable:
    """Occupancy scan."""

    def test_empty_day_is_free(self, checker, make_range):
        result = checker.check_available("dr-a", make_range("09:00", "09:30"))
        assert result.ok is True
        assert result.conflict is None

    def test_booked_range_conflicts(self, engine, checker, make_range):
        engine.book("pat-1", "dr-a", "srv-001", make_range("09:00", "09:30"))

        result = checker.check_available("dr-a", make_range("09:15", "09:45"))

        assert result.ok is False
        assert result.conflict == make_range("09:00", "09:30")

    def test_adjacent_is_not_a_conflict(self, engine, checker, make_range):
        engine.book("pat-1", "dr-a", "srv-001", make_range("09:00", "09:30"))
        assert checker.check_available("dr-a", make_range("09:30", "10:00")).ok
        assert checker.check_available("dr-a", make_range("08:30", "09:00")).ok

    def test_exclude_own_appointment(self, engine, checker, make_range):
        appointment = engine.book("pat-1", "dr-a", "srv-001", make_range("09:00", "09:30"))

        result = checker.check_available(
            "dr-a", make_range("09:15", "09:45"), exclude_appointment_id=appointment.id
        )

        assert result.ok is True

    def test_blocked_slot_conflicts(self, engine, checker, make_range):
        engine.add_slot(TimeSlot(
            provider_id="dr-a", range=make_range("12:00", "13:00"), status=SlotStatus.BLOCKED
        ))
        result = checker.check_available("dr-a", make_range("12:30", "13:30"))
        assert result.ok is False
        assert result.conflict.start == time(12, 0)

    def test_available_slot_is_free(self, engine, checker, make_range):
        engine.open_day("dr-a", make_range("09:00", "09:30").date)
        assert checker.check_available("dr-a", make_range("09:00", "09:30")).ok

    def test_other_provider_not_considered(self, engine, checker, make_range):
        engine.book("pat-1", "dr-a", "srv-001", make_range("09:00", "09:30"))
        assert checker.check_available("dr-b", make_range("09:00", "09:30")).ok

    def test_held_slot_conflicts_except_for_holder(self, engine, checker, make_range, clock):
        engine.open_day("dr-a", make_range("09:00", "09:30").date)
        until = datetime(2024, 6, 5, 9, 0)
        assert engine.store.place_hold("dr-a", make_range("09:00", "09:30"), "wait-1", until)

        assert not checker.check_available("dr-a", make_range("09:00", "09:30")).ok
        assert checker.check_available("dr-a", make_range("09:00", "09:30"), hold_token="wait-1").ok

        clock.now = until
        assert checker.check_available("dr-a", make_range("09:00", "09:30")).ok

    def test_ensure_available_raises_with_range(self, engine, checker, make_range):
        engine.book("pat-1", "dr-a", "srv-001", make_range("09:00", "09:30"))
        with pytest.raises(SlotConflictError) as exc_info:
            checker.ensure_available("dr-a", make_range("09:15", "09:45"))
        assert "09:00-09:30" in exc_info.value.message
        assert exc_info.value.to_dict()["conflicting_range"]["start_time"] == "09:00"


class TestValidateRequest:
    """Request-shape checks."""

    def test_past_start_rejected(self, checker, make_range):
        with pytest.raises(PastDateError):
            checker.validate_request(make_range("09:00", "09:30", on=date(2024, 5, 31)))

    def test_earlier_today_rejected(self, checker, make_range):
        with pytest.raises(PastDateError):
            checker.validate_request(make_range("08:00", "08:30", on=date(2024, 6, 1)))

    def test_later_today_allowed(self, checker, make_range):
        checker.validate_request(make_range("10:00", "10:30", on=date(2024, 6, 1)))

    @pytest.mark.parametrize("start,end", [("07:30", "08:30"), ("16:30", "17:30"), ("18:00", "18:30")])
    def test_outside_business_hours(self, checker, make_range, start, end):
        with pytest.raises(OutsideBusinessHoursError):
            checker.validate_request(make_range(start, end))

    def test_edges_of_business_hours_allowed(self, checker, make_range):
        checker.validate_request(make_range("08:00", "08:30"))
        checker.validate_request(make_range("16:30", "17:00"))
