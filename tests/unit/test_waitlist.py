"""Tests for the waitlist: positions, promotion, confirmation and expiry."""
import threading
from datetime import date, datetime, timedelta

import pytest

from clinic_scheduler.errors import (
    DuplicateActiveEntryError,
    InvalidStateError,
    InvalidTimePreferenceError,
    NotFoundError,
    SlotConflictError,
    WaitlistExpiredError,
)
from clinic_scheduler.schedule_store import bucket_key
from clinic_scheduler.state import AppointmentStatus, SlotStatus, WaitlistStatus

WEEK_END = date(2024, 6, 14)


@pytest.fixture
def enqueue(engine, day):
    def _enqueue(patient, prefs=("late_morning",), provider="dr-a", service="srv-001",
                 date_from=None, date_to=WEEK_END):
        return engine.enqueue_waitlist(
            patient, provider, service, date_from or day, date_to, list(prefs)
        )
    return _enqueue


@pytest.fixture
def full_day(engine, make_range, day):
    """dr-a fully booked 08:00-17:00 in 30-minute slots; returns appointments by start."""
    slots = engine.open_day("dr-a", day)
    booked = {}
    for i, slot in enumerate(slots):
        appointment = engine.book(f"pat-{i:02d}", "dr-a", "srv-001", slot.range)
        booked[slot.range.start.strftime("%H:%M")] = appointment
    return booked


class TestEnqueue:
    """Position assignment and validation."""

    def test_positions_increase_per_queue(self, enqueue):
        assert enqueue("pat-a").position == 1
        assert enqueue("pat-b").position == 2
        assert enqueue("pat-c", service="srv-002").position == 1

    def test_new_entry_is_active(self, enqueue, clock):
        entry = enqueue("pat-a")
        assert entry.status == WaitlistStatus.ACTIVE
        assert entry.added_at == clock.now
        assert entry.notify_deadline is None

    def test_duplicate_open_entry_rejected(self, enqueue):
        enqueue("pat-a")
        with pytest.raises(DuplicateActiveEntryError) as exc_info:
            enqueue("pat-a", prefs=("evening",))
        assert exc_info.value.details["position"] == 1

    def test_same_patient_other_queue_allowed(self, enqueue):
        enqueue("pat-a")
        assert enqueue("pat-a", provider="dr-b").position == 1

    def test_requires_a_preference(self, enqueue):
        with pytest.raises(InvalidTimePreferenceError):
            enqueue("pat-a", prefs=())

    def test_unknown_preference(self, enqueue):
        with pytest.raises(InvalidTimePreferenceError):
            enqueue("pat-a", prefs=("lunchtime-ish",))

    def test_inverted_date_range(self, enqueue, day):
        with pytest.raises(InvalidTimePreferenceError):
            enqueue("pat-a", date_from=WEEK_END, date_to=day)

    def test_date_range_in_the_past(self, enqueue):
        with pytest.raises(InvalidTimePreferenceError):
            enqueue("pat-a", date_from=date(2024, 5, 1), date_to=date(2024, 5, 2))

    def test_display_labels_accepted(self, enqueue):
        from clinic_scheduler.time_windows import TimeWindowLabel

        entry = enqueue("pat-a", prefs=("Early Morning (8:00-10:00 AM)", "Evening"))
        assert entry.time_preferences == [TimeWindowLabel.EARLY_MORNING, TimeWindowLabel.EVENING]

    def test_removed_positions_are_not_reused(self, engine, enqueue):
        enqueue("pat-a")
        second = enqueue("pat-b")
        engine.remove_waitlist_entry(second.id)

        third = enqueue("pat-c")

        assert third.position == 3
        assert [e.position for e in engine.waitlist.list_entries(provider_id="dr-a")] == [1, 3]


class TestSlotFreed:
    """Cancellation on a full day promotes the waitlist."""

    def test_full_day_flow(self, engine, full_day, enqueue, make_range, clock, notifier):
        """Full day, Book fails, enqueue gets position 1, cancelling 10:00 notifies it."""
        with pytest.raises(SlotConflictError) as exc_info:
            engine.book("pat-new", "dr-a", "srv-001", make_range("10:00", "10:30"))
        assert exc_info.value.details["waitlist_offered"] is True

        entry = enqueue("pat-new")
        assert entry.position == 1

        engine.cancel(full_day["10:00"].id)

        notified = engine.waitlist.get_entry(entry.id)
        assert notified.status == WaitlistStatus.NOTIFIED
        assert notified.notify_deadline == clock.now + timedelta(hours=24)
        assert notified.offered_range == make_range("10:00", "10:30")
        assert "Confirm by" in notifier.messages_for("pat-new")[-1]

    def test_freed_slot_is_held_for_notified_entry(self, engine, full_day, enqueue, make_range):
        enqueue("pat-new")
        engine.cancel(full_day["10:00"].id)

        with pytest.raises(SlotConflictError):
            engine.book("pat-walkin", "dr-a", "srv-001", make_range("10:00", "10:30"))

    def test_lowest_position_promoted_first(self, engine, full_day, enqueue):
        first = enqueue("pat-a")
        second = enqueue("pat-b")

        engine.cancel(full_day["10:00"].id)

        assert engine.waitlist.get_entry(first.id).status == WaitlistStatus.NOTIFIED
        assert engine.waitlist.get_entry(second.id).status == WaitlistStatus.ACTIVE

    def test_preferences_must_match(self, engine, full_day, enqueue):
        evening = enqueue("pat-a", prefs=("evening",))
        morning = enqueue("pat-b", prefs=("late_morning",))

        engine.cancel(full_day["10:00"].id)

        assert engine.waitlist.get_entry(evening.id).status == WaitlistStatus.ACTIVE
        assert engine.waitlist.get_entry(morning.id).status == WaitlistStatus.NOTIFIED

    def test_date_range_must_contain_freed_date(self, engine, full_day, enqueue, day):
        later = enqueue("pat-a", date_from=day + timedelta(days=1))
        engine.cancel(full_day["10:00"].id)
        assert engine.waitlist.get_entry(later.id).status == WaitlistStatus.ACTIVE

    def test_any_preference_matches(self, engine, full_day, enqueue):
        entry = enqueue("pat-a", prefs=("any",))
        engine.cancel(full_day["16:30"].id)
        assert engine.waitlist.get_entry(entry.id).status == WaitlistStatus.NOTIFIED

    def test_other_provider_queue_untouched(self, engine, full_day, enqueue):
        other = enqueue("pat-a", provider="dr-b")
        engine.cancel(full_day["10:00"].id)
        assert engine.waitlist.get_entry(other.id).status == WaitlistStatus.ACTIVE

    def test_earliest_added_wins_across_services(self, engine, full_day, enqueue, clock):
        early = enqueue("pat-a", service="srv-002")
        clock.advance(minutes=5)
        late = enqueue("pat-b", service="srv-001")

        engine.cancel(full_day["10:00"].id)

        assert engine.waitlist.get_entry(early.id).status == WaitlistStatus.NOTIFIED
        assert engine.waitlist.get_entry(late.id).status == WaitlistStatus.ACTIVE

    def test_started_slot_not_offered(self, engine, full_day, enqueue, clock, notifier):
        entry = enqueue("pat-a")
        ten = full_day["10:00"]
        for status in ("confirmed", "checked-in"):
            engine.advance_status(ten.id, status)
        clock.now = datetime(2024, 6, 10, 10, 10)

        engine.cancel(ten.id)

        assert engine.waitlist.get_entry(entry.id).status == WaitlistStatus.ACTIVE
        assert notifier.messages_for("pat-a") == []

    def test_no_candidates_leaves_slot_free(self, engine, full_day, make_range):
        engine.cancel(full_day["10:00"].id)
        appointment = engine.book("pat-walkin", "dr-a", "srv-001", make_range("10:00", "10:30"))
        assert appointment.status == AppointmentStatus.SCHEDULED


class TestConfirm:
    """Confirmation inside and after the deadline."""

    def test_confirm_within_deadline_books(self, engine, full_day, enqueue, make_range, clock, day):
        entry = enqueue("pat-new")
        engine.cancel(full_day["10:00"].id)
        clock.advance(hours=23)

        appointment = engine.confirm_waitlist_slot(entry.id)

        assert appointment.patient_id == "pat-new"
        assert appointment.range == make_range("10:00", "10:30")
        scheduled = engine.waitlist.get_entry(entry.id)
        assert scheduled.status == WaitlistStatus.SCHEDULED
        assert scheduled.appointment_id == appointment.id
        ten = [s for s in engine.get_schedule("dr-a", day) if s.range == make_range("10:00", "10:30")]
        assert ten[0].status == SlotStatus.BOOKED
        assert ten[0].held_for is None

    def test_confirm_after_deadline_expires_and_cascades(self, engine, full_day, enqueue, clock):
        first = enqueue("pat-a")
        second = enqueue("pat-b")
        engine.cancel(full_day["10:00"].id)
        clock.advance(hours=24)

        with pytest.raises(WaitlistExpiredError) as exc_info:
            engine.confirm_waitlist_slot(first.id)

        assert exc_info.value.code == "EXPIRED"
        assert engine.waitlist.get_entry(first.id).status == WaitlistStatus.EXPIRED
        promoted = engine.waitlist.get_entry(second.id)
        assert promoted.status == WaitlistStatus.NOTIFIED
        assert promoted.notify_deadline == clock.now + timedelta(hours=24)

    def test_confirm_expired_entry_again(self, engine, full_day, enqueue, clock):
        entry = enqueue("pat-a")
        engine.cancel(full_day["10:00"].id)
        clock.advance(hours=25)
        engine.expire_overdue()

        with pytest.raises(WaitlistExpiredError):
            engine.confirm_waitlist_slot(entry.id)

    def test_confirm_active_entry_rejected(self, engine, enqueue):
        entry = enqueue("pat-a")
        with pytest.raises(InvalidStateError):
            engine.confirm_waitlist_slot(entry.id)

    def test_confirm_unknown_entry(self, engine):
        with pytest.raises(NotFoundError):
            engine.confirm_waitlist_slot("wait-missing")


class TestExpireOverdue:
    """Periodic sweep."""

    def test_nothing_overdue(self, engine, full_day, enqueue):
        enqueue("pat-a")
        engine.cancel(full_day["10:00"].id)
        assert engine.expire_overdue() == (0, 0)

    def test_expire_and_promote(self, engine, full_day, enqueue, clock):
        first = enqueue("pat-a")
        second = enqueue("pat-b")
        engine.cancel(full_day["10:00"].id)

        report = engine.expire_overdue(clock.now + timedelta(hours=24, minutes=1))

        assert report.expired_count == 1
        assert report.promoted_count == 1
        assert engine.waitlist.get_entry(first.id).status == WaitlistStatus.EXPIRED
        assert engine.waitlist.get_entry(second.id).status == WaitlistStatus.NOTIFIED

    def test_expire_without_successor_frees_slot(self, engine, full_day, enqueue, clock, make_range):
        enqueue("pat-a")
        engine.cancel(full_day["10:00"].id)
        clock.advance(hours=25)

        assert engine.expire_overdue() == (1, 0)
        appointment = engine.book("pat-walkin", "dr-a", "srv-001", make_range("10:00", "10:30"))
        assert appointment.status == AppointmentStatus.SCHEDULED

    def test_offer_not_passed_on_once_slot_started(self, engine, full_day, enqueue, clock):
        clock.now = datetime(2024, 6, 10, 8, 0)
        first = enqueue("pat-a", prefs=("any",))
        second = enqueue("pat-b", prefs=("any",))
        engine.cancel(full_day["16:00"].id)

        report = engine.expire_overdue(datetime(2024, 6, 11, 8, 0))

        assert report == (1, 0)
        assert engine.waitlist.get_entry(first.id).status == WaitlistStatus.EXPIRED
        assert engine.waitlist.get_entry(second.id).status == WaitlistStatus.ACTIVE

    def test_expiry_notifies_patient(self, engine, full_day, enqueue, clock, notifier):
        enqueue("pat-a")
        engine.cancel(full_day["10:00"].id)
        clock.advance(hours=25)
        engine.expire_overdue()
        assert "expired" in notifier.messages_for("pat-a")[-1]


class TestRemove:
    """Receptionist removal."""

    def test_remove_active(self, engine, enqueue):
        entry = enqueue("pat-a")
        engine.remove_waitlist_entry(entry.id)
        with pytest.raises(NotFoundError):
            engine.waitlist.get_entry(entry.id)

    def test_remove_notified_cascades(self, engine, full_day, enqueue):
        first = enqueue("pat-a")
        second = enqueue("pat-b")
        engine.cancel(full_day["10:00"].id)

        engine.remove_waitlist_entry(first.id)

        assert engine.waitlist.get_entry(second.id).status == WaitlistStatus.NOTIFIED

    def test_remove_scheduled_rejected(self, engine, full_day, enqueue):
        entry = enqueue("pat-a")
        engine.cancel(full_day["10:00"].id)
        engine.confirm_waitlist_slot(entry.id)

        with pytest.raises(InvalidStateError):
            engine.remove_waitlist_entry(entry.id)

    def test_remove_expired_allowed(self, engine, full_day, enqueue, clock):
        entry = enqueue("pat-a")
        engine.cancel(full_day["10:00"].id)
        clock.advance(hours=25)
        engine.expire_overdue()

        engine.remove_waitlist_entry(entry.id)

        assert engine.waitlist.list_entries(patient_id="pat-a") == []

    def test_patient_can_rejoin_after_removal(self, engine, enqueue):
        entry = enqueue("pat-a")
        engine.remove_waitlist_entry(entry.id)
        assert enqueue("pat-a").position == 2

    def test_remove_while_cancel_promotes_entry(self, engine, full_day, enqueue, monkeypatch):
        """Entry read as ACTIVE, then promoted before remove takes its locks."""
        first = enqueue("pat-a")
        second = enqueue("pat-b")
        waitlist = engine.waitlist
        unlocked_reads = []

        original_require = waitlist._require

        def require_then_cancel(entry_id):
            if unlocked_reads:
                return original_require(entry_id)
            stale = original_require(entry_id).model_copy(deep=True)
            unlocked_reads.append(stale.status)
            engine.cancel(full_day["10:00"].id)
            return stale

        monkeypatch.setattr(waitlist, "_require", require_then_cancel)

        bucket_taken = []
        original_release_hold = engine.store.release_hold

        def release_hold_checking_lock(holder, provider_id, hold_day):
            lock = engine.store.locks._lock_for(bucket_key(provider_id, hold_day))

            def try_bucket():
                got = lock.acquire(blocking=False)
                if got:
                    lock.release()
                bucket_taken.append(not got)

            other = threading.Thread(target=try_bucket)
            other.start()
            other.join(timeout=5)
            return original_release_hold(holder, provider_id, hold_day)

        monkeypatch.setattr(engine.store, "release_hold", release_hold_checking_lock)

        engine.remove_waitlist_entry(first.id)

        assert unlocked_reads == [WaitlistStatus.ACTIVE]
        assert bucket_taken == [True]
        with pytest.raises(NotFoundError):
            engine.waitlist.get_entry(first.id)
        promoted = engine.waitlist.get_entry(second.id)
        assert promoted.status == WaitlistStatus.NOTIFIED
        assert promoted.offered_range == full_day["10:00"].range
