"""Authoritative store of provider time slots.

Slots live in (provider_id, date) buckets. Every mutation of a bucket runs
under that bucket's lock, so two overlapping bookings can never both commit.

Pattern: in-memory dict of buckets plus an id -> bucket index. Callers get
copies; only the store mutates its own slots.
"""
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from clinic_scheduler.collaborators import AuditLog, InMemoryAuditLog
from clinic_scheduler.config import Settings
from clinic_scheduler.errors import (
    ImmutableBookedSlotError,
    InvalidStateError,
    NotFoundError,
    OverlapError,
    SlotConflictError,
    SlotInUseError,
)
from clinic_scheduler.locks import KeyedLocks
from clinic_scheduler.logging_config import get_logger
from clinic_scheduler.models import SlotPatch, TimeSlot, new_slot_id
from clinic_scheduler.state import SlotStatus
from clinic_scheduler.time_range import TimeRange
from clinic_scheduler.time_windows import TimeFilter, TimeWindowLabel

logger = get_logger(__name__)

BucketKey = Tuple[str, date]

SYSTEM_ACTOR = "system"


def bucket_key(provider_id: str, day: date) -> BucketKey:
    return (provider_id, day)


def validate_batch(slots: Sequence[TimeSlot]) -> None:
    """
    Check a proposed day's slot list for internal overlaps.

    Slots are sorted by start time and each adjacent pair is compared; with a
    start-sorted list any overlap shows up between neighbours.

    Raises:
        OverlapError: Naming the first overlapping pair
    """
    by_date: Dict[date, List[TimeSlot]] = defaultdict(list)
    for slot in slots:
        by_date[slot.range.date].append(slot)

    for day in sorted(by_date):
        ordered = sorted(by_date[day], key=lambda s: (s.range.start, s.range.end))
        for current, following in zip(ordered, ordered[1:]):
            if current.range.end > following.range.start:
                raise OverlapError(
                    f"Conflict in schedule, please resolve. Overlapping time slots on "
                    f"{day.isoformat()}: {current.range.start.strftime('%H:%M')}-"
                    f"{current.range.end.strftime('%H:%M')} and "
                    f"{following.range.start.strftime('%H:%M')}-"
                    f"{following.range.end.strftime('%H:%M')}",
                    first=current.range,
                    second=following.range,
                )


def check_batch_date(day: date, slots: Sequence[TimeSlot]) -> None:
    """Raise ValueError if any slot of a day batch lies on another date."""
    for slot in slots:
        if slot.range.date != day:
            raise ValueError(
                f"Slot {slot.range} does not belong to schedule date {day.isoformat()}"
            )


class ScheduleStore:
    """In-memory slot store with per-bucket locking."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        locks: Optional[KeyedLocks] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings or Settings()
        self.locks = locks or KeyedLocks()
        self._audit = audit or InMemoryAuditLog()
        self._clock = clock
        self._buckets: Dict[BucketKey, Dict[str, TimeSlot]] = defaultdict(dict)
        self._index: Dict[str, BucketKey] = {}
        self._filter = TimeFilter()

    def locked(self, *keys: BucketKey):
        """Hold the given buckets' locks (sorted order)."""
        return self.locks.hold(*keys)

    # ===== QUERIES =====

    def get_slots(self, provider_id: str, day: date) -> List[TimeSlot]:
        """Return copies of the bucket's slots ordered by start time."""
        key = bucket_key(provider_id, day)
        with self.locked(key):
            return [s.model_copy(deep=True) for s in self._ordered(key)]

    def get_slot(self, slot_id: str) -> TimeSlot:
        key = self._index.get(slot_id)
        if key is None:
            raise NotFoundError(f"Slot '{slot_id}' not found")
        with self.locked(key):
            slot = self._buckets[key].get(slot_id)
            if slot is None:
                raise NotFoundError(f"Slot '{slot_id}' not found")
            return slot.model_copy(deep=True)

    def overlapping(self, provider_id: str, time_range: TimeRange) -> List[TimeSlot]:
        """Slots in the range's bucket that overlap it (live objects, hold the lock)."""
        key = bucket_key(provider_id, time_range.date)
        with self.locked(key):
            return [s for s in self._ordered(key) if s.range.overlaps(time_range)]

    def available_slots(
        self,
        provider_id: str,
        day: date,
        labels: Optional[Sequence[TimeWindowLabel]] = None
    ) -> List[TimeSlot]:
        """Available, un-held slots, optionally narrowed to time windows."""
        now = self._clock()
        free = [
            s for s in self.get_slots(provider_id, day)
            if s.status == SlotStatus.AVAILABLE and not s.is_held(now)
        ]
        return self._filter.filter_by_windows(free, labels or [])

    def is_fully_booked(
        self,
        provider_id: str,
        day: date,
        labels: Optional[Sequence[TimeWindowLabel]] = None
    ) -> bool:
        return not self.available_slots(provider_id, day, labels)

    # ===== SLOT EDITING =====

    def add_slot(self, slot: TimeSlot, actor_id: str = SYSTEM_ACTOR) -> TimeSlot:
        """
        Add one slot to its bucket.

        Raises:
            ImmutableBookedSlotError: If the slot claims to be booked
            OverlapError: If it overlaps any existing slot, whatever its status
        """
        if slot.status == SlotStatus.BOOKED:
            raise ImmutableBookedSlotError(
                "Slots become booked only by booking an appointment"
            )

        key = bucket_key(slot.provider_id, slot.range.date)
        with self.locked(key):
            clash = self._first_overlap(key, slot.range)
            if clash is not None:
                raise OverlapError(
                    f"Slot {slot.range} overlaps existing slot {clash.range}",
                    first=clash.range,
                    second=slot.range,
                )
            stored = slot.model_copy(deep=True)
            self._put(key, stored)

        self._audit.record("slot.add", actor_id, stored.id)
        logger.info("slot_added", slot_id=stored.id, provider_id=stored.provider_id,
                    range=str(stored.range), status=stored.status.value)
        return stored.model_copy(deep=True)

    def update_slot(self, slot_id: str, patch: SlotPatch, actor_id: str = SYSTEM_ACTOR) -> TimeSlot:
        """
        Apply a patch and re-validate overlap against every other slot.

        Raises:
            NotFoundError: Unknown slot
            ImmutableBookedSlotError: Range or status edit on a booked slot
            OverlapError: Patched range collides with another slot
        """
        current = self.get_slot(slot_id)
        new_range = patch.apply_to(current.range) if patch.changes_range() else current.range
        old_key = bucket_key(current.provider_id, current.range.date)
        new_key = bucket_key(current.provider_id, new_range.date)

        with self.locked(old_key, new_key):
            slot = self._buckets[old_key].get(slot_id)
            if slot is None:
                raise NotFoundError(f"Slot '{slot_id}' not found")

            if slot.status == SlotStatus.BOOKED:
                if new_range != slot.range:
                    raise ImmutableBookedSlotError(
                        f"Slot {slot.range} is booked; cancel and rebook to change its time"
                    )
                if patch.status is not None and patch.status != SlotStatus.BOOKED:
                    raise ImmutableBookedSlotError(
                        f"Slot {slot.range} is booked; cancel the appointment to free it"
                    )
            elif patch.status == SlotStatus.BOOKED:
                raise InvalidStateError("Slots become booked only by booking an appointment")

            clash = self._first_overlap(new_key, new_range, exclude_id=slot_id)
            if clash is not None:
                raise OverlapError(
                    f"Slot {new_range} overlaps existing slot {clash.range}",
                    first=clash.range,
                    second=new_range,
                )

            updated = slot.model_copy(deep=True)
            updated.range = new_range
            if patch.status is not None:
                updated.status = patch.status
            if patch.notes is not None:
                updated.notes = patch.notes
            if updated.status != SlotStatus.AVAILABLE or new_range != slot.range:
                updated.held_for = None
                updated.held_until = None

            del self._buckets[old_key][slot_id]
            self._put(new_key, updated)

        self._audit.record("slot.update", actor_id, slot_id)
        logger.info("slot_updated", slot_id=slot_id, range=str(new_range),
                    status=updated.status.value)
        return updated.model_copy(deep=True)

    def remove_slot(self, slot_id: str, actor_id: str = SYSTEM_ACTOR) -> None:
        """
        Remove a slot.

        Raises:
            NotFoundError: Unknown slot
            SlotInUseError: Slot is booked
        """
        current = self.get_slot(slot_id)
        key = bucket_key(current.provider_id, current.range.date)
        with self.locked(key):
            slot = self._buckets[key].get(slot_id)
            if slot is None:
                raise NotFoundError(f"Slot '{slot_id}' not found")
            if slot.status == SlotStatus.BOOKED:
                raise SlotInUseError(
                    f"Slot {slot.range} is booked by appointment {slot.appointment_id}"
                )
            del self._buckets[key][slot_id]
            self._index.pop(slot_id, None)

        self._audit.record("slot.remove", actor_id, slot_id)
        logger.info("slot_removed", slot_id=slot_id, range=str(current.range))

    def validate_batch(self, slots: Sequence[TimeSlot], day: Optional[date] = None) -> None:
        if day is not None:
            check_batch_date(day, slots)
        validate_batch(slots)

    def commit_batch(
        self,
        provider_id: str,
        day: date,
        slots: Sequence[TimeSlot],
        actor_id: str = SYSTEM_ACTOR
    ) -> List[TimeSlot]:
        """
        Replace a whole day's schedule, all-or-nothing.

        Booked slots must come back unchanged (same id and range); everything
        else is replaced by the batch. Committing the current state is a no-op.

        Raises:
            OverlapError: Batch overlaps internally (nothing is committed)
            ImmutableBookedSlotError: Batch drops, moves, or invents a booked slot
        """
        check_batch_date(day, slots)
        proposed = []
        for slot in slots:
            candidate = slot.model_copy(deep=True)
            candidate.provider_id = provider_id
            proposed.append(candidate)

        validate_batch(proposed)

        key = bucket_key(provider_id, day)
        with self.locked(key):
            existing = self._buckets[key]
            by_id = {s.id: s for s in proposed}

            for slot in existing.values():
                if slot.status != SlotStatus.BOOKED:
                    continue
                kept = by_id.get(slot.id)
                if kept is None or kept.range != slot.range or kept.status != SlotStatus.BOOKED:
                    raise ImmutableBookedSlotError(
                        f"Booked slot {slot.range} must stay unchanged in the schedule"
                    )

            for slot in proposed:
                previous = existing.get(slot.id)
                if slot.status == SlotStatus.BOOKED:
                    if previous is None or previous.status != SlotStatus.BOOKED:
                        raise ImmutableBookedSlotError(
                            "Slots become booked only by booking an appointment"
                        )
                    slot.appointment_id = previous.appointment_id
                elif previous is not None and previous.range == slot.range:
                    slot.held_for = previous.held_for
                    slot.held_until = previous.held_until
                else:
                    slot.held_for = None
                    slot.held_until = None

            if self._same_state(existing, proposed):
                logger.info("schedule_batch_unchanged", provider_id=provider_id, date=day.isoformat())
                return [s.model_copy(deep=True) for s in self._ordered(key)]

            for slot_id in list(existing):
                self._index.pop(slot_id, None)
            self._buckets[key] = {}
            for slot in proposed:
                self._put(key, slot)
            committed = [s.model_copy(deep=True) for s in self._ordered(key)]

        self._audit.record("schedule.batch_commit", actor_id, f"{provider_id}:{day.isoformat()}")
        logger.info("schedule_batch_committed", provider_id=provider_id,
                    date=day.isoformat(), slot_count=len(committed))
        return committed

    def open_day(
        self,
        provider_id: str,
        day: date,
        slot_minutes: Optional[int] = None,
        lunch_break: Optional[Tuple[time, time]] = None,
        actor_id: str = SYSTEM_ACTOR
    ) -> List[TimeSlot]:
        """
        Generate available slots across business hours.

        Args:
            provider_id: Provider whose day is opened
            day: Calendar date
            slot_minutes: Slot length (defaults to settings.slot_duration_minutes)
            lunch_break: Optional (start, end) skipped while generating

        Returns:
            The created slots, ordered by start

        Raises:
            OverlapError: If any generated slot overlaps an existing one
        """
        step = timedelta(minutes=slot_minutes or self.settings.slot_duration_minutes)
        current = datetime.combine(day, self.settings.business_hours_start)
        closing = datetime.combine(day, self.settings.business_hours_end)

        generated: List[TimeSlot] = []
        while current + step <= closing:
            if lunch_break and lunch_break[0] <= current.time() < lunch_break[1]:
                current += step
                continue
            generated.append(TimeSlot(
                provider_id=provider_id,
                range=TimeRange(date=day, start=current.time(), end=(current + step).time()),
            ))
            current += step

        key = bucket_key(provider_id, day)
        with self.locked(key):
            for slot in generated:
                clash = self._first_overlap(key, slot.range)
                if clash is not None:
                    raise OverlapError(
                        f"Slot {slot.range} overlaps existing slot {clash.range}",
                        first=clash.range,
                        second=slot.range,
                    )
            for slot in generated:
                self._put(key, slot)

        self._audit.record("schedule.open_day", actor_id, f"{provider_id}:{day.isoformat()}")
        logger.info("schedule_day_opened", provider_id=provider_id,
                    date=day.isoformat(), slot_count=len(generated))
        return [s.model_copy(deep=True) for s in generated]

    # ===== BOOKING PLUMBING (callers hold the bucket lock) =====

    def bind(
        self,
        appointment_id: str,
        provider_id: str,
        time_range: TimeRange,
        hold_token: Optional[str] = None
    ) -> TimeSlot:
        """
        Mark the range booked for an appointment.

        Available slots overlapping the range are carved: the booked part
        becomes its own slot and any remainder stays available. If no slot
        covers the range, a booked slot is created.

        Raises:
            SlotConflictError: A booked, blocked, or foreign-held slot overlaps
        """
        key = bucket_key(provider_id, time_range.date)
        now = self._clock()
        with self.locked(key):
            touched = self.overlapping(provider_id, time_range)
            for slot in touched:
                if slot.status != SlotStatus.AVAILABLE or (
                    slot.is_held(now) and slot.held_for != hold_token
                ):
                    raise SlotConflictError(
                        f"Requested time {time_range} conflicts with {slot.range}",
                        conflicting_range=slot.range,
                    )

            booked_id = None
            for slot in touched:
                del self._buckets[key][slot.id]
                self._index.pop(slot.id, None)
                if slot.range == time_range:
                    booked_id = slot.id
                    continue
                if slot.range.start < time_range.start:
                    self._put(key, self._remainder(slot, slot.range.start, time_range.start))
                if time_range.end < slot.range.end:
                    self._put(key, self._remainder(slot, time_range.end, slot.range.end))

            booked = TimeSlot(
                id=booked_id or new_slot_id(),
                provider_id=provider_id,
                range=time_range,
                status=SlotStatus.BOOKED,
                appointment_id=appointment_id,
            )
            self._put(key, booked)
            return booked.model_copy(deep=True)

    def release(self, appointment_id: str, provider_id: str, day: date) -> TimeSlot:
        """Flip the appointment's booked slot back to available."""
        key = bucket_key(provider_id, day)
        with self.locked(key):
            for slot in self._buckets[key].values():
                if slot.status == SlotStatus.BOOKED and slot.appointment_id == appointment_id:
                    slot.status = SlotStatus.AVAILABLE
                    slot.appointment_id = None
                    return slot.model_copy(deep=True)
        raise NotFoundError(f"No booked slot for appointment '{appointment_id}'")

    def place_hold(self, provider_id: str, time_range: TimeRange, holder: str, until: datetime) -> bool:
        """Reserve the available slot covering the range; False if there is none."""
        key = bucket_key(provider_id, time_range.date)
        now = self._clock()
        with self.locked(key):
            for slot in self._ordered(key):
                if (
                    slot.status == SlotStatus.AVAILABLE
                    and slot.range.contains(time_range)
                    and (not slot.is_held(now) or slot.held_for == holder)
                ):
                    slot.held_for = holder
                    slot.held_until = until
                    return True
        return False

    def release_hold(self, holder: str, provider_id: str, day: date) -> None:
        key = bucket_key(provider_id, day)
        with self.locked(key):
            for slot in self._buckets[key].values():
                if slot.held_for == holder:
                    slot.held_for = None
                    slot.held_until = None

    def snapshot(self, key: BucketKey) -> Dict[str, TimeSlot]:
        with self.locked(key):
            return {sid: s.model_copy(deep=True) for sid, s in self._buckets[key].items()}

    def restore(self, key: BucketKey, saved: Dict[str, TimeSlot]) -> None:
        with self.locked(key):
            for slot_id in list(self._buckets[key]):
                self._index.pop(slot_id, None)
            self._buckets[key] = {}
            for slot in saved.values():
                self._put(key, slot.model_copy(deep=True))

    # ===== INTERNALS =====

    def _ordered(self, key: BucketKey) -> List[TimeSlot]:
        return sorted(self._buckets[key].values(), key=lambda s: (s.range.start, s.range.end))

    def _first_overlap(
        self,
        key: BucketKey,
        time_range: TimeRange,
        exclude_id: Optional[str] = None
    ) -> Optional[TimeSlot]:
        for slot in self._ordered(key):
            if slot.id != exclude_id and slot.range.overlaps(time_range):
                return slot
        return None

    def _put(self, key: BucketKey, slot: TimeSlot) -> None:
        self._buckets[key][slot.id] = slot
        self._index[slot.id] = key

    @staticmethod
    def _remainder(slot: TimeSlot, start: time, end: time) -> TimeSlot:
        return TimeSlot(
            provider_id=slot.provider_id,
            range=TimeRange(date=slot.range.date, start=start, end=end),
            notes=slot.notes,
        )

    @staticmethod
    def _same_state(existing: Dict[str, TimeSlot], proposed: Sequence[TimeSlot]) -> bool:
        if len(existing) != len(proposed):
            return False
        for slot in proposed:
            current = existing.get(slot.id)
            if current is None or current.model_dump() != slot.model_dump():
                return False
        return True
