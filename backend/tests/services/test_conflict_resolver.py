from datetime import timedelta

import pytest
import pytz

from lessonbook.schemas.availability import TimeSlot
from lessonbook.schemas.booking import ExistingBooking
from lessonbook.schemas.scheduling_constraints import SchedulingConstraints
from lessonbook.services.conflict_resolver import (
    REASON_BUFFER,
    REASON_DAILY_HOURS,
    REASON_DAILY_LESSONS,
    REASON_OVERLAP,
    REASON_WEEKLY_HOURS,
    REASON_WEEKLY_LESSONS,
    ConflictResolver,
    overlaps,
)
from lessonbook.services.slot_generator import SlotGenerator

from _helpers import DAY, MONDAY, at, booking


@pytest.fixture
def resolver():
    return ConflictResolver(pytz.UTC)


@pytest.fixture
def constraints():
    return SchedulingConstraints(
        earliest_start_time="09:00", latest_end_time="17:00", min_buffer_between_lessons=15
    )


@pytest.fixture
def day_slots(constraints):
    return SlotGenerator(pytz.UTC).generate(DAY, 60, None, constraints)


def _slot(start, minutes=60):
    return TimeSlot(start=start, end=start + timedelta(minutes=minutes), duration_minutes=minutes)


def _unavailable(slots):
    return {slot.start.strftime("%H:%M"): slot.reason for slot in slots if not slot.available}


class TestFilter:
    def test_overlap_respects_buffer_padding(self, resolver, day_slots):
        event = booking("evt", at(DAY, "10:00"))

        result = resolver.filter(day_slots, [event], buffer_minutes=15)

        assert _unavailable(result) == {"09:00": REASON_OVERLAP, "10:15": REASON_OVERLAP}
        assert len(result) == len(day_slots)

    def test_available_slots_never_overlap_confirmed_events(self, resolver, day_slots):
        events = [booking("a", at(DAY, "10:40"), 30), booking("b", at(DAY, "14:05"), 20)]

        result = resolver.filter(day_slots, events, buffer_minutes=15)

        for slot in result:
            if slot.available:
                assert not any(overlaps(slot, e, 15) for e in events)

    def test_only_confirmed_events_block(self, resolver, day_slots):
        events = [
            booking("pending", at(DAY, "09:00"), status="pending"),
            booking("cancelled", at(DAY, "11:30"), status="cancelled"),
        ]
        result = resolver.filter(day_slots, events, buffer_minutes=15)
        assert all(slot.available for slot in result)

    def test_events_with_invalid_range_are_skipped(self, resolver, day_slots):
        broken = ExistingBooking(id="broken", start_time=at(DAY, "10:00"), end_time=at(DAY, "09:00"))
        result = resolver.filter(day_slots, [broken], buffer_minutes=15)
        assert all(slot.available for slot in result)

    def test_slots_are_not_mutated(self, resolver, day_slots):
        resolver.filter(day_slots, [booking("evt", at(DAY, "09:00"))], buffer_minutes=15)
        assert all(slot.available for slot in day_slots)


class TestUsage:
    def test_daily_usage_counts_bookings_starting_that_day(self, resolver):
        bookings = [
            booking("a", at(DAY, "09:00"), 60, "u1"),
            booking("b", at(DAY, "13:00"), 90, "u1"),
            booking("late", at(DAY - timedelta(days=1), "23:30"), 60, "u1"),
            booking("gone", at(DAY, "15:00"), 60, "u1", status="cancelled"),
        ]
        usage = resolver.daily_usage(DAY, bookings)
        assert usage.lessons == 2
        assert usage.hours == pytest.approx(2.5)

    def test_weekly_usage_is_monday_aligned(self, resolver):
        bookings = [
            booking("mon", at(MONDAY, "09:00"), 60, "u1"),
            booking("sun", at(MONDAY + timedelta(days=6), "09:00"), 60, "u1"),
            booking("prev-sun", at(MONDAY - timedelta(days=1), "09:00"), 60, "u1"),
            booking("next-mon", at(MONDAY + timedelta(days=7), "09:00"), 60, "u1"),
        ]
        usage = resolver.weekly_usage(DAY, bookings)
        assert usage.lessons == 2


class TestCaps:
    def test_daily_hours_reason(self, resolver, day_slots, constraints):
        limited = constraints.model_copy(update={"max_hours_per_day": 2})
        mine = [booking("a", at(DAY, "09:00"), 60, "u1"), booking("b", at(DAY, "11:30"), 60, "u1")]

        result = resolver.apply_user_caps(day_slots, DAY, 60, mine, limited)

        assert all(slot.reason == REASON_DAILY_HOURS for slot in result)

    def test_daily_lessons_reason(self, resolver, day_slots, constraints):
        limited = constraints.model_copy(update={"max_lessons_per_day": 1})
        mine = [booking("a", at(DAY, "09:00"), 60, "u1")]

        result = resolver.apply_user_caps(day_slots, DAY, 60, mine, limited)

        assert {slot.reason for slot in result} == {REASON_DAILY_LESSONS}

    def test_weekly_hours_reason(self, resolver, day_slots, constraints):
        limited = constraints.model_copy(update={"max_hours_per_week": 3})
        mine = [
            booking("mon", at(MONDAY, "09:00"), 120, "u1"),
            booking("wed", at(DAY + timedelta(days=1), "09:00"), 60, "u1"),
        ]

        result = resolver.apply_user_caps(day_slots, DAY, 60, mine, limited)

        assert {slot.reason for slot in result} == {REASON_WEEKLY_HOURS}

    def test_weekly_lessons_reason(self, resolver, day_slots, constraints):
        limited = constraints.model_copy(update={"max_lessons_per_week": 2})
        mine = [
            booking("mon", at(MONDAY, "09:00"), 60, "u1"),
            booking("wed", at(DAY + timedelta(days=1), "09:00"), 60, "u1"),
        ]

        result = resolver.apply_user_caps(day_slots, DAY, 60, mine, limited)

        assert {slot.reason for slot in result} == {REASON_WEEKLY_LESSONS}

    def test_daily_cap_reported_before_weekly(self, resolver, day_slots, constraints):
        limited = constraints.model_copy(
            update={"max_hours_per_day": 1, "max_hours_per_week": 1}
        )
        mine = [booking("a", at(DAY, "09:00"), 60, "u1")]

        result = resolver.apply_user_caps(day_slots, DAY, 60, mine, limited)

        assert {slot.reason for slot in result} == {REASON_DAILY_HOURS}

    def test_overlap_reason_is_kept(self, resolver, day_slots, constraints):
        limited = constraints.model_copy(update={"max_lessons_per_day": 1})
        mine = [booking("a", at(DAY, "09:00"), 60, "u1")]

        filtered = resolver.filter(day_slots, mine, 15)
        result = resolver.apply_user_caps(filtered, DAY, 60, mine, limited)

        assert result[0].reason == REASON_OVERLAP
        assert {slot.reason for slot in result[2:]} == {REASON_DAILY_LESSONS}

    def test_limits_flags(self, resolver, constraints):
        limited = constraints.model_copy(update={"max_lessons_per_day": 1})
        limits = resolver.check_user_limits(
            DAY, 60, [booking("a", at(DAY, "09:00"), 60, "u1")], limited
        )
        assert limits.daily_limit_reached
        assert not limits.weekly_limit_reached


class TestBufferAdjacency:
    def test_gap_shorter_than_buffer_conflicts(self):
        slot = _slot(at(DAY, "10:00"))
        assert ConflictResolver.has_buffer_conflict(slot, [booking("a", at(DAY, "11:10"))], 15)
        assert ConflictResolver.has_buffer_conflict(slot, [booking("b", at(DAY, "08:55"))], 15)

    def test_gap_of_exactly_buffer_is_allowed(self):
        slot = _slot(at(DAY, "10:00"))
        assert not ConflictResolver.has_buffer_conflict(slot, [booking("a", at(DAY, "11:15"))], 15)
        assert not ConflictResolver.has_buffer_conflict(slot, [booking("b", at(DAY, "08:45"))], 15)

    def test_touching_or_overlapping_is_not_an_adjacency_conflict(self):
        slot = _slot(at(DAY, "10:00"))
        assert not ConflictResolver.has_buffer_conflict(slot, [booking("a", at(DAY, "11:00"))], 15)
        assert not ConflictResolver.has_buffer_conflict(slot, [booking("b", at(DAY, "10:30"))], 15)

    def test_zero_buffer_disables_check(self):
        slot = _slot(at(DAY, "10:00"))
        assert not ConflictResolver.has_buffer_conflict(slot, [booking("a", at(DAY, "11:05"))], 0)

    def test_caps_pass_marks_adjacent_slot(self, resolver, day_slots, constraints):
        mine = [booking("short", at(DAY, "11:25"), 5, "u1")]

        result = resolver.apply_user_caps(day_slots, DAY, 60, mine, constraints)

        assert _unavailable(result) == {"10:15": REASON_BUFFER}
