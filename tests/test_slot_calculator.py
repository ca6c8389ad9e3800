"""
Tests for slot calculator.
"""

from datetime import time

import pendulum

from bookingsync.domain.models import TimeRange, WeeklyWindow, WorkingHoursPolicy
from bookingsync.domain.slot_calculator import SlotCalculator, is_free, merge_busy

MONDAY = pendulum.date(2024, 11, 25)
SUNDAY_NOON = pendulum.parse("2024-11-24 12:00", tz="UTC")


def _busy(start, end, tz="UTC"):
    return TimeRange(start=pendulum.parse(start, tz=tz), end=pendulum.parse(end, tz=tz))


def _policy(granularity=30, lead=60, tz="UTC", windows=None):
    if windows is None:
        windows = tuple(WeeklyWindow(weekday=d, open_time=time(9, 0), close_time=time(17, 0)) for d in range(5))
    return WorkingHoursPolicy(
        windows=windows,
        granularity_minutes=granularity,
        lead_time_minutes=lead,
        timezone=tz,
    )


class TestMergeBusy:
    """Tests for busy interval normalization."""

    def test_merges_overlapping_and_adjacent(self):
        """Test that overlapping and touching ranges collapse into one."""
        merged = merge_busy([
            _busy("2024-11-25 10:00", "2024-11-25 11:00"),
            _busy("2024-11-25 09:00", "2024-11-25 10:00"),
            _busy("2024-11-25 09:30", "2024-11-25 09:45"),
        ])

        assert merged == [_busy("2024-11-25 09:00", "2024-11-25 11:00")]

    def test_keeps_gaps(self):
        merged = merge_busy([
            _busy("2024-11-25 14:00", "2024-11-25 15:00"),
            _busy("2024-11-25 10:00", "2024-11-25 10:30"),
        ])

        assert [r.start.hour for r in merged] == [10, 14]

    def test_empty(self):
        assert merge_busy([]) == []


class TestIsFree:
    """Tests for the availability predicate."""

    def test_touching_busy_block_does_not_block(self):
        merged = merge_busy([_busy("2024-11-25 10:00", "2024-11-25 10:30")])

        assert is_free(_busy("2024-11-25 10:30", "2024-11-25 11:00"), merged)
        assert is_free(_busy("2024-11-25 09:30", "2024-11-25 10:00"), merged)
        assert not is_free(_busy("2024-11-25 10:15", "2024-11-25 10:45"), merged)


class TestSlotCalculator:
    """Tests for SlotCalculator."""

    def test_scenario_internal_and_external_busy(self):
        """Test the 09:00-17:00 day with a booking at 10:00 and a busy block 14:00-15:00."""
        calculator = SlotCalculator()
        busy = [
            _busy("2024-11-25 10:00", "2024-11-25 10:30"),
            _busy("2024-11-25 14:00", "2024-11-25 15:00"),
        ]

        slots = calculator.compute_slots(_policy(), 30, busy, MONDAY, SUNDAY_NOON)

        assert len(slots) == 16
        assert slots[0].start.format("HH:mm") == "09:00"
        assert slots[-1].end.format("HH:mm") == "17:00"

        unavailable = [s.start.format("HH:mm") for s in slots if not s.available]
        assert unavailable == ["10:00", "14:00", "14:30"]

    def test_slots_ordered_and_on_granularity(self):
        """Test that starts step by the granularity from opening time."""
        slots = SlotCalculator().compute_slots(_policy(granularity=15), 60, [], MONDAY, SUNDAY_NOON)

        starts = [s.start for s in slots]
        assert starts == sorted(starts)
        assert all(s.start.minute % 15 == 0 for s in slots)
        # 09:00 ... 16:00 in 15 minute steps
        assert len(slots) == 29

    def test_slot_never_overruns_closing_time(self):
        """Test that a duration longer than the remaining window is not offered."""
        slots = SlotCalculator().compute_slots(_policy(), 90, [], MONDAY, SUNDAY_NOON)

        assert slots[-1].start.format("HH:mm") == "15:30"
        assert all(s.end <= pendulum.parse("2024-11-25 17:00", tz="UTC") for s in slots)

    def test_duration_longer_than_window(self):
        """Test that no slot is produced if the duration exceeds the working day."""
        slots = SlotCalculator().compute_slots(_policy(), 600, [], MONDAY, SUNDAY_NOON)

        assert slots == []

    def test_closed_day(self):
        """Test that a weekend day yields no slots."""
        saturday = pendulum.date(2024, 11, 30)

        assert SlotCalculator().compute_slots(_policy(), 30, [], saturday, SUNDAY_NOON) == []

    def test_lead_time_excludes_early_starts(self):
        """Test that starts before now + lead time are dropped."""
        now = pendulum.parse("2024-11-25 10:10", tz="UTC")

        slots = SlotCalculator().compute_slots(_policy(lead=60), 30, [], MONDAY, now)

        assert slots[0].start.format("HH:mm") == "11:30"

    def test_split_windows(self):
        """Test a day with a lunch break."""
        policy = _policy(windows=(
            WeeklyWindow(weekday=0, open_time=time(9, 0), close_time=time(12, 0)),
            WeeklyWindow(weekday=0, open_time=time(13, 0), close_time=time(15, 0)),
        ))

        slots = SlotCalculator().compute_slots(policy, 60, [], MONDAY, SUNDAY_NOON)

        assert [s.start.format("HH:mm") for s in slots] == [
            "09:00", "09:30", "10:00", "10:30", "11:00", "13:00", "13:30", "14:00",
        ]

    def test_host_timezone(self):
        """Test that windows are wall-clock times in the host's timezone."""
        slots = SlotCalculator().compute_slots(_policy(tz="Europe/Berlin"), 30, [], MONDAY, SUNDAY_NOON)

        assert slots[0].start == pendulum.parse("2024-11-25 09:00", tz="Europe/Berlin")
        assert slots[0].start.in_timezone("UTC").hour == 8

    def test_non_positive_duration(self):
        assert SlotCalculator().compute_slots(_policy(), 0, [], MONDAY, SUNDAY_NOON) == []

    def test_slots_agree_with_check_range(self):
        """Test that every computed slot gets the same answer from check_range."""
        calculator = SlotCalculator()
        busy = [
            _busy("2024-11-25 09:45", "2024-11-25 10:15"),
            _busy("2024-11-25 12:00", "2024-11-25 13:20"),
            _busy("2024-11-25 16:30", "2024-11-25 18:00"),
        ]

        for duration in (15, 30, 45, 60, 120):
            for slot in calculator.compute_slots(_policy(granularity=15), duration, busy, MONDAY, SUNDAY_NOON):
                candidate = TimeRange(start=slot.start, end=slot.end)
                assert calculator.check_range(candidate, busy) == slot.available
