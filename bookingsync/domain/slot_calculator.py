"""
Core business logic for calculating bookable time slots.

This is the heart of the application - pure domain logic without any
external dependencies (no API calls, no database, no I/O, no clock).
"""

from typing import Iterable, List

from pendulum import Date, DateTime

from .models import AvailabilitySlot, TimeRange, WorkingHoursPolicy


def merge_busy(intervals: Iterable[TimeRange]) -> List[TimeRange]:
    """
    Merge overlapping or adjacent time ranges.

    Example: [09:00-10:00, 10:00-11:00, 09:30-09:45] -> [09:00-11:00]
    """
    sorted_ranges = sorted(intervals, key=lambda r: (r.start, r.end))
    if not sorted_ranges:
        return []

    merged: List[TimeRange] = [sorted_ranges[0]]

    for current in sorted_ranges[1:]:
        last = merged[-1]

        # Overlapping or touching (no gap)
        if current.start <= last.end:
            if current.end > last.end:
                merged[-1] = TimeRange(start=last.start, end=current.end)
        else:
            merged.append(current)

    return merged


def is_free(candidate: TimeRange, merged_busy: List[TimeRange]) -> bool:
    """
    True if ``candidate`` overlaps none of ``merged_busy``.

    ``merged_busy`` must be sorted and non-overlapping (see ``merge_busy``),
    which lets the scan stop at the first busy range starting at or after
    the candidate's end.
    """
    for busy in merged_busy:
        if busy.start >= candidate.end:
            break
        if candidate.overlaps(busy):
            return False
    return True


class SlotCalculator:
    """
    Calculates bookable slots of a fixed duration for one host and day.

    Algorithm:
    1. Normalize busy intervals (sort, merge overlapping/adjacent)
    2. Get the policy's working windows for the day
    3. Step candidate starts through each window at the policy granularity,
       dropping starts before the lead-time cutoff and ends past closing
    4. Mark each candidate available iff it overlaps no busy interval
    """

    def compute_slots(
        self,
        policy: WorkingHoursPolicy,
        duration_minutes: int,
        busy_intervals: Iterable[TimeRange],
        day: Date,
        now: DateTime,
    ) -> List[AvailabilitySlot]:
        """
        Generate the ordered slot sequence for ``day``.

        Args:
            policy: Working hours, granularity and lead time of the host
            duration_minutes: Length of each candidate slot
            busy_intervals: Internal bookings and external busy blocks, in any order
            day: Calendar day, interpreted in the policy's timezone
            now: Reference instant for the lead-time cutoff

        Returns:
            Slots ordered by start. Empty if the day is closed or the duration
            does not fit in any window.
        """
        if duration_minutes <= 0 or policy.granularity_minutes <= 0:
            return []

        merged = merge_busy(busy_intervals)
        earliest_start = now.add(minutes=policy.lead_time_minutes)

        slots: List[AvailabilitySlot] = []
        seen_starts = set()

        for window in policy.windows_for_day(day):
            current = window.start

            while True:
                slot_end = current.add(minutes=duration_minutes)
                if slot_end > window.end:
                    break

                if current >= earliest_start and current not in seen_starts:
                    seen_starts.add(current)
                    candidate = TimeRange(start=current, end=slot_end)
                    slots.append(
                        AvailabilitySlot(
                            start=current,
                            end=slot_end,
                            available=is_free(candidate, merged),
                        )
                    )

                current = current.add(minutes=policy.granularity_minutes)

        return sorted(slots, key=lambda s: s.start)

    def check_range(
        self,
        candidate: TimeRange,
        busy_intervals: Iterable[TimeRange],
    ) -> bool:
        """
        Report whether a single explicit range is free.

        Uses the same normalization and predicate as ``compute_slots`` so the
        two entry points never disagree.
        """
        return is_free(candidate, merge_busy(busy_intervals))
