"""
Calendar / slot grid builder.

Turns the working-hours policy into the finite weekly grid every session is
placed into. Periods are laid back to back with `break_duration` minutes in
between; a period that would run into lunch restarts when lunch ends.
"""
import logging
import math
from datetime import time
from typing import Dict, List, Optional, Tuple

from domain import TimeSlot, Weekday, minutes
from errors import ConfigError
from models import WorkingHours

logger = logging.getLogger(__name__)

Block = Tuple[TimeSlot, ...]


def _to_time(total_minutes: int) -> time:
    return time(total_minutes // 60, total_minutes % 60)


class SlotGrid:
    """Immutable weekly grid: ordered slots per working day plus contiguity."""

    def __init__(self, working_hours: WorkingHours, slots_by_day: Dict[Weekday, List[TimeSlot]]):
        self.working_hours = working_hours
        self.days: List[Weekday] = list(slots_by_day.keys())
        self._slots_by_day = {day: tuple(slots) for day, slots in slots_by_day.items()}
        self._blocks: Dict[int, List[Block]] = {}
        self.period_duration = working_hours.period_duration
        self.lab_span = self.span_for(working_hours.lab_period_duration)
        if working_hours.lunch_break_start is not None:
            self.afternoon_start = working_hours.lunch_break_start
        else:
            self.afternoon_start = time(12, 0)

    @property
    def slots(self) -> List[TimeSlot]:
        return [slot for day in self.days for slot in self._slots_by_day[day]]

    def slots_for(self, day: Weekday) -> Tuple[TimeSlot, ...]:
        return self._slots_by_day.get(day, ())

    def __len__(self):
        return sum(len(s) for s in self._slots_by_day.values())

    def span_for(self, duration: int) -> int:
        """Number of contiguous periods a session of `duration` minutes covers."""
        return max(1, math.ceil(duration / self.period_duration))

    def is_contiguous(self, first: TimeSlot, second: TimeSlot) -> bool:
        """True if `second` directly follows `first` with no lunch in between."""
        if first.day != second.day or second.index != first.index + 1:
            return False
        gap = minutes(second.start) - minutes(first.end)
        return gap <= self.working_hours.break_duration

    def is_first(self, slot: TimeSlot) -> bool:
        return slot.index == 0

    def is_last(self, slot: TimeSlot) -> bool:
        day_slots = self._slots_by_day.get(slot.day, ())
        return bool(day_slots) and slot.index == day_slots[-1].index

    def blocks(self, span: int) -> List[Block]:
        """Every run of `span` contiguous slots, in day/period order."""
        if span not in self._blocks:
            result: List[Block] = []
            for day in self.days:
                day_slots = self._slots_by_day[day]
                for i in range(len(day_slots) - span + 1):
                    run = day_slots[i:i + span]
                    if all(self.is_contiguous(a, b) for a, b in zip(run, run[1:])):
                        result.append(tuple(run))
            self._blocks[span] = result
        return self._blocks[span]

    def longest_run(self) -> int:
        best = 0
        for day in self.days:
            run = 0
            prev: Optional[TimeSlot] = None
            for slot in self._slots_by_day[day]:
                run = run + 1 if prev is not None and self.is_contiguous(prev, slot) else 1
                best = max(best, run)
                prev = slot
        return best


def _day_periods(wh: WorkingHours) -> List[Tuple[int, int]]:
    start = minutes(wh.start_time)
    end = minutes(wh.end_time)
    lunch: Optional[Tuple[int, int]] = None
    if wh.lunch_break_start is not None and wh.lunch_break_end is not None:
        lunch = (minutes(wh.lunch_break_start), minutes(wh.lunch_break_end))

    periods = []
    cursor = start
    while cursor + wh.period_duration <= end and len(periods) < wh.max_periods_per_day:
        period_end = cursor + wh.period_duration
        if lunch and cursor < lunch[1] and lunch[0] < period_end:
            cursor = max(cursor, lunch[1])
            continue
        periods.append((cursor, period_end))
        cursor = period_end + wh.break_duration
    return periods


def _validate(wh: WorkingHours) -> None:
    if wh.end_time <= wh.start_time:
        raise ConfigError(
            f"Working day ends ({wh.end_time}) before it starts ({wh.start_time})", field='endTime'
        )
    if wh.period_duration <= 0:
        raise ConfigError("periodDuration must be positive", field='periodDuration')
    if wh.break_duration < 0:
        raise ConfigError("breakDuration cannot be negative", field='breakDuration')
    if wh.lab_period_duration <= 0:
        raise ConfigError("labPeriodDuration must be positive", field='labPeriodDuration')
    if wh.max_periods_per_day < 1:
        raise ConfigError("maxPeriodsPerDay must be at least 1", field='maxPeriodsPerDay')
    if not wh.working_days:
        raise ConfigError("No working days configured", field='workingDays')
    if len(set(wh.working_days)) != len(wh.working_days):
        raise ConfigError("Duplicate entries in workingDays", field='workingDays')
    if (wh.lunch_break_start is None) != (wh.lunch_break_end is None):
        raise ConfigError("Lunch break needs both a start and an end", field='lunchBreakStart')
    if wh.lunch_break_start is not None and wh.lunch_break_end <= wh.lunch_break_start:
        raise ConfigError("Lunch break ends before it starts", field='lunchBreakEnd')


def build_slot_grid(working_hours: WorkingHours) -> SlotGrid:
    """
    Build the weekly slot grid for one run.

    Args:
        working_hours: The active working-hours policy

    Returns:
        SlotGrid with the same periods on every working day, in weekday order

    Raises:
        ConfigError: if the policy is malformed, no period fits once lunch is
            removed, or a lab block can never fit inside one day
    """
    _validate(working_hours)

    periods = _day_periods(working_hours)
    if not periods:
        raise ConfigError(
            f"No {working_hours.period_duration}-minute period fits between "
            f"{working_hours.start_time} and {working_hours.end_time} after removing lunch",
            field='periodDuration',
        )
    if len(periods) < working_hours.max_periods_per_day:
        logger.warning(
            "[GRID] Working window fits %d periods/day, fewer than maxPeriodsPerDay=%d; using %d",
            len(periods), working_hours.max_periods_per_day, len(periods),
        )

    days = sorted(working_hours.working_days, key=lambda d: d.order)
    slots_by_day: Dict[Weekday, List[TimeSlot]] = {}
    for day in days:
        slots_by_day[day] = [
            TimeSlot(day=day, index=i, start=_to_time(s), end=_to_time(e))
            for i, (s, e) in enumerate(periods)
        ]

    grid = SlotGrid(working_hours, slots_by_day)
    if grid.lab_span > working_hours.max_periods_per_day:
        raise ConfigError(
            f"A {working_hours.lab_period_duration}-minute lab needs {grid.lab_span} periods "
            f"but maxPeriodsPerDay is {working_hours.max_periods_per_day}",
            field='maxPeriodsPerDay',
        )
    if grid.lab_span > grid.longest_run():
        raise ConfigError(
            f"No run of {grid.lab_span} contiguous periods exists for a "
            f"{working_hours.lab_period_duration}-minute lab",
            field='labPeriodDuration',
        )

    logger.debug("[GRID] %d days x %d periods (lab span %d)", len(days), len(periods), grid.lab_span)
    return grid
