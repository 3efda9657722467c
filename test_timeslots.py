"""
Unit tests for the slot grid builder
Tests period layout, lunch handling, contiguity and policy errors
"""
import unittest
from datetime import time

from domain import Weekday
from errors import ConfigError
from models import WorkingHours
from sample_snapshots import compact_policy
from timeslots import build_slot_grid


def compact_hours(**overrides):
    data = dict(compact_policy()['workingHours'])
    data.update(overrides)
    return WorkingHours.model_validate(data)


class TestSlotGrid(unittest.TestCase):

    def test_compact_grid_has_six_periods_per_day(self):
        """Test 09:00-16:00 with a one-hour lunch gives 6 periods on 5 days"""
        grid = build_slot_grid(compact_hours())

        self.assertEqual(len(grid), 30)
        self.assertEqual(grid.days, [Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY,
                                     Weekday.THURSDAY, Weekday.FRIDAY])
        starts = [s.start for s in grid.slots_for(Weekday.MONDAY)]
        self.assertEqual(starts, [time(9), time(10), time(11), time(13), time(14), time(15)])

    def test_default_policy_skips_lunch(self):
        """Test the default working hours never put a period inside lunch"""
        grid = build_slot_grid(WorkingHours())

        for slot in grid.slots:
            self.assertFalse(time(12, 30) < slot.end and slot.start < time(13, 30), slot.label())
        # 50-minute periods, 10-minute breaks: three before lunch, three after
        self.assertEqual(len(grid.slots_for(Weekday.MONDAY)), 6)
        self.assertEqual(grid.lab_span, 3)

    def test_slots_are_ordered_and_disjoint(self):
        """Test slots never overlap within a day and indexes follow time"""
        grid = build_slot_grid(WorkingHours())
        for day in grid.days:
            day_slots = grid.slots_for(day)
            for i, (a, b) in enumerate(zip(day_slots, day_slots[1:])):
                self.assertLessEqual(a.end, b.start)
                self.assertEqual(a.index, i)

    def test_lunch_breaks_contiguity(self):
        """Test a block never spans the lunch break"""
        grid = build_slot_grid(compact_hours())
        monday = grid.slots_for(Weekday.MONDAY)

        self.assertTrue(grid.is_contiguous(monday[0], monday[1]))
        self.assertFalse(grid.is_contiguous(monday[2], monday[3]))
        # Pairs (9,10) (10,11) (13,14) (14,15) on five days
        self.assertEqual(len(grid.blocks(2)), 20)
        self.assertEqual(grid.longest_run(), 3)

    def test_span_rounds_up(self):
        """Test sessions longer than a period take whole extra periods"""
        grid = build_slot_grid(compact_hours())
        self.assertEqual(grid.span_for(60), 1)
        self.assertEqual(grid.span_for(90), 2)
        self.assertEqual(grid.span_for(120), 2)

    def test_fewer_periods_than_maximum_logs_warning(self):
        """Test the grid is capped by the working window with a warning"""
        with self.assertLogs('timeslots', level='WARNING'):
            grid = build_slot_grid(compact_hours(maxPeriodsPerDay=10))
        self.assertEqual(len(grid.slots_for(Weekday.MONDAY)), 6)

    def test_max_periods_caps_the_day(self):
        """Test maxPeriodsPerDay limits the number of periods"""
        grid = build_slot_grid(compact_hours(maxPeriodsPerDay=4))
        self.assertEqual(len(grid.slots_for(Weekday.FRIDAY)), 4)


class TestSlotGridErrors(unittest.TestCase):

    def test_end_before_start(self):
        """Test an inverted working day raises ConfigError"""
        with self.assertRaises(ConfigError) as ctx:
            build_slot_grid(compact_hours(startTime='16:00', endTime='09:00'))
        self.assertEqual(ctx.exception.field, 'endTime')

    def test_inverted_lunch(self):
        """Test a lunch break ending before it starts raises ConfigError"""
        with self.assertRaises(ConfigError):
            build_slot_grid(compact_hours(lunchBreakStart='13:00', lunchBreakEnd='12:00'))

    def test_no_period_fits(self):
        """Test a period longer than the day raises ConfigError"""
        with self.assertRaises(ConfigError):
            build_slot_grid(compact_hours(periodDuration=600))

    def test_max_periods_below_lab_span(self):
        """Test maxPeriodsPerDay smaller than a lab block raises ConfigError"""
        with self.assertRaises(ConfigError) as ctx:
            build_slot_grid(compact_hours(maxPeriodsPerDay=1))
        self.assertEqual(ctx.exception.field, 'maxPeriodsPerDay')

    def test_lab_never_fits_between_breaks(self):
        """Test a lab longer than any run between lunch and the day edges raises ConfigError"""
        with self.assertRaises(ConfigError) as ctx:
            build_slot_grid(compact_hours(startTime='11:00', endTime='14:00'))
        self.assertEqual(ctx.exception.field, 'labPeriodDuration')

    def test_no_working_days(self):
        """Test an empty week raises ConfigError"""
        with self.assertRaises(ConfigError):
            build_slot_grid(compact_hours(workingDays=[]))

    def test_negative_break(self):
        """Test a negative break raises ConfigError"""
        with self.assertRaises(ConfigError):
            build_slot_grid(compact_hours(breakDuration=-5))


if __name__ == '__main__':
    unittest.main(verbosity=2)
