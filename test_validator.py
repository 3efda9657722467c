"""
Unit tests for the validator and reporter
Tests hard violation detection, report status, idempotence and grid views
"""
import unittest

from domain import Occurrence, Placement, Severity, Weekday
from errors import HardConstraintViolation
from sample_snapshots import build_model, course, one_course_snapshot, room
from scheduler import TimetableSolver
from validator import COMPLETE, PARTIAL, ScheduleValidator, ensure_valid


class TestHardViolations(unittest.TestCase):

    def setUp(self):
        snapshot = one_course_snapshot()
        snapshot['courses'].append(course('c2', ['t1'], ['d2'], theory={'sessionsPerWeek': 1, 'duration': 60}))
        snapshot['divisions'].append({'id': 'd2', 'studentCount': 30})
        snapshot['rooms'].append(room('tiny', capacity=20))
        self.model = build_model(snapshot)
        self.validator = ScheduleValidator(self.model)
        self.monday = self.model.grid.slots_for(Weekday.MONDAY)

    def kinds(self, placements):
        return {v.kind for v in self.validator.hard_violations(placements)}

    def test_teacher_double_booking(self):
        """Test one teacher in two rooms at once is reported"""
        placements = {
            Occurrence('c1:theory:d1', 0): Placement((self.monday[0],), 'r1', 't1'),
            Occurrence('c2:theory:d2', 0): Placement((self.monday[0],), 'tiny', 't1'),
        }
        self.assertIn('teacher_double_booking', self.kinds(placements))

    def test_room_double_booking_and_capacity(self):
        """Test two sessions in one room and an undersized room are both reported"""
        placements = {
            Occurrence('c1:theory:d1', 0): Placement((self.monday[0],), 'tiny', 't1'),
            Occurrence('c1:theory:d1', 1): Placement((self.monday[0],), 'tiny', 't1'),
        }
        kinds = self.kinds(placements)
        self.assertIn('room_double_booking', kinds)
        self.assertIn('room_capacity', kinds)
        self.assertIn('student_group_conflict', kinds)

    def test_unknown_entities(self):
        """Test unknown occurrences and teachers are reported"""
        placements = {
            Occurrence('ghost', 0): Placement((self.monday[0],), 'r1', 't1'),
            Occurrence('c1:theory:d1', 0): Placement((self.monday[1],), 'r1', 'nobody'),
        }
        kinds = self.kinds(placements)
        self.assertIn('unknown_occurrence', kinds)
        self.assertIn('ineligible_teacher', kinds)

    def test_empty_block(self):
        """Test a placement with no slots is an invalid block and the report still builds"""
        placements = {Occurrence('c1:theory:d1', 0): Placement((), 'r1', 't1')}
        self.assertEqual(self.kinds(placements), {'invalid_block'})

        report = self.validator.validate(placements)
        self.assertEqual([v.kind for v in report.hard_violations], ['invalid_block'])
        self.assertFalse(report.is_valid)

    def test_ensure_valid_raises(self):
        """Test ensure_valid raises with the report attached"""
        placements = {
            Occurrence('c1:theory:d1', 0): Placement((self.monday[0],), 'r1', 't1'),
            Occurrence('c2:theory:d2', 0): Placement((self.monday[0],), 'r1', 't1'),
        }
        report = self.validator.validate(placements)
        with self.assertRaises(HardConstraintViolation) as ctx:
            ensure_valid(report)
        self.assertIs(ctx.exception.report, report)
        self.assertTrue(ctx.exception.to_dict()['violations'])


class TestReport(unittest.TestCase):

    def setUp(self):
        self.model = build_model(one_course_snapshot())
        self.validator = ScheduleValidator(self.model, overwork_threshold=2)
        self.placements = TimetableSolver(self.model).solve().placements

    def test_complete_report(self):
        """Test a full solution reports Complete with no hard violations"""
        report = ensure_valid(self.validator.validate(self.placements))

        self.assertEqual(report.status, COMPLETE)
        self.assertEqual(report.unplaced, [])
        self.assertEqual(report.teacher_hours, {'t1': 3.0})
        for v in report.violations:
            self.assertEqual(v.severity, Severity.SOFT)

    def test_partial_report(self):
        """Test missing occurrences make the report Partial and are listed"""
        first = Occurrence('c1:theory:d1', 0)
        placements = {first: self.placements[first]}
        report = self.validator.validate(placements, reasons={Occurrence('c1:theory:d1', 2): 'blocked'})

        self.assertEqual(report.status, PARTIAL)
        self.assertEqual(len(report.unplaced), 2)
        self.assertIn('blocked', report.unplaced_reasons.values())

    def test_idempotent(self):
        """Test validating twice gives identical reports"""
        first = self.validator.validate(self.placements).to_dict()
        second = self.validator.validate(self.placements).to_dict()
        self.assertEqual(first, second)

    def test_overwork_alert(self):
        """Test teachers at the overwork threshold are flagged"""
        report = self.validator.validate(self.placements)
        self.assertTrue(any('OVERWORK ALERT' in w for w in report.warnings))

    def test_views_and_records(self):
        """Test per-teacher, per-room and per-division views cover every session"""
        by_teacher = self.validator.by_teacher(self.placements)
        by_room = self.validator.by_room(self.placements)
        by_division = self.validator.by_division(self.placements)

        for view, key in ((by_teacher, 't1'), (by_room, 'r1'), (by_division, 'd1')):
            self.assertEqual(list(view), [key])
            self.assertEqual(sum(len(entries) for entries in view[key].values()), 3)

        records = self.validator.to_records(self.placements)
        self.assertEqual(len(records), 3)
        self.assertEqual({r['course_code'] for r in records}, {'C1'})
        self.assertFalse(any(r['is_locked'] for r in records))


if __name__ == '__main__':
    unittest.main(verbosity=2)
