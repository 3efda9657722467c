"""
Unit tests for the domain normalizer
Tests requirement expansion, batch splitting, teacher ordering and DataErrors
"""
import unittest

from domain import Occurrence, SessionType, Weekday
from models import parse_snapshot
from normalizer import normalize
from sample_snapshots import (
    compact_policy,
    course,
    division,
    lab_batches_snapshot,
    one_course_snapshot,
    room,
    teacher,
)
from timeslots import build_slot_grid


def run(snapshot):
    parsed, errors = parse_snapshot(snapshot)
    grid = build_slot_grid(parsed.policy.working_hours)
    data = normalize(parsed, grid)
    data.errors = errors + data.errors
    return data


class TestRequirementExpansion(unittest.TestCase):

    def test_single_theory_course(self):
        """Test one course expands into one requirement with three occurrences"""
        data = run(one_course_snapshot())

        self.assertEqual(data.errors, [])
        self.assertEqual(list(data.requirements), ['c1:theory:d1'])
        req = data.requirements['c1:theory:d1']
        self.assertEqual(req.sessions_per_week, 3)
        self.assertEqual(req.span, 1)
        self.assertEqual(req.eligible_teachers, ('t1',))
        self.assertEqual(req.group.size, 50)
        self.assertEqual(len(data.occurrences()), 3)

    def test_practical_split_per_batch(self):
        """Test practical sessions run per lab batch with evenly split headcount"""
        data = run(lab_batches_snapshot())

        self.assertEqual(data.errors, [])
        practical = sorted(r for r in data.requirements if ':practical:' in r)
        self.assertEqual(practical, ['cs-lab:practical:d1/B1', 'cs-lab:practical:d1/B2'])
        for req_id in practical:
            req = data.requirements[req_id]
            self.assertEqual(req.group.size, 20)
            self.assertEqual(req.span, 2)
            self.assertTrue(req.requires_lab)
            self.assertEqual(req.required_features, frozenset({'computers'}))
        # Theory stays at division level
        self.assertIn('cs-lab:theory:d1', data.requirements)

    def test_explicit_batches_win(self):
        """Test explicit batch records override labBatches"""
        snapshot = lab_batches_snapshot()
        snapshot['divisions'] = [division('d1', students=40, labBatches=3, batches=[
            {'id': 'A', 'studentCount': 25}, {'id': 'B', 'studentCount': 15},
        ])]
        data = run(snapshot)

        self.assertIn('d1/A', data.groups)
        self.assertIn('d1/B', data.groups)
        self.assertEqual(data.groups['d1/A'].size, 25)
        self.assertNotIn('d1/B3', data.groups)

    def test_divisions_matched_by_program_and_semester(self):
        """Test courses without divisionIds pick divisions by program/semester"""
        snapshot = one_course_snapshot()
        snapshot['courses'] = [course('c1', ['t1'], [], theory={'sessionsPerWeek': 1, 'duration': 60},
                                      program='BTech', semester=3)]
        snapshot['divisions'] = [
            division('d1', program='BTech', semester=3),
            division('d2', program='BTech', semester=5),
            division('d3', program='MBA', semester=3),
        ]
        data = run(snapshot)

        self.assertEqual(list(data.requirements), ['c1:theory:d1'])

    def test_inactive_records_are_skipped(self):
        """Test inactive courses, rooms and divisions take no part"""
        snapshot = one_course_snapshot()
        snapshot['courses'].append(course('c2', ['t1'], ['d1'], theory={'sessionsPerWeek': 1, 'duration': 60},
                                          isActive=False))
        snapshot['rooms'].append(room('r2', status='maintenance'))
        data = run(snapshot)

        self.assertEqual(list(data.requirements), ['c1:theory:d1'])
        self.assertNotIn('r2', data.rooms)


class TestTeacherOrdering(unittest.TestCase):

    def test_core_before_visiting(self):
        """Test core teachers come first even when a visiting one is primary"""
        snapshot = one_course_snapshot()
        snapshot['teachers'] = [teacher('visitor', teacher_type='visiting'), teacher('core1')]
        snapshot['courses'] = [course('c1', [
            {'teacherId': 'visitor', 'sessionTypes': ['Theory'], 'isPrimary': True},
            {'teacherId': 'core1', 'sessionTypes': ['Theory']},
        ], ['d1'], theory={'sessionsPerWeek': 1, 'duration': 60})]
        data = run(snapshot)

        self.assertEqual(data.requirements['c1:theory:d1'].eligible_teachers, ('core1', 'visitor'))

    def test_session_type_filter(self):
        """Test a teacher assigned to practicals only is not eligible for theory"""
        snapshot = lab_batches_snapshot()
        snapshot['courses'][0]['assignedTeachers'] = [
            {'teacherId': 't1', 'sessionTypes': ['Theory']},
            {'teacherId': 't2', 'sessionTypes': ['practical']},
        ]
        data = run(snapshot)

        self.assertEqual(data.requirements['cs-lab:theory:d1'].eligible_teachers, ('t1',))
        self.assertEqual(data.requirements['cs-lab:practical:d1/B1'].eligible_teachers, ('t2',))


class TestDataErrors(unittest.TestCase):

    def test_lab_without_lab_room(self):
        """Test requiresLab with no lab-capable room reports a DataError for that course only"""
        snapshot = lab_batches_snapshot()
        snapshot['rooms'] = [room('hall', capacity=60)]
        snapshot['courses'].append(course('c2', ['t1'], ['d1'], theory={'sessionsPerWeek': 1, 'duration': 60}))
        data = run(snapshot)

        self.assertEqual(len(data.errors), 1)
        error = data.errors[0]
        self.assertEqual(error.course_id, 'cs-lab')
        self.assertEqual(error.session_type, 'Practical')
        self.assertIn('lab', str(error))
        # The whole failing course is skipped, the other one survives
        self.assertEqual(list(data.requirements), ['c2:theory:d1'])

    def test_no_room_large_enough(self):
        """Test a division larger than every room reports a DataError"""
        snapshot = one_course_snapshot()
        snapshot['divisions'] = [division('d1', students=200)]
        data = run(snapshot)

        self.assertEqual(len(data.errors), 1)
        self.assertEqual(data.errors[0].division_id, 'd1')
        self.assertEqual(data.requirements, {})

    def test_no_eligible_teacher(self):
        """Test a session type with nobody to teach it reports a DataError"""
        snapshot = one_course_snapshot()
        snapshot['teachers'] = [teacher('t1', status='on_leave')]
        data = run(snapshot)

        self.assertEqual(len(data.errors), 1)
        self.assertEqual(data.errors[0].course_id, 'c1')
        self.assertEqual(data.errors[0].session_type, 'Theory')

    def test_malformed_room_is_rejected(self):
        """Test a room record without capacity is rejected with a DataError naming it"""
        snapshot = one_course_snapshot()
        snapshot['rooms'].append({'id': 'broken', 'name': 'No seats'})
        data = run(snapshot)

        self.assertEqual([e.room_id for e in data.errors], ['broken'])
        self.assertNotIn('broken', data.rooms)
        self.assertIn('c1:theory:d1', data.requirements)

    def test_course_without_division(self):
        """Test a course matching no division reports a DataError"""
        snapshot = one_course_snapshot()
        snapshot['courses'][0]['divisionIds'] = ['missing']
        data = run(snapshot)

        self.assertEqual(len(data.errors), 1)
        self.assertEqual(data.errors[0].course_id, 'c1')


class TestWarningsAndPins(unittest.TestCase):

    def test_sole_teacher_overload_warning(self):
        """Test the bound analysis flags a sole teacher over maxHoursPerWeek"""
        snapshot = one_course_snapshot()
        snapshot['teachers'] = [teacher('t1', hours=2)]
        data = run(snapshot)

        self.assertEqual(data.errors, [])
        self.assertTrue(any('Workload Issue' in w for w in data.warnings))

    def test_pinned_entry_resolved(self):
        """Test a pinned entry becomes a fixed placement for the first occurrence"""
        snapshot = one_course_snapshot()
        snapshot['pinned'] = [{
            'courseId': 'c1', 'sessionType': 'Theory', 'divisionId': 'd1',
            'day': 'Wednesday', 'startTime': '13:00', 'teacherId': 't1', 'classroomId': 'r1',
        }]
        data = run(snapshot)

        placement = data.pinned[Occurrence('c1:theory:d1', 0)]
        self.assertEqual(placement.day, Weekday.WEDNESDAY)
        self.assertEqual(placement.room_id, 'r1')

    def test_pinned_entry_off_grid(self):
        """Test a pin that starts between periods is rejected"""
        snapshot = one_course_snapshot()
        snapshot['pinned'] = [{
            'courseId': 'c1', 'sessionType': 'Theory', 'divisionId': 'd1',
            'day': 'monday', 'startTime': '12:00', 'teacherId': 't1', 'roomId': 'r1',
        }]
        data = run(snapshot)

        self.assertEqual(data.pinned, {})
        self.assertEqual(len(data.errors), 1)

    def test_malformed_pin_is_named(self):
        """Test a pinned entry without a day is rejected as a pinned entry record"""
        snapshot = one_course_snapshot()
        snapshot['pinned'] = [{
            'courseId': 'c1', 'sessionType': 'Theory', 'divisionId': 'd1',
            'startTime': '09:00', 'teacherId': 't1', 'roomId': 'r1',
        }]
        data = run(snapshot)

        self.assertEqual(data.pinned, {})
        self.assertEqual([e.course_id for e in data.errors], ['c1'])
        self.assertTrue(str(data.errors[0]).startswith("Rejected pinned entry record 'c1'"))


if __name__ == '__main__':
    unittest.main(verbosity=2)
