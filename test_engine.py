"""
Unit tests for the engine pipeline, the run pool and configuration
"""
import json
import os
import unittest
from threading import Event
from unittest.mock import patch

from config import EngineConfig, SoftWeights
from engine import TimetableEngine
from errors import ConfigError
from models import parse_snapshot
from runner import generate_async, generate_candidates, pick_best, run_many
from sample_snapshots import (
    course,
    lab_batches_snapshot,
    latin_square_snapshot,
    monday_hour_snapshot,
    one_course_snapshot,
)
from scheduler import SolveStatus
from validator import COMPLETE, PARTIAL


class TestEngine(unittest.TestCase):

    def setUp(self):
        self.engine = TimetableEngine(EngineConfig(refiner_iterations=300))

    def test_single_course_complete(self):
        """Test the one-course scenario gives three entries and three teacher hours"""
        result = self.engine.generate(one_course_snapshot())

        self.assertEqual(result.status, COMPLETE)
        self.assertEqual(len(result.records()), 3)
        self.assertEqual(result.report.teacher_hours, {'t1': 3.0})
        self.assertEqual(result.report.hard_violations, [])

    def test_infeasible_scenario(self):
        """Test a one-hour teacher window yields a Partial report with two unplaced"""
        result = self.engine.generate(monday_hour_snapshot())

        self.assertEqual(result.status, PARTIAL)
        self.assertGreaterEqual(len(result.report.unplaced), 2)
        self.assertEqual(result.solver.status, SolveStatus.INFEASIBLE)

    def test_accepts_parsed_snapshot(self):
        """Test a ScheduleSnapshot instance works as well as the raw document"""
        snapshot, errors = parse_snapshot(latin_square_snapshot())
        self.assertEqual(errors, [])
        result = self.engine.generate(snapshot)
        self.assertEqual(result.status, COMPLETE)
        self.assertEqual(len(result.placements), 9)

    def test_config_error_is_raised(self):
        """Test a broken working-hours policy stops the run before the search"""
        snapshot = one_course_snapshot()
        snapshot['policy']['workingHours']['endTime'] = '08:00'
        with self.assertRaises(ConfigError):
            self.engine.generate(snapshot)

    def test_invalid_policy_is_config_error(self):
        """Test a policy that fails validation raises ConfigError"""
        snapshot = one_course_snapshot()
        snapshot['policy']['generalPolicies']['minRoomCapacityBuffer'] = 150
        with self.assertRaises(ConfigError):
            self.engine.generate(snapshot)

    def test_data_errors_keep_other_courses(self):
        """Test a broken course is reported while the rest is still scheduled"""
        snapshot = one_course_snapshot()
        snapshot['courses'].append(course('c2', ['nobody'], ['d1'], theory={'sessionsPerWeek': 2, 'duration': 60}))
        result = self.engine.generate(snapshot)

        self.assertEqual(result.status, PARTIAL)
        self.assertEqual([e.course_id for e in result.report.data_errors], ['c2'])
        self.assertEqual(len(result.placements), 3)

    def test_result_serializes(self):
        """Test the result converts to plain JSON"""
        result = self.engine.generate(lab_batches_snapshot())
        payload = json.loads(json.dumps(result.to_dict()))

        self.assertEqual(payload['status'], COMPLETE)
        self.assertEqual(len(payload['entries']), 4)
        self.assertIn('soft_breakdown', payload['report'])
        self.assertEqual(payload['solver']['status'], 'AllCommitted')

    def test_progress_phases(self):
        """Test progress goes through solve and refine and ends with done"""
        calls = []
        result = self.engine.generate(one_course_snapshot(), progress=lambda *a: calls.append(a))

        phases = [c[0] for c in calls]
        self.assertIn('solve', phases)
        self.assertIn('refine', phases)
        self.assertLess(phases.index('solve'), phases.index('refine'))
        self.assertEqual(calls[-1], ('done', len(result.placements), 3))

    def test_cancelled_run(self):
        """Test a cancelled run returns a Partial result without refinement"""
        cancel = Event()
        cancel.set()
        result = self.engine.generate(one_course_snapshot(), cancel_event=cancel)

        self.assertEqual(result.solver.status, SolveStatus.CANCELLED)
        self.assertEqual(result.status, PARTIAL)
        self.assertIsNone(result.refinement)


class TestRunner(unittest.TestCase):

    def setUp(self):
        self.config = EngineConfig(refiner_iterations=200, max_workers=2)

    def test_run_many_keeps_order(self):
        """Test parallel runs come back in job order"""
        results = run_many([one_course_snapshot(), monday_hour_snapshot(), latin_square_snapshot()],
                           config=self.config)

        self.assertEqual([r.status for r in results], [COMPLETE, PARTIAL, COMPLETE])
        self.assertEqual(len(results[2].placements), 9)

    def test_per_job_config(self):
        """Test (snapshot, config) pairs override the shared config"""
        results = run_many([(one_course_snapshot(), EngineConfig(refine=False))], config=self.config)
        self.assertIsNone(results[0].refinement)

    def test_candidates_and_pick_best(self):
        """Test one candidate per seed and pick_best takes the lowest soft score"""
        results = generate_candidates(one_course_snapshot(), [3, 1, 2], config=self.config)

        self.assertEqual([r.seed for r in results], [3, 1, 2])
        best = pick_best(results)
        self.assertEqual(best.soft_score, min(r.soft_score for r in results))

    def test_pick_best_prefers_complete(self):
        """Test fewer unplaced occurrences beat a better soft score"""
        complete = TimetableEngine(self.config).generate(one_course_snapshot())
        partial = TimetableEngine(self.config).generate(monday_hour_snapshot())
        self.assertIs(pick_best([partial, complete]), complete)

    def test_pick_best_empty(self):
        """Test pick_best refuses an empty list"""
        with self.assertRaises(ValueError):
            pick_best([])

    def test_generate_async(self):
        """Test a run submitted to the shared pool resolves to a result"""
        future = generate_async(one_course_snapshot(), self.config)
        self.assertEqual(future.result(timeout=60).status, COMPLETE)


class TestConfig(unittest.TestCase):

    def test_defaults(self):
        """Test default budgets and weights"""
        config = EngineConfig()
        self.assertEqual(config.backtrack_limit, 5000)
        self.assertEqual(config.cooling_rate, 0.995)
        self.assertIsInstance(config.weights, SoftWeights)

    def test_from_mapping(self):
        """Test a plain dict overrides known keys and weights, ignoring the rest"""
        config = EngineConfig.from_mapping({
            'backtrack_limit': 10,
            'unknown_key': True,
            'weights': {'same_day_repeat': 0, 'nonsense': 5},
        })
        self.assertEqual(config.backtrack_limit, 10)
        self.assertEqual(config.weights.same_day_repeat, 0)
        self.assertEqual(config.weights.morning_labs, SoftWeights().morning_labs)

    def test_from_env(self):
        """Test TIMETABLE_* environment variables are read and coerced"""
        env = {
            'TIMETABLE_BACKTRACK_LIMIT': '25',
            'TIMETABLE_ILP_FALLBACK': 'false',
            'TIMETABLE_TIME_LIMIT_SECONDS': 'none',
            'TIMETABLE_COOLING_RATE': '0.9',
        }
        with patch.dict(os.environ, env):
            config = EngineConfig.from_env({'random_seed': 5})
        self.assertEqual(config.backtrack_limit, 25)
        self.assertFalse(config.ilp_fallback)
        self.assertIsNone(config.time_limit_seconds)
        self.assertEqual(config.cooling_rate, 0.9)
        self.assertEqual(config.random_seed, 5)


if __name__ == '__main__':
    unittest.main(verbosity=2)
