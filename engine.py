"""
Timetable engine: one generation run from snapshot to report.

    snapshot -> slot grid + normalizer -> constraint model -> solver
             -> refiner -> validator -> TimetableResult
"""
import logging
from dataclasses import dataclass
from threading import Event
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from config import EngineConfig
from constraints import ConstraintModel
from domain import NormalizedInput, Occurrence, Placement
from models import ScheduleSnapshot, parse_snapshot
from normalizer import normalize
from refiner import LocalSearchRefiner, RefineResult
from scheduler import SolverResult, SolveStatus, TimetableSolver
from timeslots import SlotGrid, build_slot_grid
from validator import ScheduleReport, ScheduleValidator, ensure_valid

logger = logging.getLogger(__name__)


@dataclass
class TimetableResult:
    placements: Dict[Occurrence, Placement]
    report: ScheduleReport
    solver: SolverResult
    refinement: Optional[RefineResult]
    grid: SlotGrid
    data: NormalizedInput
    validator: ScheduleValidator
    seed: int

    @property
    def status(self) -> str:
        return self.report.status

    @property
    def soft_score(self) -> float:
        return self.report.soft_score

    def records(self) -> List[Dict[str, Any]]:
        return self.validator.to_records(self.placements)

    def by_division(self):
        return self.validator.by_division(self.placements)

    def by_teacher(self):
        return self.validator.by_teacher(self.placements)

    def by_room(self):
        return self.validator.by_room(self.placements)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'seed': self.seed,
            'entries': self.records(),
            'report': self.report.to_dict(),
            'solver': self.solver.stats(),
            'refiner': self.refinement.stats() if self.refinement else None,
        }


class TimetableEngine:
    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def generate(self, snapshot: Union[ScheduleSnapshot, Mapping[str, Any]],
                 cancel_event: Optional[Event] = None,
                 progress: Optional[Callable[[str, int, int], None]] = None) -> TimetableResult:
        """
        Generate one timetable.

        Args:
            snapshot: ScheduleSnapshot or its raw document
            cancel_event: Set it from another thread to stop the run early
            progress: Called as progress(phase, done, total) while the run goes;
                phase is 'solve' (placed / occurrences), 'refine' (iteration /
                iteration budget) or 'done'

        Returns:
            TimetableResult; report.status is Partial when anything stayed unplaced
            or a record was rejected

        Raises:
            ConfigError: malformed working-hours policy, before any search
            HardConstraintViolation: the finished timetable breaks a hard constraint
        """
        cfg = self.config
        parse_errors = []
        if not isinstance(snapshot, ScheduleSnapshot):
            snapshot, parse_errors = parse_snapshot(snapshot)

        grid = build_slot_grid(snapshot.policy.working_hours)
        data = normalize(snapshot, grid)
        data.errors = parse_errors + data.errors
        logger.info("[ENGINE] Grid %d slots, %d occurrences, %d data errors",
                    len(grid), len(data.occurrences()), len(data.errors))

        model = ConstraintModel(grid, data, snapshot.policy, cfg.weights)
        solved = TimetableSolver(model, cfg, cancel_event, progress).solve()
        placements = solved.placements

        refinement = None
        if cfg.refine and placements and solved.status != SolveStatus.CANCELLED:
            refinement = LocalSearchRefiner(model, cfg, cancel_event, progress).refine(placements)
            placements = refinement.placements

        validator = ScheduleValidator(model, overwork_threshold=cfg.overwork_threshold)
        report = validator.validate(placements, data_errors=data.errors, warnings=data.warnings,
                                    reasons=solved.reasons)
        ensure_valid(report)
        if progress is not None:
            progress('done', len(placements), len(data.occurrences()))

        return TimetableResult(
            placements=placements,
            report=report,
            solver=solved,
            refinement=refinement,
            grid=grid,
            data=data,
            validator=validator,
            seed=cfg.random_seed,
        )
