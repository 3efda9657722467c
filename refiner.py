"""
Local-search refiner.

Simulated annealing over a complete (or partial) hard-feasible assignment.
Two moves: relocate one occurrence to another candidate placement, or swap
the time blocks of two occurrences of the same length. Every move is
re-checked against the hard constraints before it is scored, so the
assignment stays hard-feasible throughout and the set of placed occurrences
never changes.
"""
import logging
import math
import random
import time
from dataclasses import dataclass
from threading import Event
from typing import Callable, Dict, List, Optional, Tuple

from assignment import Assignment
from config import EngineConfig
from constraints import ConstraintModel
from domain import Occurrence, Placement

logger = logging.getLogger(__name__)

# Annealing temperature never drops below this, whatever min_temperature says
MIN_TEMPERATURE = 1e-6
PROGRESS_EVERY = 100


@dataclass
class RefineResult:
    placements: Dict[Occurrence, Placement]
    initial_score: float
    best_score: float
    iterations: int = 0
    accepted: int = 0
    improved: int = 0
    elapsed: float = 0.0
    stopped: str = 'iterations'

    def stats(self) -> Dict[str, object]:
        return {
            'initial_score': round(self.initial_score, 4),
            'best_score': round(self.best_score, 4),
            'iterations': self.iterations,
            'accepted': self.accepted,
            'improved': self.improved,
            'elapsed_seconds': round(self.elapsed, 3),
            'stopped': self.stopped,
        }


Move = List[Tuple[Occurrence, Placement, Placement]]


class LocalSearchRefiner:
    def __init__(self, model: ConstraintModel, config: Optional[EngineConfig] = None,
                 cancel_event: Optional[Event] = None,
                 progress: Optional[Callable[[str, int, int], None]] = None):
        self.model = model
        self.config = config or EngineConfig()
        self.cancel_event = cancel_event
        self.progress = progress
        self.random = random.Random(self.config.random_seed)

    def refine(self, placements: Dict[Occurrence, Placement]) -> RefineResult:
        """
        Improve the soft score of `placements` without touching pinned entries.

        Returns:
            RefineResult with the best placement map seen (never worse than the input)
        """
        cfg = self.config
        started = time.monotonic()
        current = Assignment.from_placements(self.model.requirements, placements)
        pinned = self.model.data.pinned
        movable = sorted(o for o in current if pinned.get(o) != current.get(o))

        score = self.model.soft_score(current)
        result = RefineResult(placements=current.snapshot(), initial_score=score, best_score=score)
        if not movable:
            result.stopped = 'nothing to move'
            return result

        floor = max(cfg.min_temperature, MIN_TEMPERATURE)
        temperature = max(floor, cfg.initial_temperature)
        stale = 0
        for iteration in range(cfg.refiner_iterations):
            if self.cancel_event is not None and self.cancel_event.is_set():
                result.stopped = 'cancelled'
                break
            if cfg.refiner_time_limit and time.monotonic() - started > cfg.refiner_time_limit:
                result.stopped = 'time'
                break
            if stale >= cfg.refiner_patience:
                result.stopped = 'patience'
                break
            result.iterations = iteration + 1
            if self.progress is not None and iteration % PROGRESS_EVERY == 0:
                self.progress('refine', iteration, cfg.refiner_iterations)

            if len(movable) > 1 and self.random.random() < 0.4:
                move = self._swap(current, movable)
            else:
                move = self._relocate(current, movable)
            temperature = max(floor, temperature * cfg.cooling_rate)
            if not move:
                stale += 1
                continue

            new_score = self.model.soft_score(current)
            delta = new_score - score
            if delta <= 0 or self.random.random() < math.exp(-delta / temperature):
                score = new_score
                result.accepted += 1
                if score < result.best_score - 1e-9:
                    result.best_score = score
                    result.placements = current.snapshot()
                    result.improved += 1
                    stale = 0
                else:
                    stale += 1
            else:
                self._revert(current, move)
                stale += 1

        result.elapsed = time.monotonic() - started
        if self.progress is not None:
            self.progress('refine', result.iterations, cfg.refiner_iterations)
        logger.info(
            "[REFINER] soft score %.3f -> %.3f after %d iterations (%s)",
            result.initial_score, result.best_score, result.iterations, result.stopped,
        )
        return result

    # ----- moves ----- #
    def _relocate(self, current: Assignment, movable: List[Occurrence]) -> Optional[Move]:
        occ = self.random.choice(movable)
        options = self.model.static_candidates(occ.requirement_id)
        old = current.get(occ)
        if len(options) < 2:
            return None
        new = self.random.choice(options)
        if new == old:
            return None
        current.remove(occ)
        if not self.model.is_hard_feasible(occ, new, current):
            current.place(occ, old)
            return None
        current.place(occ, new)
        return [(occ, old, new)]

    def _swap(self, current: Assignment, movable: List[Occurrence]) -> Optional[Move]:
        a, b = self.random.sample(movable, 2)
        pa, pb = current.get(a), current.get(b)
        if len(pa.slots) != len(pb.slots) or pa.slots == pb.slots:
            return None
        new_a = Placement(pb.slots, pa.room_id, pa.teacher_id)
        new_b = Placement(pa.slots, pb.room_id, pb.teacher_id)

        current.remove(a)
        current.remove(b)
        if self.model.is_hard_feasible(a, new_a, current):
            current.place(a, new_a)
            if self.model.is_hard_feasible(b, new_b, current):
                current.place(b, new_b)
                return [(a, pa, new_a), (b, pb, new_b)]
            current.remove(a)
        current.place(a, pa)
        current.place(b, pb)
        return None

    def _revert(self, current: Assignment, move: Move) -> None:
        for occ, _, _ in move:
            current.remove(occ)
        for occ, old, _ in move:
            current.place(occ, old)
