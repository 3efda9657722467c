"""
Assignment solver.

Places every session occurrence with a most-constrained-first search over an
explicit stack of decision frames. A dead end jumps straight back to the
deepest decision that took part in the conflict (conflict-directed
backjumping) instead of undoing one step at a time. An occurrence whose
conflicts involve no undoable decision is set aside as unplaceable and the
search carries on with the rest.

When the search ends incomplete an ILP pass (PuLP/CBC) tries to place more
occurrences over the same candidate set, then a greedy top-up without
backtracking fills whatever still has a live candidate.
"""
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from threading import Event
from typing import Callable, Dict, List, Optional, Set, Tuple

import pulp

from assignment import Assignment
from config import EngineConfig
from constraints import ConstraintModel
from domain import Occurrence, Placement

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 100


class SolveStatus(str, Enum):
    ALL_COMMITTED = 'AllCommitted'
    INFEASIBLE = 'Infeasible'
    TIMED_OUT = 'TimedOut'
    CANCELLED = 'Cancelled'


@dataclass
class SolverResult:
    status: SolveStatus
    placements: Dict[Occurrence, Placement]
    unplaced: List[Occurrence]
    reasons: Dict[Occurrence, str]
    backtracks: int = 0
    steps: int = 0
    elapsed: float = 0.0
    method: str = 'search'

    @property
    def complete(self) -> bool:
        return self.status == SolveStatus.ALL_COMMITTED

    def stats(self) -> Dict[str, object]:
        return {
            'status': self.status.value,
            'method': self.method,
            'placed': len(self.placements),
            'unplaced': len(self.unplaced),
            'backtracks': self.backtracks,
            'steps': self.steps,
            'elapsed_seconds': round(self.elapsed, 3),
        }


@dataclass
class _Frame:
    """One decision: the occurrence, its ordered options and what blocked them."""

    occ: Occurrence
    candidates: List[Placement]
    position: int = 0
    placement: Optional[Placement] = None
    conflicts: Set[Occurrence] = field(default_factory=set)


class _BudgetExhausted(Exception):
    pass


class TimetableSolver:
    def __init__(self, model: ConstraintModel, config: Optional[EngineConfig] = None,
                 cancel_event: Optional[Event] = None,
                 progress: Optional[Callable[[str, int, int], None]] = None):
        self.model = model
        self.config = config or EngineConfig()
        self.cancel_event = cancel_event
        self.progress = progress

    # --------------------------------------------------------------------- #
    # Public API
    # --------------------------------------------------------------------- #
    def solve(self) -> SolverResult:
        """
        Run the search once.

        Returns:
            SolverResult holding a hard-feasible placement map (complete, or the
            best partial one found) and a reason per unplaced occurrence
        """
        started = time.monotonic()
        limit = self.config.time_limit_seconds
        self._deadline = started + limit if limit else None
        self._backtracks = 0
        self._steps = 0

        model = self.model
        self._total = len(model.data.occurrences())
        assignment = Assignment(model.requirements)
        reasons: Dict[Occurrence, str] = {}
        locked: Set[Occurrence] = set()
        for occ, placement in sorted(model.data.pinned.items()):
            locked.add(occ)
            if model.is_hard_feasible(occ, placement, assignment):
                assignment.place(occ, placement)
            else:
                reasons[occ] = "pinned placement breaks a hard constraint"
                logger.warning("[SOLVER] Pinned %s cannot be kept: it breaks a hard constraint", occ)

        pending = [o for o in model.data.occurrences() if o not in locked]
        logger.info("[SOLVER] %d occurrences to place (%d pinned)", len(pending), len(assignment))
        self._prepare(pending)

        status, best = self._search(assignment, pending)
        method = 'search'

        if status == SolveStatus.INFEASIBLE:
            pinned_only = {o: p for o, p in model.data.pinned.items() if o not in reasons}
            if self.config.ilp_fallback:
                ilp = self._solve_ilp(Assignment.from_placements(model.requirements, pinned_only), pending)
                if ilp is not None and len(ilp) > len(best):
                    logger.info("[SOLVER] ILP fallback placed %d occurrences (search: %d)", len(ilp), len(best))
                    best = ilp
                    method = 'ilp'

            # Every unplaced occurrence left after this has no live candidate
            fullest = max((self._complete(start, pending) for start in (best, self._current, pinned_only)),
                          key=len)
            if len(fullest) > len(best):
                logger.info("[SOLVER] Greedy completion placed %d occurrences (was %d)", len(fullest), len(best))
                best = fullest
                method += '+greedy'
            if all(o in best for o in pending):
                status = SolveStatus.ALL_COMMITTED

        unplaced = [o for o in model.data.occurrences() if o not in best]
        if status == SolveStatus.ALL_COMMITTED and unplaced:
            status = SolveStatus.INFEASIBLE
        reasons.update(self._diagnose(best, unplaced, reasons, status))

        result = SolverResult(
            status=status,
            placements=best,
            unplaced=unplaced,
            reasons={o: reasons[o] for o in unplaced},
            backtracks=self._backtracks,
            steps=self._steps,
            elapsed=time.monotonic() - started,
            method=method,
        )
        self._report(len(best))
        logger.info(
            "[SOLVER] %s: %d placed, %d unplaced, %d backtracks, %.2fs",
            status.value, len(best), len(unplaced), self._backtracks, result.elapsed,
        )
        return result

    def _report(self, placed: int) -> None:
        if self.progress is not None:
            self.progress('solve', placed, self._total)

    # --------------------------------------------------------------------- #
    # Setup
    # --------------------------------------------------------------------- #
    def _prepare(self, pending: List[Occurrence]) -> None:
        """Resource index, static degrees and slot contention for the pending requirements."""
        model = self.model
        self._touching: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        self._contention: Dict[Tuple[str, str, object], float] = defaultdict(float)
        keys_by_req: Dict[str, Set[Tuple[str, str]]] = {}

        for req_id in sorted({o.requirement_id for o in pending}):
            req = model.requirements[req_id]
            static = model.static_candidates(req_id)
            keys = {('d', req.group.division_id)}
            share = req.sessions_per_week / len(static) if static else 0.0
            for p in static:
                keys.add(('t', p.teacher_id))
                keys.add(('r', p.room_id))
                for slot in p.slots:
                    self._contention[('t', p.teacher_id, slot)] += share
                    self._contention[('r', p.room_id, slot)] += share
            keys_by_req[req_id] = keys
            for key in keys:
                self._touching[key].add(req_id)

        self._degree = {
            req_id: len(set().union(*(self._touching[k] for k in keys))) - 1
            for req_id, keys in keys_by_req.items()
        }
        self._domain: Dict[str, int] = {}
        self._dirty: Set[str] = set(keys_by_req)

    def _mark_dirty(self, occ: Occurrence, placement: Placement) -> None:
        req = self.model.requirements[occ.requirement_id]
        self._dirty.add(req.id)
        self._dirty |= self._touching.get(('t', placement.teacher_id), set())
        self._dirty |= self._touching.get(('r', placement.room_id), set())
        self._dirty |= self._touching.get(('d', req.group.division_id), set())

    # --------------------------------------------------------------------- #
    # Search
    # --------------------------------------------------------------------- #
    def _search(self, assignment: Assignment, pending: List[Occurrence]):
        self._open: Set[Occurrence] = set(pending)
        self._frames: List[_Frame] = []
        self._depth: Dict[Occurrence, int] = {}
        self._unplaceable: Dict[Occurrence, int] = {}
        best = assignment.snapshot()

        status = None
        while status is None:
            self._steps += 1
            if self.cancel_event is not None and self.cancel_event.is_set():
                status = SolveStatus.CANCELLED
                break
            if self._deadline is not None and time.monotonic() > self._deadline:
                status = SolveStatus.TIMED_OUT
                break

            occ = self._select(assignment)
            if occ is None:
                status = SolveStatus.INFEASIBLE if self._unplaceable else SolveStatus.ALL_COMMITTED
                break

            frame = self._open_frame(occ, assignment)
            self._open.discard(occ)
            self._frames.append(frame)
            self._depth[occ] = len(self._frames) - 1
            if not self._advance(frame, assignment):
                try:
                    self._dead_end(assignment)
                except _BudgetExhausted:
                    logger.warning("[SOLVER] Backtrack budget of %d exhausted", self.config.backtrack_limit)
                    status = SolveStatus.INFEASIBLE

            if len(assignment) > len(best):
                best = assignment.snapshot()
                self._report(len(best))
            elif self._steps % PROGRESS_EVERY == 0:
                self._report(len(best))

        self._current = assignment.snapshot()
        if status == SolveStatus.ALL_COMMITTED:
            best = self._current
        return status, best

    def _select(self, assignment: Assignment) -> Optional[Occurrence]:
        """Most constrained open occurrence; live domain sizes are refreshed only when dirty."""
        if not self._open:
            return None
        open_by_req: Dict[str, Occurrence] = {}
        for occ in self._open:
            if occ.requirement_id not in open_by_req or occ < open_by_req[occ.requirement_id]:
                open_by_req[occ.requirement_id] = occ

        for req_id in list(self._dirty):
            occ = open_by_req.get(req_id)
            if occ is None:
                continue
            self._domain[req_id] = sum(
                1 for p in self.model.static_candidates(req_id)
                if not self.model.blockers(occ, p, assignment)
            )
            self._dirty.discard(req_id)

        core_first = self.model.policies.prioritize_core_before

        def key(occ: Occurrence):
            req = self.model.requirements[occ.requirement_id]
            rank = min((self.model.teachers[t].rank for t in req.eligible_teachers if t in self.model.teachers),
                       default=0)
            return (
                self._domain.get(req.id, 0),
                -self._degree.get(req.id, 0),
                -req.span,
                req.course_priority,
                rank if core_first else 0,
                occ,
            )

        return min(self._open, key=key)

    def _open_frame(self, occ: Occurrence, assignment: Assignment) -> _Frame:
        model = self.model
        req = model.requirements[occ.requirement_id]
        feasible = []
        conflicts: Set[Occurrence] = set()
        for p in model.static_candidates(occ.requirement_id):
            blocked = model.blockers(occ, p, assignment)
            if blocked:
                conflicts |= blocked
            else:
                feasible.append(p)

        weight = self.config.flexibility_weight
        core_first = model.policies.prioritize_core_before
        order = {t: i for i, t in enumerate(req.eligible_teachers)}

        def score(p: Placement):
            demand = sum(
                self._contention[('t', p.teacher_id, s)] + self._contention[('r', p.room_id, s)]
                for s in p.slots
            )
            usage = sum(assignment.slot_usage(s) for s in p.slots)
            total = model.local_penalty(occ, p, assignment) + weight * demand + 0.1 * usage
            rank = model.teachers[p.teacher_id].rank if core_first else 0
            return (round(total, 6), rank, order.get(p.teacher_id, 0), p.sort_key)

        feasible.sort(key=score)
        return _Frame(occ=occ, candidates=feasible, conflicts=conflicts)

    def _advance(self, frame: _Frame, assignment: Assignment) -> bool:
        """Commit the frame's next viable candidate; False when it has none left."""
        while frame.position < len(frame.candidates):
            placement = frame.candidates[frame.position]
            frame.position += 1
            blocked = self.model.blockers(frame.occ, placement, assignment)
            if blocked:
                frame.conflicts |= blocked
                continue
            assignment.place(frame.occ, placement)
            frame.placement = placement
            self._mark_dirty(frame.occ, placement)
            return True
        return False

    def _undo(self, frame: _Frame, assignment: Assignment) -> None:
        if frame.placement is not None:
            assignment.remove(frame.occ)
            self._mark_dirty(frame.occ, frame.placement)
            frame.placement = None

    def _dead_end(self, assignment: Assignment) -> None:
        """
        The top frame ran out of candidates. Jump back to the deepest frame in
        its conflict set and resume there; repeat while resumed frames run dry.
        """
        frame = self._frames[-1]
        while True:
            conflict = {o for o in frame.conflicts if o in self._depth and o != frame.occ}
            self._frames.pop()
            del self._depth[frame.occ]

            if not conflict:
                # Nothing undoable stands in the way: set it aside for this branch
                self._unplaceable[frame.occ] = len(self._frames)
                self._dirty.add(frame.occ.requirement_id)
                logger.debug("[SOLVER] %s is unplaceable at depth %d", frame.occ, len(self._frames))
                return

            self._backtracks += 1
            if self._backtracks > self.config.backtrack_limit:
                self._open.add(frame.occ)
                raise _BudgetExhausted()

            target = max(self._depth[o] for o in conflict)
            while len(self._frames) - 1 > target:
                popped = self._frames.pop()
                self._undo(popped, assignment)
                del self._depth[popped.occ]
                self._open.add(popped.occ)
            for occ, depth in list(self._unplaceable.items()):
                if depth > target:
                    del self._unplaceable[occ]
                    self._open.add(occ)
            self._open.add(frame.occ)

            resumed = self._frames[target]
            self._undo(resumed, assignment)
            resumed.conflicts |= conflict - {resumed.occ}
            if self._advance(resumed, assignment):
                return
            frame = resumed

    def _complete(self, start: Dict[Occurrence, Placement],
                  pending: List[Occurrence]) -> Dict[Occurrence, Placement]:
        """
        Greedy top-up of a partial placement map, no backtracking: the open
        occurrence with the fewest live candidates takes its best-scored one,
        until nothing left has a candidate.
        """
        model = self.model
        partial = Assignment.from_placements(model.requirements, start)
        remaining = [o for o in pending if o not in partial]
        options: Dict[Occurrence, List[Placement]] = {}

        while remaining:
            for occ in remaining:
                if occ not in options:
                    options[occ] = self._open_frame(occ, partial).candidates
            remaining = [o for o in remaining if options[o]]
            if not remaining:
                break
            occ = min(remaining, key=lambda o: (len(options[o]), o))
            placement = options[occ][0]
            if model.blockers(occ, placement, partial):
                del options[occ]
                continue

            partial.place(occ, placement)
            remaining.remove(occ)
            req = model.requirements[occ.requirement_id]
            stale = {req.id}
            stale |= self._touching.get(('t', placement.teacher_id), set())
            stale |= self._touching.get(('r', placement.room_id), set())
            stale |= self._touching.get(('d', req.group.division_id), set())
            for other in remaining:
                if other.requirement_id in stale:
                    options.pop(other, None)
        return partial.snapshot()

    # --------------------------------------------------------------------- #
    # Diagnostics
    # --------------------------------------------------------------------- #
    def _diagnose(self, placements: Dict[Occurrence, Placement], unplaced: List[Occurrence],
                  known: Dict[Occurrence, str], status: SolveStatus) -> Dict[Occurrence, str]:
        model = self.model
        partial = Assignment.from_placements(model.requirements, placements)
        stopped = {
            SolveStatus.TIMED_OUT: "time budget ran out before it was placed",
            SolveStatus.CANCELLED: "run was cancelled before it was placed",
        }.get(status, "backtrack budget ran out before it was placed")

        reasons = {}
        for occ in unplaced:
            if occ in known:
                continue
            static = model.static_candidates(occ.requirement_id)
            if not static:
                reasons[occ] = model.explain(occ.requirement_id)
                continue
            live = model.candidates(occ, partial)
            if live:
                reasons[occ] = stopped
                continue
            kinds = set()
            for p in static:
                for other in model.blockers(occ, p, partial):
                    other_placement = partial.get(other)
                    if other_placement is None:
                        continue
                    if other_placement.teacher_id == p.teacher_id:
                        kinds.add('teacher')
                    if other_placement.room_id == p.room_id:
                        kinds.add('room')
                    if model.requirements[other.requirement_id].group.division_id == \
                            model.requirements[occ.requirement_id].group.division_id:
                        kinds.add('student group')
            reasons[occ] = (
                f"all {len(static)} candidate placements are blocked "
                f"({', '.join(sorted(kinds)) or 'teacher weekly hours'} conflicts)"
            )
        return reasons

    # --------------------------------------------------------------------- #
    # ILP fallback
    # --------------------------------------------------------------------- #
    def _solve_ilp(self, locked: Assignment, pending: List[Occurrence]) -> Optional[Dict[Occurrence, Placement]]:
        """
        Binary variable per (occurrence, candidate placement), at most one per
        occurrence, maximizing the number placed. Pinned placements are fixed.
        """
        model = self.model
        options: Dict[Occurrence, List[Tuple[pulp.LpVariable, Placement]]] = {}
        total = 0
        for occ in pending:
            options[occ] = [(None, p) for p in model.candidates(occ, locked)]
            total += len(options[occ])
        if total == 0:
            return None
        if total > self.config.ilp_max_variables:
            logger.warning("[ILP] %d variables exceed the limit of %d; skipping fallback",
                           total, self.config.ilp_max_variables)
            return None

        problem = pulp.LpProblem("TimetableFallback", pulp.LpMaximize)
        teacher_slot = defaultdict(list)
        room_slot = defaultdict(list)
        group_slot = defaultdict(list)
        teacher_load = defaultdict(list)
        all_vars = []

        for i, occ in enumerate(sorted(options)):
            req = model.requirements[occ.requirement_id]
            views = model.views(req)
            made = []
            for j, (_, p) in enumerate(options[occ]):
                var = pulp.LpVariable(f"x_{i}_{j}", cat="Binary")
                made.append((var, p))
                all_vars.append(var)
                for slot in p.slots:
                    teacher_slot[(p.teacher_id, slot)].append(var)
                    room_slot[(p.room_id, slot)].append(var)
                    for view in views:
                        group_slot[(view, slot)].append(var)
                    if not req.group.parallel_batches:
                        group_slot[(req.group.division_id, '*', slot)].append(var)
                teacher_load[p.teacher_id].append(req.duration * var)
            options[occ] = made
            if made:
                problem += pulp.lpSum(v for v, _ in made) <= 1, f"occ_{i}"

        for n, vars_list in enumerate(teacher_slot.values()):
            if len(vars_list) > 1:
                problem += pulp.lpSum(vars_list) <= 1, f"teacher_slot_{n}"
        for n, vars_list in enumerate(room_slot.values()):
            if len(vars_list) > 1:
                problem += pulp.lpSum(vars_list) <= 1, f"room_slot_{n}"
        for n, vars_list in enumerate(group_slot.values()):
            if len(vars_list) > 1:
                problem += pulp.lpSum(vars_list) <= 1, f"group_slot_{n}"
        for n, (teacher_id, terms) in enumerate(sorted(teacher_load.items(), key=lambda kv: kv[0])):
            remaining = model.teachers[teacher_id].max_minutes_per_week - locked.teacher_minutes(teacher_id)
            problem += pulp.lpSum(terms) <= remaining, f"teacher_minutes_{n}"

        problem += pulp.lpSum(all_vars)

        logger.info("[ILP] Solving fallback with %d variables", len(all_vars))
        solver = pulp.PULP_CBC_CMD(msg=0, timeLimit=self.config.ilp_time_limit, threads=2)
        try:
            status = problem.solve(solver)
        except pulp.PulpSolverError as e:
            logger.warning("[ILP] Solver unavailable: %s", e)
            return None
        if status != pulp.LpStatusOptimal:
            logger.warning("[ILP] Fallback failed with status: %s", pulp.LpStatus[status])
            return None

        result = locked.copy()
        for occ in sorted(options):
            for var, p in options[occ]:
                if pulp.value(var) is not None and pulp.value(var) > 0.5:
                    if model.is_hard_feasible(occ, p, result):
                        result.place(occ, p)
                    else:
                        logger.warning("[ILP] Dropping %s: chosen placement is not hard-feasible", occ)
                    break
        return result.snapshot()
