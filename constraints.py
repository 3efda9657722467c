"""
Constraint model.

Hard constraints decide whether a placement may exist at all; soft
constraints add weighted penalties to a complete or partial assignment.

Hard:
    1. Teacher teaches at most one session per slot
    2. Room hosts at most one session per slot
    3. A division and its batches never share a slot (parallel batches excepted)
    4. Room capacity (with buffer), required features and lab capability
    5. Teacher and room availability cover the whole block
    6. Teacher weekly minutes stay within maxHoursPerWeek

Soft (weights in config.SoftWeights):
    consecutive / daily hours, breaks, back-to-back labs, first/last period,
    morning labs, Friday afternoon, workload balance, subjects per day,
    similar subjects, teacher continuity, core before visiting, room
    utilization, teacher preferences, same-day repeats
"""
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple

from assignment import Assignment
from config import SoftWeights
from domain import (
    NormalizedInput,
    Occurrence,
    Placement,
    Room,
    SessionRequirement,
    Weekday,
    minutes,
)
from models import PolicySnapshot
from normalizer import room_fits
from timeslots import SlotGrid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SoftPenalty:
    kind: str
    amount: float
    entities: Tuple[str, ...]
    message: str
    occurrences: Tuple[Occurrence, ...] = ()


Row = Tuple[Occurrence, SessionRequirement, Placement]


class ConstraintModel:
    def __init__(self, grid: SlotGrid, data: NormalizedInput, policy: PolicySnapshot,
                 weights: Optional[SoftWeights] = None):
        self.grid = grid
        self.data = data
        self.requirements = data.requirements
        self.teachers = data.teachers
        self.rooms = data.rooms
        self.policies = policy.general_policies
        self.rules = policy.constraint_rules
        self.weights = weights or SoftWeights()

        self._static: Dict[str, List[Placement]] = {}
        self._static_sets: Dict[str, Set[Placement]] = {}

        batches = defaultdict(list)
        for group in data.groups.values():
            if group.is_batch:
                batches[group.division_id].append(group.id)
        self._division_views = {div: tuple(sorted(ids)) for div, ids in batches.items()}

    # --------------------------------------------------------------------- #
    # Static domain
    # --------------------------------------------------------------------- #
    def capable_rooms(self, req: SessionRequirement) -> List[Room]:
        """Rooms passing capacity/features/lab checks, smallest first."""
        rooms = [
            r for r in self.rooms.values()
            if room_fits(r, req.group.size, req.min_room_capacity, req.required_features,
                         req.requires_lab, self.policies.min_room_capacity_buffer)
        ]
        return sorted(rooms, key=lambda r: (r.capacity, r.id))

    def static_candidates(self, requirement_id: str) -> List[Placement]:
        """
        Every placement that satisfies the time-independent hard constraints:
        contiguous block, eligible teacher available for the whole block,
        capable room available for the whole block.
        """
        if requirement_id in self._static:
            return self._static[requirement_id]

        req = self.requirements[requirement_id]
        rooms = self.capable_rooms(req)
        teachers = [
            self.teachers[t] for t in req.eligible_teachers
            if t in self.teachers and self.teachers[t].max_minutes_per_week >= req.duration
        ]
        result = []
        for block in self.grid.blocks(req.span):
            day, start, end = block[0].day, block[0].start, block[-1].end
            for teacher in teachers:
                if not teacher.is_available(day, start, end):
                    continue
                for room in rooms:
                    if room.is_available(day, start, end):
                        result.append(Placement(block, room.id, teacher.id))

        self._static[requirement_id] = result
        self._static_sets[requirement_id] = set(result)
        return result

    def explain(self, requirement_id: str) -> str:
        """Why a requirement has no static candidate (or how many it has)."""
        req = self.requirements[requirement_id]
        if self.static_candidates(requirement_id):
            return f"{len(self._static[requirement_id])} candidate placements"
        teachers = [self.teachers[t] for t in req.eligible_teachers if t in self.teachers]
        if not any(t.max_minutes_per_week >= req.duration for t in teachers):
            return "no eligible teacher has enough weekly hours for one session"
        if not self.capable_rooms(req):
            return "no room satisfies capacity, features and lab requirements"
        blocks = self.grid.blocks(req.span)
        if not blocks:
            return f"no block of {req.span} contiguous periods exists"
        if not any(t.is_available(b[0].day, b[0].start, b[-1].end) for b in blocks for t in teachers):
            return f"no eligible teacher is available for any {req.span}-period block"
        return "no capable room is available while an eligible teacher is"

    # --------------------------------------------------------------------- #
    # Hard constraints
    # --------------------------------------------------------------------- #
    def blockers(self, occ: Occurrence, placement: Placement, partial: Assignment) -> Set[Occurrence]:
        """
        Placed occurrences that prevent `placement` for `occ`.

        Static checks are not covered here (see static_candidates); an empty
        result only means no other placement is in the way.
        """
        req = self.requirements[occ.requirement_id]
        conflicts: Set[Occurrence] = set()
        for slot in placement.slots:
            other = partial.teacher_at(placement.teacher_id, slot)
            if other is not None and other != occ:
                conflicts.add(other)
            other = partial.room_at(placement.room_id, slot)
            if other is not None and other != occ:
                conflicts.add(other)
            for other in partial.division_at(req.group.division_id, slot):
                if other != occ and self.requirements[other.requirement_id].group.conflicts_with(req.group):
                    conflicts.add(other)

        teacher = self.teachers[placement.teacher_id]
        used = partial.teacher_minutes(teacher.id)
        current = partial.get(occ)
        if current is not None and current.teacher_id == teacher.id:
            used -= req.duration
        if used + req.duration > teacher.max_minutes_per_week:
            conflicts |= {o for o in partial.teacher_occurrences(teacher.id) if o != occ}
        return conflicts

    def is_static_feasible(self, occ: Occurrence, placement: Placement) -> bool:
        req = self.requirements.get(occ.requirement_id)
        if req is None or not 0 <= occ.index < req.sessions_per_week:
            return False
        self.static_candidates(req.id)
        return placement in self._static_sets[req.id]

    def is_hard_feasible(self, occ: Occurrence, placement: Placement, partial: Assignment) -> bool:
        """True if `occ` may take `placement` given everything else in `partial`."""
        return self.is_static_feasible(occ, placement) and not self.blockers(occ, placement, partial)

    def candidates(self, occ: Occurrence, partial: Assignment) -> List[Placement]:
        return [
            p for p in self.static_candidates(occ.requirement_id)
            if not self.blockers(occ, p, partial)
        ]

    # --------------------------------------------------------------------- #
    # Soft constraints
    # --------------------------------------------------------------------- #
    def soft_score(self, assignment: Assignment) -> float:
        """Total weighted penalty; lower is better."""
        return sum(p.amount for p in self.soft_penalties(assignment))

    def soft_breakdown(self, assignment: Assignment) -> Dict[str, float]:
        totals: Dict[str, float] = defaultdict(float)
        for penalty in self.soft_penalties(assignment):
            totals[penalty.kind] += penalty.amount
        return {kind: round(amount, 4) for kind, amount in sorted(totals.items())}

    def local_penalty(self, occ: Occurrence, placement: Placement, partial: Assignment) -> float:
        """Soft cost of adding one placement to a partial assignment (greedy ordering)."""
        req = self.requirements[occ.requirement_id]
        w = self.weights
        cost = sum(p.amount for p in self._placement_penalties(occ, req, placement))

        same_day = 0
        other_teachers = set()
        for i in range(req.sessions_per_week):
            other = Occurrence(req.id, i)
            if other == occ:
                continue
            p = partial.get(other)
            if p is None:
                continue
            if p.day == placement.day:
                same_day += 1
            other_teachers.add(p.teacher_id)
        cost += w.same_day_repeat * same_day
        if self.rules.maintain_teacher_continuity and other_teachers - {placement.teacher_id}:
            cost += w.teacher_continuity

        day_minutes = req.duration
        for other in partial.teacher_occurrences(placement.teacher_id):
            p = partial.get(other)
            if p.day == placement.day and other != occ:
                day_minutes += self.requirements[other.requirement_id].duration
        excess = day_minutes - self.policies.max_teaching_hours_per_day * 60
        if excess > 0:
            cost += w.daily_hours * min(excess, req.duration) / 60.0
        return cost

    def soft_penalties(self, assignment: Assignment) -> Iterator[SoftPenalty]:
        teacher_days: Dict[Tuple[str, Weekday], List[Row]] = defaultdict(list)
        view_days: Dict[Tuple[str, Weekday], List[Row]] = defaultdict(list)
        req_rows: Dict[str, List[Row]] = defaultdict(list)
        teacher_daily: Dict[str, Dict[Weekday, int]] = defaultdict(lambda: defaultdict(int))
        room_slots: Dict[str, int] = defaultdict(int)

        for occ, placement in assignment.items():
            req = self.requirements[occ.requirement_id]
            row = (occ, req, placement)
            teacher_days[(placement.teacher_id, placement.day)].append(row)
            for view in self.views(req):
                view_days[(view, placement.day)].append(row)
            req_rows[req.id].append(row)
            teacher_daily[placement.teacher_id][placement.day] += req.duration
            room_slots[placement.room_id] += len(placement.slots)
            yield from self._placement_penalties(occ, req, placement)

        for (teacher_id, day), rows in sorted(teacher_days.items()):
            rows.sort(key=lambda r: r[2].first_index)
            yield from self._day_penalties(teacher_id, day, rows, self.policies.max_teaching_hours_per_day)
            yield from self._break_penalties(teacher_id, day, rows)
        for (view, day), rows in sorted(view_days.items()):
            rows.sort(key=lambda r: r[2].first_index)
            yield from self._day_penalties(view, day, rows, self.policies.max_daily_hours)
            yield from self._group_day_penalties(view, day, rows)
            yield from self._break_penalties(view, day, rows)
        yield from self._requirement_penalties(req_rows)
        yield from self._workload_penalties(teacher_daily)
        yield from self._utilization_penalties(room_slots)

    # ----- helpers ----- #
    def views(self, req: SessionRequirement) -> Tuple[str, ...]:
        """Student timelines an occurrence appears on: its batch, or every batch of its division."""
        group = req.group
        if group.is_batch:
            return (group.id,)
        return self._division_views.get(group.division_id, (group.division_id,))

    def _penalty(self, kind: str, amount: float, entities, message: str, occurrences=()) -> Optional[SoftPenalty]:
        if amount <= 0:
            return None
        return SoftPenalty(kind, amount, tuple(entities), message, tuple(occurrences))

    def _placement_penalties(self, occ: Occurrence, req: SessionRequirement,
                             p: Placement) -> Iterator[SoftPenalty]:
        w = self.weights
        found = []
        if self.policies.avoid_first_last_period:
            if self.grid.is_first(p.slots[0]) or self.grid.is_last(p.slots[-1]):
                found.append(self._penalty('first_last_period', w.first_last_period, (req.group.id,),
                                           f"{occ} uses the first or last period on {p.day.value}", (occ,)))
        if self.rules.prefer_morning_labs and req.is_lab and p.start >= self.grid.afternoon_start:
            found.append(self._penalty('morning_labs', w.morning_labs, (req.group.id,),
                                       f"Lab {occ} runs in the afternoon", (occ,)))
        if self.rules.avoid_friday_afternoon and p.day == Weekday.FRIDAY and p.end > self.grid.afternoon_start:
            found.append(self._penalty('friday_afternoon', w.friday_afternoon, (req.group.id,),
                                       f"{occ} runs on Friday afternoon", (occ,)))

        teacher = self.teachers.get(p.teacher_id)
        if teacher is not None and self.policies.prioritize_core_before:
            best = min((self.teachers[t].rank for t in req.eligible_teachers if t in self.teachers),
                       default=teacher.rank)
            found.append(self._penalty('core_priority', w.core_priority * (teacher.rank - best), (teacher.id,),
                                       f"{occ} taught by {teacher.teacher_type.value} teacher while a "
                                       f"higher priority teacher is eligible", (occ,)))
        if teacher is not None and self.policies.prioritize_teacher_preferences:
            if any(day == p.day and window.overlaps(p.start, p.end) for day, window in teacher.avoid_windows):
                found.append(self._penalty('teacher_preferences', w.teacher_preferences, (teacher.id,),
                                           f"{occ} falls in a window {teacher.name} asked to avoid", (occ,)))
            elif teacher.preferred_windows and not any(
                    day == p.day and window.covers(p.start, p.end) for day, window in teacher.preferred_windows):
                found.append(self._penalty('teacher_preferences', w.teacher_preferences * 0.5, (teacher.id,),
                                           f"{occ} is outside {teacher.name}'s preferred windows", (occ,)))
        return (f for f in found if f is not None)

    def _runs(self, rows: List[Row]) -> List[Tuple[int, List[Occurrence]]]:
        runs = []
        prev: Optional[Placement] = None
        for occ, req, p in rows:
            if prev is not None and self.grid.is_contiguous(prev.slots[-1], p.slots[0]):
                total, members = runs[-1]
                runs[-1] = (total + req.duration, members + [occ])
            else:
                runs.append((req.duration, [occ]))
            prev = p
        return runs

    def _day_penalties(self, entity: str, day: Weekday, rows: List[Row], max_daily_hours: float):
        w = self.weights
        limit = self.policies.max_consecutive_hours * 60
        for run_minutes, members in self._runs(rows):
            penalty = self._penalty('consecutive_hours', w.consecutive_hours * (run_minutes - limit) / 60.0,
                                    (entity,), f"{entity} has {run_minutes / 60:.1f}h back to back on {day.value}",
                                    members)
            if penalty:
                yield penalty

        total = sum(req.duration for _, req, _ in rows)
        penalty = self._penalty('daily_hours', w.daily_hours * (total - max_daily_hours * 60) / 60.0,
                                (entity,), f"{entity} has {total / 60:.1f}h on {day.value}",
                                [occ for occ, _, _ in rows])
        if penalty:
            yield penalty

    def _break_penalties(self, entity: str, day: Weekday, rows: List[Row]):
        min_break = self.policies.min_break_between_sessions
        if min_break <= 0:
            return
        for (occ_a, _, a), (occ_b, _, b) in zip(rows, rows[1:]):
            gap = minutes(b.start) - minutes(a.end)
            if 0 <= gap < min_break:
                yield SoftPenalty('min_break', self.weights.min_break * (min_break - gap) / min_break,
                                  (entity,), f"{entity} has a {gap} min break on {day.value}",
                                  (occ_a, occ_b))

    def _group_day_penalties(self, view: str, day: Weekday, rows: List[Row]):
        w = self.weights
        if not self.policies.allow_back_to_back_labs:
            for (occ_a, req_a, a), (occ_b, req_b, b) in zip(rows, rows[1:]):
                if req_a.is_lab and req_b.is_lab and self.grid.is_contiguous(a.slots[-1], b.slots[0]):
                    penalty = self._penalty('back_to_back_labs', w.back_to_back_labs, (view,),
                                            f"{view} has back-to-back labs on {day.value}", (occ_a, occ_b))
                    if penalty:
                        yield penalty

        courses = {req.course_id for _, req, _ in rows}
        penalty = self._penalty('subjects_per_day', w.subjects_per_day * (len(courses) - self.rules.max_subjects_per_day),
                                (view,), f"{view} has {len(courses)} subjects on {day.value}",
                                [occ for occ, _, _ in rows])
        if penalty:
            yield penalty

        if self.rules.group_similar_subjects:
            changes = sum(1 for (_, a, _), (_, b, _) in zip(rows, rows[1:]) if a.department != b.department)
            penalty = self._penalty('similar_subjects', w.similar_subjects * changes, (view,),
                                    f"{view} switches department {changes} times on {day.value}")
            if penalty:
                yield penalty

    def _requirement_penalties(self, req_rows: Dict[str, List[Row]]):
        w = self.weights
        for req_id, rows in sorted(req_rows.items()):
            per_day = Counter(p.day for _, _, p in rows)
            for day, count in sorted(per_day.items()):
                penalty = self._penalty('same_day_repeat', w.same_day_repeat * (count - 1), (req_id,),
                                        f"{req_id} meets {count} times on {day.value}",
                                        [occ for occ, _, p in rows if p.day == day])
                if penalty:
                    yield penalty
            if self.rules.maintain_teacher_continuity:
                teachers = {p.teacher_id for _, _, p in rows}
                penalty = self._penalty('teacher_continuity', w.teacher_continuity * (len(teachers) - 1),
                                        (req_id,) + tuple(sorted(teachers)),
                                        f"{req_id} is split across {len(teachers)} teachers")
                if penalty:
                    yield penalty

    def _workload_penalties(self, teacher_daily: Dict[str, Dict[Weekday, int]]):
        if not self.rules.balance_workload or not self.grid.days:
            return
        for teacher_id, per_day in sorted(teacher_daily.items()):
            loads = [per_day.get(day, 0) / 60.0 for day in self.grid.days]
            mean = sum(loads) / len(loads)
            variance = sum((x - mean) ** 2 for x in loads) / len(loads)
            penalty = self._penalty('balance_workload', self.weights.balance_workload * variance, (teacher_id,),
                                    f"{teacher_id} daily load variance {variance:.2f}")
            if penalty:
                yield penalty

    def _utilization_penalties(self, room_slots: Dict[str, int]):
        total = len(self.grid)
        if not total:
            return
        target = self.policies.preferred_classroom_utilization
        for room_id in sorted(self.rooms):
            used = room_slots.get(room_id, 0)
            occupancy = used / total * 100
            penalty = self._penalty('room_utilization',
                                    self.weights.room_utilization * abs(occupancy - target) / 100.0,
                                    (room_id,), f"{room_id} is {occupancy:.0f}% occupied (target {target:.0f}%)")
            if penalty:
                yield penalty
