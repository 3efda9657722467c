"""
Validator & reporter.

Re-checks a finished timetable from its raw placements only (no solver
indexes), scores it, and renders per-division / per-teacher / per-room views.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from assignment import Assignment
from constraints import ConstraintModel
from domain import ConstraintViolation, Occurrence, Placement, Severity, format_time
from errors import DataError, HardConstraintViolation

logger = logging.getLogger(__name__)

COMPLETE = 'Complete'
PARTIAL = 'Partial'


@dataclass
class ScheduleReport:
    status: str
    violations: List[ConstraintViolation] = field(default_factory=list)
    unplaced: List[Occurrence] = field(default_factory=list)
    unplaced_reasons: Dict[Occurrence, str] = field(default_factory=dict)
    soft_score: float = 0.0
    soft_breakdown: Dict[str, float] = field(default_factory=dict)
    data_errors: List[DataError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    teacher_hours: Dict[str, float] = field(default_factory=dict)

    @property
    def hard_violations(self) -> List[ConstraintViolation]:
        return [v for v in self.violations if v.severity == Severity.HARD]

    @property
    def soft_violations(self) -> List[ConstraintViolation]:
        return [v for v in self.violations if v.severity == Severity.SOFT]

    @property
    def is_valid(self) -> bool:
        return not self.hard_violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'soft_score': round(self.soft_score, 4),
            'soft_breakdown': dict(self.soft_breakdown),
            'violations': [v.to_dict() for v in self.violations],
            'unplaced': [
                {'occurrence': str(o), 'reason': self.unplaced_reasons.get(o, '')}
                for o in self.unplaced
            ],
            'data_errors': [e.to_dict() for e in self.data_errors],
            'warnings': list(self.warnings),
            'teacher_hours': dict(self.teacher_hours),
        }


def ensure_valid(report: ScheduleReport) -> ScheduleReport:
    """Raise HardConstraintViolation if the report holds any hard violation."""
    hard = report.hard_violations
    if hard:
        kinds = sorted({v.kind for v in hard})
        raise HardConstraintViolation(
            f"{len(hard)} hard constraint violation(s): {', '.join(kinds)}", report=report
        )
    return report


class ScheduleValidator:
    def __init__(self, model: ConstraintModel, overwork_threshold: float = 40.0):
        self.model = model
        self.grid = model.grid
        self.requirements = model.requirements
        self.teachers = model.teachers
        self.rooms = model.rooms
        self.overwork_threshold = overwork_threshold

    # --------------------------------------------------------------------- #
    # Validation
    # --------------------------------------------------------------------- #
    def validate(self, placements: Mapping[Occurrence, Placement],
                 data_errors: Iterable[DataError] = (), warnings: Iterable[str] = (),
                 reasons: Optional[Mapping[Occurrence, str]] = None) -> ScheduleReport:
        """
        Check every hard constraint and compute the soft score.

        Deterministic: the same placements always give the same report.
        """
        hard = self.hard_violations(placements)
        known = {o: p for o, p in placements.items() if self._known(o) and p.slots}

        assignment = Assignment.from_placements(self.requirements, known)
        soft = [
            ConstraintViolation(
                kind=p.kind, severity=Severity.SOFT, message=p.message,
                involved_entities=p.entities, occurrences=p.occurrences, penalty=p.amount,
            )
            for p in self.model.soft_penalties(assignment)
        ]
        breakdown = self.model.soft_breakdown(assignment)

        expected = self.model.data.occurrences()
        unplaced = [o for o in expected if o not in placements]
        data_errors = list(data_errors)
        hours = self.teacher_hours(known)

        report = ScheduleReport(
            status=COMPLETE if not unplaced and not data_errors else PARTIAL,
            violations=sorted(hard, key=lambda v: v.sort_key) + sorted(soft, key=lambda v: v.sort_key),
            unplaced=unplaced,
            unplaced_reasons={o: (reasons or {}).get(o, 'not placed') for o in unplaced},
            soft_score=sum(v.penalty for v in soft),
            soft_breakdown=breakdown,
            data_errors=data_errors,
            warnings=list(warnings) + self._detect_overwork(hours),
            teacher_hours=hours,
        )
        if hard:
            logger.error("[VALIDATE] %d hard violations found", len(hard))
        logger.info("[VALIDATE] %s: %d placed, %d unplaced, soft score %.3f",
                    report.status, len(known), len(unplaced), report.soft_score)
        return report

    def _known(self, occ: Occurrence) -> bool:
        req = self.requirements.get(occ.requirement_id)
        return req is not None and 0 <= occ.index < req.sessions_per_week

    def hard_violations(self, placements: Mapping[Occurrence, Placement]) -> List[ConstraintViolation]:
        violations: List[ConstraintViolation] = []

        def hard(kind, message, entities, occurrences):
            violations.append(ConstraintViolation(kind, Severity.HARD, message, tuple(entities), tuple(occurrences)))

        teacher_slots: Dict[Tuple[str, str, int], List[Occurrence]] = defaultdict(list)
        room_slots: Dict[Tuple[str, str, int], List[Occurrence]] = defaultdict(list)
        division_slots: Dict[Tuple[str, str, int], List[Occurrence]] = defaultdict(list)
        teacher_minutes: Dict[str, int] = defaultdict(int)
        grid_slots = {(s.day, s.index): s for s in self.grid.slots}
        buffer = self.model.policies.min_room_capacity_buffer

        for occ in sorted(placements):
            p = placements[occ]
            if not self._known(occ):
                hard('unknown_occurrence', f"{occ} does not belong to any requirement", (occ.requirement_id,), (occ,))
                continue
            req = self.requirements[occ.requirement_id]

            if len(p.slots) != req.span or any(grid_slots.get((s.day, s.index)) != s for s in p.slots) or \
                    not all(self.grid.is_contiguous(a, b) for a, b in zip(p.slots, p.slots[1:])):
                hard('invalid_block', f"{occ} is not on {req.span} contiguous grid periods", (req.group.id,), (occ,))
                if not p.slots:
                    continue

            teacher = self.teachers.get(p.teacher_id)
            if teacher is None or p.teacher_id not in req.eligible_teachers:
                hard('ineligible_teacher', f"{p.teacher_id} cannot teach {occ}", (p.teacher_id,), (occ,))
            elif not teacher.is_available(p.day, p.start, p.end):
                hard('teacher_availability',
                     f"{teacher.name} is unavailable {p.day.value} {format_time(p.start)}-{format_time(p.end)}",
                     (teacher.id,), (occ,))

            room = self.rooms.get(p.room_id)
            if room is None:
                hard('unknown_room', f"{occ} uses unknown room {p.room_id}", (p.room_id,), (occ,))
            else:
                usable = room.capacity * (1 - buffer / 100.0)
                if room.capacity < req.min_room_capacity or usable < req.group.size:
                    hard('room_capacity',
                         f"{room.name} ({room.capacity} seats) is too small for {req.group.id} ({req.group.size})",
                         (room.id, req.group.id), (occ,))
                missing = set(req.required_features) - set(room.features)
                if missing:
                    hard('room_features', f"{room.name} lacks {', '.join(sorted(missing))} for {occ}",
                         (room.id,), (occ,))
                if req.requires_lab and not room.is_lab:
                    hard('lab_required', f"{occ} requires a lab but {room.name} is not one", (room.id,), (occ,))
                if not room.is_available(p.day, p.start, p.end):
                    hard('room_availability', f"{room.name} is unavailable for {occ}", (room.id,), (occ,))

            for s in p.slots:
                key = (s.day.value, s.index)
                teacher_slots[(p.teacher_id,) + key].append(occ)
                room_slots[(p.room_id,) + key].append(occ)
                division_slots[(req.group.division_id,) + key].append(occ)
            teacher_minutes[p.teacher_id] += req.duration

        for (teacher_id, day, index), occs in sorted(teacher_slots.items()):
            if len(occs) > 1:
                hard('teacher_double_booking', f"{teacher_id} has {len(occs)} sessions on {day} P{index + 1}",
                     (teacher_id,), occs)
        for (room_id, day, index), occs in sorted(room_slots.items()):
            if len(occs) > 1:
                hard('room_double_booking', f"{room_id} hosts {len(occs)} sessions on {day} P{index + 1}",
                     (room_id,), occs)
        for (division_id, day, index), occs in sorted(division_slots.items()):
            for i, a in enumerate(occs):
                for b in occs[i + 1:]:
                    ga = self.requirements[a.requirement_id].group
                    gb = self.requirements[b.requirement_id].group
                    if ga.conflicts_with(gb):
                        hard('student_group_conflict', f"{ga.id} and {gb.id} overlap on {day} P{index + 1}",
                             (ga.id, gb.id), (a, b))
        for teacher_id, total in sorted(teacher_minutes.items()):
            teacher = self.teachers.get(teacher_id)
            if teacher is not None and total > teacher.max_minutes_per_week:
                hard('teacher_weekly_hours',
                     f"{teacher.name} teaches {total / 60:.1f}h, above {teacher.max_minutes_per_week / 60:.1f}h",
                     (teacher_id,), ())
        return violations

    # --------------------------------------------------------------------- #
    # Reporting
    # --------------------------------------------------------------------- #
    def teacher_hours(self, placements: Mapping[Occurrence, Placement]) -> Dict[str, float]:
        minutes_by_teacher: Dict[str, int] = defaultdict(int)
        for occ, p in placements.items():
            minutes_by_teacher[p.teacher_id] += self.requirements[occ.requirement_id].duration
        return {t: round(m / 60.0, 2) for t, m in sorted(minutes_by_teacher.items())}

    def _detect_overwork(self, hours: Dict[str, float]) -> List[str]:
        """Alert on teachers at or above the weekly overwork threshold."""
        warnings = []
        for teacher_id, total in hours.items():
            if total >= self.overwork_threshold:
                teacher = self.teachers.get(teacher_id)
                name = teacher.name if teacher else teacher_id
                warnings.append(
                    f"🚨 OVERWORK ALERT: {name} assigned {total:g} hours/week "
                    f"(threshold: {self.overwork_threshold:g}h) - Review workload!"
                )
        return warnings

    def _entry(self, occ: Occurrence, p: Placement) -> Dict[str, Any]:
        req = self.requirements[occ.requirement_id]
        return {
            'occurrence': str(occ),
            'period': p.first_index + 1,
            'periods': len(p.slots),
            'time': f"{format_time(p.start)}-{format_time(p.end)}",
            'course_id': req.course_id,
            'course': req.course_code,
            'session_type': req.session_type.value,
            'group': req.group.id,
            'teacher_id': p.teacher_id,
            'room_id': p.room_id,
            'is_lab': req.is_lab,
        }

    def _view(self, placements: Mapping[Occurrence, Placement], key_fn) -> Dict[str, Dict[str, List[Dict]]]:
        schedules = defaultdict(lambda: defaultdict(list))
        for occ, p in placements.items():
            if not self._known(occ):
                continue
            for key in key_fn(occ, p):
                schedules[key][p.day.value].append(self._entry(occ, p))
        for key in schedules:
            for day in schedules[key]:
                schedules[key][day].sort(key=lambda e: (e['period'], e['group']))
        return {k: dict(v) for k, v in sorted(schedules.items())}

    def by_teacher(self, placements):
        return self._view(placements, lambda occ, p: [p.teacher_id])

    def by_room(self, placements):
        return self._view(placements, lambda occ, p: [p.room_id])

    def by_division(self, placements):
        return self._view(placements, lambda occ, p: [self.requirements[occ.requirement_id].group.division_id])

    def to_records(self, placements: Mapping[Occurrence, Placement]) -> List[Dict[str, Any]]:
        """Flat rows for export, one per occurrence, in day/period order."""
        pinned = self.model.data.pinned
        rows = []
        for occ in sorted(placements, key=lambda o: (placements[o].sort_key, o)):
            if not self._known(occ):
                continue
            p = placements[occ]
            req = self.requirements[occ.requirement_id]
            rows.append({
                'course_id': req.course_id,
                'course_code': req.course_code,
                'session_type': req.session_type.value,
                'division_id': req.group.division_id,
                'batch_id': req.group.batch_id,
                'day': p.day.value,
                'start_time': format_time(p.start),
                'end_time': format_time(p.end),
                'teacher_id': p.teacher_id,
                'room_id': p.room_id,
                'is_locked': pinned.get(occ) == p,
            })
        return rows
