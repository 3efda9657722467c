"""
Domain normalizer: snapshot records -> session requirements.

Each active course expands into one SessionRequirement per session type with
sessions to place, per division taking the course. Practical sessions of a
division with lab batches are split per batch so batches can run in parallel.
Problems are reported as DataError per offending course; other courses carry on.
"""
import logging
from typing import Any, Dict, List, Mapping, Tuple, Union

from domain import (
    NormalizedInput,
    Occurrence,
    Placement,
    Room,
    SessionRequirement,
    SessionType,
    StudentGroup,
    Teacher,
    TimeWindow,
    Weekday,
)
from errors import DataError
from models import (
    CourseRecord,
    DivisionRecord,
    GeneralPolicies,
    PinnedEntryRecord,
    RoomRecord,
    ScheduleSnapshot,
    SessionRecord,
    TeacherRecord,
    parse_snapshot,
)
from timeslots import SlotGrid

logger = logging.getLogger(__name__)

COURSE_PRIORITY = {'critical': 0, 'high': 1, 'medium': 2, 'low': 3}


def requirement_id(course_id: str, session_type: SessionType, group: StudentGroup) -> str:
    return f"{course_id}:{session_type.value.lower()}:{group.id}"


def room_fits(room: Room, group_size: int, min_capacity: int, features, requires_lab: bool,
              buffer_percent: float) -> bool:
    """Capacity (with buffer), features and lab capability check for one room."""
    if room.capacity < min_capacity:
        return False
    if room.capacity * (1 - buffer_percent / 100.0) < group_size:
        return False
    if not set(features).issubset(room.features):
        return False
    if requires_lab and not room.is_lab:
        return False
    return True


# --------------------------------------------------------------------- #
# Entity conversion
# --------------------------------------------------------------------- #
def _build_teacher(record: TeacherRecord) -> Teacher:
    availability = {
        day: TimeWindow(a.start_time, a.end_time)
        for day, a in record.availability.items()
        if a.available
    }
    prefs = record.preferences
    return Teacher(
        id=record.id,
        name=record.name or record.id,
        max_minutes_per_week=int(round(record.max_hours_per_week * 60)),
        availability=availability,
        teacher_type=record.teacher_type,
        preferred_windows=tuple((w.day, TimeWindow(w.start_time, w.end_time)) for w in prefs.preferred_time_slots),
        avoid_windows=tuple((w.day, TimeWindow(w.start_time, w.end_time)) for w in prefs.avoid_time_slots),
    )


def _build_room(record: RoomRecord) -> Room:
    availability = None
    if record.availability is not None:
        availability = {
            day: TimeWindow(a.start_time, a.end_time)
            for day, a in record.availability.items()
            if a.available
        }
    return Room(
        id=record.id,
        name=record.name or record.id,
        capacity=record.capacity,
        features=frozenset(f.strip().lower() for f in record.features if f.strip()),
        type=record.type,
        availability=availability,
    )


def _split_batches(division: DivisionRecord) -> List[Tuple[str, int]]:
    """Explicit batches win; otherwise `lab_batches` even splits of the headcount."""
    if division.batches:
        return [(b.id, b.student_count) for b in division.batches]
    n = division.lab_batches
    if n <= 0:
        return []
    base, extra = divmod(division.student_count, n)
    batches = []
    for i in range(n):
        size = base + (1 if i < extra else 0)
        if size > 0:
            batches.append((f"B{i + 1}", size))
    return batches


def _build_groups(division: DivisionRecord) -> Tuple[StudentGroup, List[StudentGroup]]:
    whole = StudentGroup(
        division_id=division.id,
        size=division.student_count,
        parallel_batches=division.parallel_batches,
    )
    batches = [
        StudentGroup(
            division_id=division.id,
            size=size,
            batch_id=batch_id,
            parallel_batches=division.parallel_batches,
        )
        for batch_id, size in _split_batches(division)
    ]
    return whole, batches


def _divisions_for_course(course: CourseRecord, divisions: List[DivisionRecord]) -> List[DivisionRecord]:
    """
    Explicit division ids win. Otherwise match on Program -> Year -> Semester,
    accepting divisions that leave a field unset.
    """
    if course.division_ids:
        by_id = {d.id: d for d in divisions}
        return [by_id[d] for d in course.division_ids if d in by_id]

    if not (course.program or course.year or course.semester):
        return list(divisions)

    eligible = []
    for division in divisions:
        if course.program and division.program:
            if course.program.strip().lower() != division.program.strip().lower():
                continue
        if course.year is not None and division.year is not None:
            if int(course.year) != int(division.year):
                continue
        if course.semester is not None and division.semester is not None:
            if int(course.semester) != int(division.semester):
                continue
        eligible.append(division)
    return eligible


def _eligible_teachers(course: CourseRecord, session_type: SessionType,
                       teachers: Dict[str, Teacher]) -> List[str]:
    """
    Teachers assigned to this session type, ordered Core -> Visiting, primary first.
    An assignment with no session types listed covers every type.
    """
    ranked = []
    for position, assigned in enumerate(course.assigned_teachers):
        if assigned.session_types and session_type not in assigned.session_types:
            continue
        teacher = teachers.get(assigned.teacher_id)
        if teacher is None:
            continue
        ranked.append((teacher.rank, 0 if assigned.is_primary else 1, position, teacher.id))
    ranked.sort()
    seen = []
    for *_, teacher_id in ranked:
        if teacher_id not in seen:
            seen.append(teacher_id)
    return seen


# --------------------------------------------------------------------- #
# Course expansion
# --------------------------------------------------------------------- #
class _CourseExpander:
    def __init__(self, grid: SlotGrid, teachers: Dict[str, Teacher], rooms: Dict[str, Room],
                 groups: Dict[str, Tuple[StudentGroup, List[StudentGroup]]], policies: GeneralPolicies):
        self.grid = grid
        self.teachers = teachers
        self.rooms = rooms
        self.groups = groups
        self.buffer = policies.min_room_capacity_buffer
        self.max_span = grid.longest_run()

    def expand(self, course: CourseRecord, divisions: List[DivisionRecord]) -> List[SessionRequirement]:
        """Raises DataError on the first problem; the course is skipped as a whole."""
        if not divisions:
            raise DataError(f"Course {course.label} has no matching division", course_id=course.id)

        requirements = []
        for session_type, session in course.sessions.items():
            if session.sessions_per_week <= 0:
                continue
            eligible = _eligible_teachers(course, session_type, self.teachers)
            if not eligible:
                raise DataError(
                    f"Course {course.label} has no eligible teacher for {session_type.value} sessions",
                    course_id=course.id, session_type=session_type.value,
                )
            span = self.grid.span_for(session.duration)
            if span > self.max_span:
                raise DataError(
                    f"Course {course.label} {session_type.value} sessions last {session.duration} min "
                    f"({span} periods) but the longest contiguous run is {self.max_span} periods",
                    course_id=course.id, session_type=session_type.value,
                )
            for division in divisions:
                whole, batches = self.groups[division.id]
                targets = batches if (session_type == SessionType.PRACTICAL and batches) else [whole]
                for group in targets:
                    requirements.append(
                        self._requirement(course, session_type, session, group, span, tuple(eligible))
                    )
        return requirements

    def _requirement(self, course: CourseRecord, session_type: SessionType, session: SessionRecord,
                     group: StudentGroup, span: int, eligible: Tuple[str, ...]) -> SessionRequirement:
        min_capacity = session.min_room_capacity
        if group.is_batch:
            min_capacity = min(min_capacity, group.size)
        features = frozenset(f.strip().lower() for f in session.required_features if f.strip())

        capable = [
            r for r in self.rooms.values()
            if room_fits(r, group.size, min_capacity, features, session.requires_lab, self.buffer)
        ]
        if not capable:
            if session.requires_lab:
                message = (f"Course {course.label} {session_type.value} requires a lab but no lab room "
                           f"fits {group.id} ({group.size} students, min capacity {min_capacity})")
            else:
                message = (f"Course {course.label} {session_type.value}: no room fits {group.id} "
                           f"({group.size} students, features {sorted(features) or 'none'})")
            raise DataError(message, course_id=course.id, session_type=session_type.value,
                            division_id=group.division_id)

        return SessionRequirement(
            id=requirement_id(course.id, session_type, group),
            course_id=course.id,
            course_code=course.code or course.id,
            session_type=session_type,
            sessions_per_week=session.sessions_per_week,
            duration=session.duration,
            span=span,
            group=group,
            eligible_teachers=eligible,
            requires_lab=session.requires_lab,
            required_features=features,
            min_room_capacity=min_capacity,
            department=course.department,
            course_priority=COURSE_PRIORITY.get(str(course.priority).lower(), 2),
        )


# --------------------------------------------------------------------- #
# Public API
# --------------------------------------------------------------------- #
def normalize(snapshot: Union[ScheduleSnapshot, Mapping[str, Any]], grid: SlotGrid) -> NormalizedInput:
    """
    Convert a snapshot into fully materialized scheduling input.

    Args:
        snapshot: A ScheduleSnapshot or the raw document it validates from
        grid: The slot grid of this run

    Returns:
        NormalizedInput; rejected records and unschedulable courses are listed
        in `errors` (DataError), load problems in `warnings`
    """
    if isinstance(snapshot, ScheduleSnapshot):
        errors: List[DataError] = []
    else:
        snapshot, errors = parse_snapshot(snapshot)
    policies = snapshot.policy.general_policies
    result = NormalizedInput(errors=errors)

    for record in snapshot.teachers:
        if record.status.lower() != 'active':
            logger.debug("[NORMALIZE] Skipping %s teacher %s", record.status, record.id)
            continue
        if record.id in result.teachers:
            result.errors.append(DataError(f"Duplicate teacher id {record.id}", teacher_id=record.id))
            continue
        result.teachers[record.id] = _build_teacher(record)

    for record in snapshot.rooms:
        if record.status.lower() != 'available':
            continue
        if record.id in result.rooms:
            result.errors.append(DataError(f"Duplicate room id {record.id}", room_id=record.id))
            continue
        result.rooms[record.id] = _build_room(record)

    divisions: List[DivisionRecord] = []
    groups: Dict[str, Tuple[StudentGroup, List[StudentGroup]]] = {}
    for record in snapshot.divisions:
        if record.status.lower() != 'active':
            continue
        if record.id in groups:
            result.errors.append(DataError(f"Duplicate division id {record.id}", division_id=record.id))
            continue
        whole, batches = _build_groups(record)
        groups[record.id] = (whole, batches)
        divisions.append(record)
        result.groups[whole.id] = whole
        for batch in batches:
            result.groups[batch.id] = batch

    expander = _CourseExpander(grid, result.teachers, result.rooms, groups, policies)
    for course in snapshot.courses:
        if not course.is_active:
            continue
        try:
            for requirement in expander.expand(course, _divisions_for_course(course, divisions)):
                result.requirements[requirement.id] = requirement
        except DataError as e:
            logger.warning("[NORMALIZE] %s", e)
            result.errors.append(e)

    _resolve_pins(snapshot.pinned, grid, result)
    result.warnings.extend(_load_warnings(result))
    logger.info(
        "[NORMALIZE] %d requirements (%d occurrences), %d teachers, %d rooms, %d groups, %d errors",
        len(result.requirements), len(result.occurrences()), len(result.teachers),
        len(result.rooms), len(result.groups), len(result.errors),
    )
    return result


def _resolve_pins(pins: List[PinnedEntryRecord], grid: SlotGrid, result: NormalizedInput) -> None:
    used: Dict[str, int] = {}
    for pin in pins:
        group_id = pin.division_id if pin.batch_id is None else f"{pin.division_id}/{pin.batch_id}"
        group = result.groups.get(group_id)
        req = None
        if group is not None:
            req = result.requirements.get(requirement_id(pin.course_id, pin.session_type, group))
        if req is None:
            result.errors.append(DataError(
                f"Pinned entry {pin.course_id} {pin.session_type.value} for {group_id} matches no requirement",
                course_id=pin.course_id, session_type=pin.session_type.value, division_id=pin.division_id,
            ))
            continue

        block = _block_at(grid, pin.day, pin.start_time, req.span)
        problem = None
        if block is None:
            problem = f"no {req.span}-period block starts at {pin.day.value} {pin.start_time}"
        elif pin.teacher_id not in req.eligible_teachers:
            problem = f"teacher {pin.teacher_id} is not eligible"
        elif pin.room_id not in result.rooms:
            problem = f"room {pin.room_id} is unknown or unavailable"
        elif used.get(req.id, 0) >= req.sessions_per_week:
            problem = f"more pins than the {req.sessions_per_week} weekly sessions"
        if problem:
            result.errors.append(DataError(
                f"Pinned entry for {req.id} rejected: {problem}",
                course_id=req.course_id, session_type=req.session_type.value,
                teacher_id=pin.teacher_id, division_id=pin.division_id, room_id=pin.room_id,
            ))
            continue

        index = used.get(req.id, 0)
        used[req.id] = index + 1
        result.pinned[Occurrence(req.id, index)] = Placement(block, pin.room_id, pin.teacher_id)


def _block_at(grid: SlotGrid, day: Weekday, start, span: int):
    for block in grid.blocks(span):
        if block[0].day == day and block[0].start == start:
            return block
    return None


def _load_warnings(result: NormalizedInput) -> List[str]:
    """Bound analysis: flag teachers whose sole-teacher load exceeds their weekly cap."""
    warnings = []
    sole_load: Dict[str, int] = {}
    total_demand = 0
    for req in result.requirements.values():
        load = req.sessions_per_week * req.duration
        total_demand += load
        if len(req.eligible_teachers) == 1:
            teacher_id = req.eligible_teachers[0]
            sole_load[teacher_id] = sole_load.get(teacher_id, 0) + load

    for teacher_id, load in sorted(sole_load.items()):
        teacher = result.teachers[teacher_id]
        if load > teacher.max_minutes_per_week:
            warnings.append(
                f"⚠️ Workload Issue: {teacher.name} is the only teacher for {load / 60:.1f}h/week "
                f"but maxHoursPerWeek is {teacher.max_minutes_per_week / 60:.1f}h"
            )

    capacity = sum(t.max_minutes_per_week for t in result.teachers.values())
    if total_demand > capacity:
        warnings.append(
            f"⚠️ Workload Issue: total sessions ({total_demand / 60:.1f}h) exceed teacher capacity ({capacity / 60:.1f}h)"
        )
    return warnings
