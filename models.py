"""
Snapshot records handed to the engine by the data-entry layer.

The CRUD side stores courses, teachers, rooms and divisions as loosely typed
documents. These pydantic models are the boundary: a record either validates
into one of the types below or is rejected with a DataError naming it.
Both camelCase (as stored) and snake_case keys are accepted.
"""
from datetime import time
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from domain import SessionType, TeacherType, Weekday
from errors import ConfigError, DataError

WEEKDAYS = [Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY, Weekday.THURSDAY, Weekday.FRIDAY]


def _token(value) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value).strip()


def _lower_keys(value):
    if isinstance(value, Mapping):
        return {_token(k).lower(): v for k, v in value.items()}
    return value


class Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra='ignore',
        frozen=True,
    )


# --------------------------------------------------------------------- #
# Shared pieces
# --------------------------------------------------------------------- #
class AvailabilityRecord(Record):
    available: bool = True
    start_time: time = time(9, 0)
    end_time: time = time(17, 0)

    @model_validator(mode='after')
    def _check_window(self):
        if self.available and self.end_time <= self.start_time:
            raise ValueError(f'endTime {self.end_time} must be after startTime {self.start_time}')
        return self


class TimeWindowRecord(Record):
    day: Weekday
    start_time: time
    end_time: time

    @field_validator('day', mode='before')
    @classmethod
    def _day(cls, v):
        return _token(v).lower()


def default_teacher_availability() -> Dict[Weekday, AvailabilityRecord]:
    availability = {day: AvailabilityRecord() for day in WEEKDAYS}
    availability[Weekday.SATURDAY] = AvailabilityRecord(available=False)
    availability[Weekday.SUNDAY] = AvailabilityRecord(available=False)
    return availability


# --------------------------------------------------------------------- #
# Courses
# --------------------------------------------------------------------- #
class SessionRecord(Record):
    sessions_per_week: int = Field(default=1, ge=0, le=10)
    duration: int = Field(ge=1, le=240)
    requires_lab: bool = False
    required_features: List[str] = Field(default_factory=list)
    min_room_capacity: int = Field(default=0, ge=0)
    preferred_room_type: Optional[str] = None


class CourseSessions(Record):
    theory: Optional[SessionRecord] = None
    practical: Optional[SessionRecord] = None
    tutorial: Optional[SessionRecord] = None

    def items(self) -> List[Tuple[SessionType, SessionRecord]]:
        pairs = [
            (SessionType.THEORY, self.theory),
            (SessionType.PRACTICAL, self.practical),
            (SessionType.TUTORIAL, self.tutorial),
        ]
        return [(kind, session) for kind, session in pairs if session is not None]


class TeacherAssignmentRecord(Record):
    teacher_id: str
    session_types: List[SessionType] = Field(default_factory=list)
    is_primary: bool = False

    @field_validator('session_types', mode='before')
    @classmethod
    def _session_types(cls, v):
        return [_token(s).capitalize() for s in (v or [])]


class CourseRecord(Record):
    id: str
    code: str = ''
    name: str = ''
    department: str = ''
    program: Optional[str] = None
    year: Optional[int] = None
    semester: Optional[int] = None
    sessions: CourseSessions = Field(default_factory=CourseSessions)
    assigned_teachers: List[TeacherAssignmentRecord] = Field(default_factory=list)
    division_ids: List[str] = Field(default_factory=list)
    is_active: bool = True
    is_core: bool = True
    priority: str = 'medium'

    @model_validator(mode='before')
    @classmethod
    def _divisions(cls, data):
        # Stored courses list their divisions as [{divisionId, studentCount, batches}]
        if isinstance(data, Mapping) and 'divisions' in data and not data.get('divisionIds'):
            data = dict(data)
            ids = []
            for div in data.pop('divisions') or []:
                if isinstance(div, Mapping):
                    div_id = div.get('divisionId') or div.get('division_id') or div.get('id')
                else:
                    div_id = div
                if div_id:
                    ids.append(str(div_id))
            data['divisionIds'] = ids
        return data

    @property
    def label(self) -> str:
        return self.code or self.id


# --------------------------------------------------------------------- #
# Teachers, rooms, divisions
# --------------------------------------------------------------------- #
class TeacherPreferencesRecord(Record):
    preferred_time_slots: List[TimeWindowRecord] = Field(default_factory=list)
    avoid_time_slots: List[TimeWindowRecord] = Field(default_factory=list)


class TeacherRecord(Record):
    id: str
    name: str = ''
    max_hours_per_week: float = Field(default=20, gt=0, le=60)
    availability: Dict[Weekday, AvailabilityRecord] = Field(default_factory=default_teacher_availability)
    teacher_type: TeacherType = TeacherType.CORE
    status: str = 'active'
    preferences: TeacherPreferencesRecord = Field(default_factory=TeacherPreferencesRecord)

    @field_validator('availability', mode='before')
    @classmethod
    def _availability(cls, v):
        v = _lower_keys(v) or {}
        merged = {day.value: record for day, record in default_teacher_availability().items()}
        merged.update(v)
        return merged

    @field_validator('teacher_type', mode='before')
    @classmethod
    def _teacher_type(cls, v):
        return _token(v).lower() if v is not None else TeacherType.CORE.value


class RoomRecord(Record):
    id: str
    name: str = ''
    capacity: int = Field(ge=1)
    features: List[str] = Field(default_factory=list)
    type: str = 'Lecture Hall'
    status: str = 'available'
    availability: Optional[Dict[Weekday, AvailabilityRecord]] = None

    @field_validator('availability', mode='before')
    @classmethod
    def _availability(cls, v):
        return _lower_keys(v)


class BatchRecord(Record):
    id: str
    name: str = ''
    student_count: int = Field(ge=1)


class DivisionRecord(Record):
    id: str
    name: str = ''
    program: Optional[str] = None
    year: Optional[int] = None
    semester: Optional[int] = None
    student_count: int = Field(ge=1)
    lab_batches: int = Field(default=0, ge=0)
    batches: List[BatchRecord] = Field(default_factory=list)
    parallel_batches: bool = True
    status: str = 'Active'


class PinnedEntryRecord(Record):
    """A locked timetable entry that the engine must keep as is."""

    course_id: str
    session_type: SessionType
    division_id: str
    batch_id: Optional[str] = None
    day: Weekday
    start_time: time
    teacher_id: str
    room_id: str = Field(validation_alias=AliasChoices('classroomId', 'roomId', 'room_id'))

    @field_validator('session_type', mode='before')
    @classmethod
    def _session_type(cls, v):
        return _token(v).capitalize()

    @field_validator('day', mode='before')
    @classmethod
    def _day(cls, v):
        return _token(v).lower()


# --------------------------------------------------------------------- #
# Policy
# --------------------------------------------------------------------- #
class WorkingHours(Record):
    start_time: time = time(9, 0)
    end_time: time = time(17, 0)
    lunch_break_start: Optional[time] = time(12, 30)
    lunch_break_end: Optional[time] = time(13, 30)
    period_duration: int = 50
    break_duration: int = 10
    lab_period_duration: int = 120
    working_days: List[Weekday] = Field(default_factory=lambda: list(WEEKDAYS))
    max_periods_per_day: int = 8

    @field_validator('working_days', mode='before')
    @classmethod
    def _days(cls, v):
        return [_token(d).lower() for d in (v or [])]


class GeneralPolicies(Record):
    max_consecutive_hours: float = 3
    max_daily_hours: float = 8
    min_break_between_sessions: int = 15
    max_teaching_hours_per_day: float = 6
    preferred_classroom_utilization: float = 80
    allow_back_to_back_labs: bool = False
    prioritize_teacher_preferences: bool = True
    min_room_capacity_buffer: float = Field(default=10, ge=0, lt=100)
    prioritize_core_before: bool = True
    avoid_first_last_period: bool = False


class ConstraintRules(Record):
    max_subjects_per_day: int = 6
    prefer_morning_labs: bool = True
    avoid_friday_afternoon: bool = True
    balance_workload: bool = True
    group_similar_subjects: bool = False
    maintain_teacher_continuity: bool = True


class PolicySnapshot(Record):
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    general_policies: GeneralPolicies = Field(default_factory=GeneralPolicies)
    constraint_rules: ConstraintRules = Field(default_factory=ConstraintRules)


class ScheduleSnapshot(Record):
    courses: List[CourseRecord] = Field(default_factory=list)
    teachers: List[TeacherRecord] = Field(default_factory=list)
    rooms: List[RoomRecord] = Field(default_factory=list)
    divisions: List[DivisionRecord] = Field(default_factory=list)
    policy: PolicySnapshot = Field(default_factory=PolicySnapshot)
    pinned: List[PinnedEntryRecord] = Field(default_factory=list)


# --------------------------------------------------------------------- #
# Raw document parsing
# --------------------------------------------------------------------- #
_RECORD_TYPES = {
    'courses': (CourseRecord, 'course_id', 'course'),
    'teachers': (TeacherRecord, 'teacher_id', 'teacher'),
    'rooms': (RoomRecord, 'room_id', 'room'),
    'divisions': (DivisionRecord, 'division_id', 'division'),
    'pinned': (PinnedEntryRecord, 'course_id', 'pinned entry'),
}


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = '.'.join(str(p) for p in err.get('loc', ()))
    return f"{loc}: {err.get('msg')}" if loc else err.get('msg', str(exc))


def parse_snapshot(data: Mapping[str, Any]) -> Tuple[ScheduleSnapshot, List[DataError]]:
    """
    Validate a raw snapshot document record by record.

    Args:
        data: Mapping with courses/teachers/rooms/divisions/pinned lists and a policy

    Returns:
        (snapshot, errors): the snapshot holds only records that validated;
        every rejected record yields one DataError naming it.

    Raises:
        ConfigError: if the policy itself is malformed
    """
    if isinstance(data, ScheduleSnapshot):
        return data, []

    try:
        policy = PolicySnapshot.model_validate(data.get('policy') or {})
    except ValidationError as e:
        raise ConfigError(f"Invalid policy: {_first_error(e)}", field='policy') from e

    errors: List[DataError] = []
    parsed: Dict[str, list] = {}
    for key, (record_cls, id_field, label) in _RECORD_TYPES.items():
        parsed[key] = []
        for raw in data.get(key) or []:
            try:
                parsed[key].append(record_cls.model_validate(raw))
            except ValidationError as e:
                entity_id = raw.get('id') if isinstance(raw, Mapping) else None
                if key == 'pinned' and isinstance(raw, Mapping):
                    entity_id = raw.get('courseId') or raw.get('course_id')
                errors.append(DataError(
                    f"Rejected {label} record {entity_id!r}: {_first_error(e)}",
                    **{id_field: str(entity_id) if entity_id is not None else None},
                ))

    snapshot = ScheduleSnapshot(policy=policy, **parsed)
    return snapshot, errors
