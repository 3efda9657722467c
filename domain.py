"""
Internal scheduling types.

Everything here is immutable once the normalizer has built it; the only
mutable artifact of a run is the Assignment (see assignment.py).
"""
from dataclasses import dataclass, field
from datetime import time
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class Weekday(str, Enum):
    MONDAY = 'monday'
    TUESDAY = 'tuesday'
    WEDNESDAY = 'wednesday'
    THURSDAY = 'thursday'
    FRIDAY = 'friday'
    SATURDAY = 'saturday'
    SUNDAY = 'sunday'

    @property
    def order(self) -> int:
        return _WEEKDAY_ORDER[self]

    @classmethod
    def parse(cls, value) -> 'Weekday':
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


_WEEKDAY_ORDER = {day: i for i, day in enumerate(Weekday)}


class SessionType(str, Enum):
    THEORY = 'Theory'
    PRACTICAL = 'Practical'
    TUTORIAL = 'Tutorial'

    @classmethod
    def parse(cls, value) -> 'SessionType':
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().capitalize())


class TeacherType(str, Enum):
    CORE = 'core'
    ADJUNCT = 'adjunct'
    VISITING = 'visiting'
    GUEST = 'guest'

    @property
    def rank(self) -> int:
        """Lower rank is scheduled first when candidates tie."""
        return _TEACHER_RANK[self]


_TEACHER_RANK = {
    TeacherType.CORE: 0,
    TeacherType.ADJUNCT: 1,
    TeacherType.VISITING: 2,
    TeacherType.GUEST: 2,
}


class Severity(str, Enum):
    HARD = 'hard'
    SOFT = 'soft'


LAB_FEATURES = frozenset({'computers', 'lab equipment'})


def minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def format_time(t: time) -> str:
    return t.strftime('%H:%M')


@dataclass(frozen=True)
class TimeWindow:
    start: time
    end: time

    def covers(self, start: time, end: time) -> bool:
        return self.start <= start and end <= self.end

    def overlaps(self, start: time, end: time) -> bool:
        return max(self.start, start) < min(self.end, end)


@dataclass(frozen=True)
class TimeSlot:
    """One atomic period of the weekly grid."""

    day: Weekday
    index: int
    start: time
    end: time

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.day.order, self.index)

    @property
    def duration(self) -> int:
        return minutes(self.end) - minutes(self.start)

    def label(self) -> str:
        return f"{self.day.value[:3].title()} P{self.index + 1} {format_time(self.start)}-{format_time(self.end)}"


@dataclass(frozen=True)
class StudentGroup:
    """A whole division, or one lab batch of a division."""

    division_id: str
    size: int
    batch_id: Optional[str] = None
    parallel_batches: bool = True

    @property
    def id(self) -> str:
        if self.batch_id is None:
            return self.division_id
        return f"{self.division_id}/{self.batch_id}"

    @property
    def is_batch(self) -> bool:
        return self.batch_id is not None

    def conflicts_with(self, other: 'StudentGroup') -> bool:
        """True if the two groups share students (cannot share a slot)."""
        if self.division_id != other.division_id:
            return False
        if not self.is_batch or not other.is_batch:
            return True
        if self.batch_id == other.batch_id:
            return True
        return not (self.parallel_batches and other.parallel_batches)


@dataclass(frozen=True, eq=False)
class Teacher:
    id: str
    name: str
    max_minutes_per_week: int
    availability: Dict[Weekday, TimeWindow]
    teacher_type: TeacherType = TeacherType.CORE
    preferred_windows: Tuple[Tuple[Weekday, TimeWindow], ...] = ()
    avoid_windows: Tuple[Tuple[Weekday, TimeWindow], ...] = ()

    @property
    def rank(self) -> int:
        return self.teacher_type.rank

    def is_available(self, day: Weekday, start: time, end: time) -> bool:
        window = self.availability.get(day)
        return window is not None and window.covers(start, end)


@dataclass(frozen=True, eq=False)
class Room:
    id: str
    name: str
    capacity: int
    features: FrozenSet[str]
    type: str = 'Lecture Hall'
    availability: Optional[Dict[Weekday, TimeWindow]] = None

    @property
    def is_lab(self) -> bool:
        return bool(self.features & LAB_FEATURES) or 'lab' in self.type.lower()

    def is_available(self, day: Weekday, start: time, end: time) -> bool:
        if self.availability is None:
            return True
        window = self.availability.get(day)
        return window is not None and window.covers(start, end)


@dataclass(frozen=True, eq=False)
class SessionRequirement:
    """A (course, session type, student group) unit needing N weekly placements."""

    id: str
    course_id: str
    course_code: str
    session_type: SessionType
    sessions_per_week: int
    duration: int
    span: int
    group: StudentGroup
    eligible_teachers: Tuple[str, ...]
    requires_lab: bool = False
    required_features: FrozenSet[str] = frozenset()
    min_room_capacity: int = 0
    department: str = ''
    course_priority: int = 2

    @property
    def is_lab(self) -> bool:
        return self.requires_lab or self.session_type == SessionType.PRACTICAL

    def occurrences(self):
        return [Occurrence(self.id, i) for i in range(self.sessions_per_week)]


@dataclass(frozen=True, order=True)
class Occurrence:
    requirement_id: str
    index: int

    def __str__(self):
        return f"{self.requirement_id}#{self.index + 1}"


@dataclass(frozen=True)
class Placement:
    """Where and with whom one occurrence runs: a block of contiguous slots."""

    slots: Tuple[TimeSlot, ...]
    room_id: str
    teacher_id: str

    @property
    def day(self) -> Weekday:
        return self.slots[0].day

    @property
    def start(self) -> time:
        return self.slots[0].start

    @property
    def end(self) -> time:
        return self.slots[-1].end

    @property
    def first_index(self) -> int:
        return self.slots[0].index

    @property
    def last_index(self) -> int:
        return self.slots[-1].index

    @property
    def sort_key(self):
        return (self.day.order, self.first_index, self.room_id, self.teacher_id)


@dataclass(frozen=True)
class ConstraintViolation:
    kind: str
    severity: Severity
    message: str
    involved_entities: Tuple[str, ...] = ()
    occurrences: Tuple[Occurrence, ...] = ()
    penalty: float = 0.0

    @property
    def sort_key(self):
        return (self.severity.value, self.kind, self.involved_entities, tuple(str(o) for o in self.occurrences))

    def to_dict(self) -> Dict[str, object]:
        d = {
            'kind': self.kind,
            'severity': self.severity.value,
            'message': self.message,
            'involved_entities': list(self.involved_entities),
            'occurrences': [str(o) for o in self.occurrences],
        }
        if self.severity == Severity.SOFT:
            d['penalty'] = round(self.penalty, 4)
        return d


@dataclass
class NormalizedInput:
    """Everything the constraint model needs, fully materialized."""

    requirements: Dict[str, SessionRequirement] = field(default_factory=dict)
    teachers: Dict[str, Teacher] = field(default_factory=dict)
    rooms: Dict[str, Room] = field(default_factory=dict)
    groups: Dict[str, StudentGroup] = field(default_factory=dict)
    pinned: Dict[Occurrence, Placement] = field(default_factory=dict)
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    def occurrences(self):
        result = []
        for req_id in sorted(self.requirements):
            result.extend(self.requirements[req_id].occurrences())
        return result
