"""
Error taxonomy for the timetable engine.

ConfigError and DataError are raised (or collected) before the search starts.
Running out of search budget is not an error: the solver reports an
INFEASIBLE status with the best partial assignment instead.
"""
from typing import Any, Dict, Optional


class SchedulingError(Exception):
    """Base class for every error the engine raises."""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.__class__.__name__, "message": str(self)}


class ConfigError(SchedulingError):
    """Malformed or impossible working-hours policy. Fatal for the run."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self):
        d = super().to_dict()
        d["field"] = self.field
        return d


class DataError(SchedulingError):
    """
    A record that cannot be scheduled as given.

    Raised per offending entity so the caller can explain the failure without
    re-deriving context. Aborts normalization of that course (or entity) only.
    """

    def __init__(
        self,
        message: str,
        course_id: Optional[str] = None,
        session_type: Optional[str] = None,
        teacher_id: Optional[str] = None,
        division_id: Optional[str] = None,
        room_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.course_id = course_id
        self.session_type = session_type
        self.teacher_id = teacher_id
        self.division_id = division_id
        self.room_id = room_id

    def to_dict(self):
        d = super().to_dict()
        d.update({
            "course_id": self.course_id,
            "session_type": self.session_type,
            "teacher_id": self.teacher_id,
            "division_id": self.division_id,
            "room_id": self.room_id,
        })
        return d


class HardConstraintViolation(SchedulingError):
    """
    The validator found a hard-constraint violation in a finished assignment.

    This is an internal invariant failure: the solver and refiner must never
    produce one. The full report travels with the exception.
    """

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report

    def to_dict(self):
        d = super().to_dict()
        if self.report is not None:
            d["violations"] = [v.to_dict() for v in self.report.hard_violations]
        return d
