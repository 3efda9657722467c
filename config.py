"""
Engine configuration.

Values come from environment variables (a .env file is honoured) or from a
plain mapping passed by the caller. Anything not supplied falls back to the
defaults below.
"""
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


@dataclass
class SoftWeights:
    """Penalty weight per soft constraint. Zero disables a term."""

    consecutive_hours: float = 5.0
    daily_hours: float = 4.0
    min_break: float = 1.0
    back_to_back_labs: float = 3.0
    first_last_period: float = 1.0
    morning_labs: float = 2.0
    friday_afternoon: float = 2.0
    balance_workload: float = 1.0
    subjects_per_day: float = 2.0
    similar_subjects: float = 1.0
    teacher_continuity: float = 2.0
    core_priority: float = 1.0
    room_utilization: float = 1.0
    teacher_preferences: float = 2.0
    same_day_repeat: float = 3.0


@dataclass
class EngineConfig:
    # Solver
    backtrack_limit: int = 5000
    time_limit_seconds: Optional[float] = 60.0
    flexibility_weight: float = 0.5
    ilp_fallback: bool = True
    ilp_time_limit: int = 20
    ilp_max_variables: int = 50000

    # Refiner
    refine: bool = True
    refiner_iterations: int = 2000
    refiner_patience: int = 400
    refiner_time_limit: Optional[float] = 30.0
    initial_temperature: float = 5.0
    cooling_rate: float = 0.995
    min_temperature: float = 0.01
    random_seed: int = 42

    # Reporting
    overwork_threshold: float = 40.0  # hours/week

    # Runner
    max_workers: int = 4

    log_level: str = 'INFO'
    weights: SoftWeights = field(default_factory=SoftWeights)

    @classmethod
    def from_mapping(cls, config: Optional[Mapping[str, Any]] = None) -> 'EngineConfig':
        """Build a config from a dict; unknown keys are ignored."""
        config = dict(config or {})
        weights = config.pop('weights', None)
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in config.items() if k in known}
        cfg = cls(**kwargs)
        if isinstance(weights, SoftWeights):
            cfg.weights = weights
        elif weights:
            known_w = {f.name for f in fields(SoftWeights)}
            cfg.weights = SoftWeights(**{k: float(v) for k, v in weights.items() if k in known_w})
        return cfg

    @classmethod
    def from_env(cls, overrides: Optional[Mapping[str, Any]] = None) -> 'EngineConfig':
        """Read TIMETABLE_* environment variables, then apply overrides."""
        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name == 'weights':
                continue
            raw = os.getenv(f'TIMETABLE_{f.name.upper()}')
            if raw is None or raw.strip() == '':
                continue
            values[f.name] = _coerce(raw, f.default)
        values.update(overrides or {})
        return cls.from_mapping(values)


def _coerce(raw: str, default: Any) -> Any:
    raw = raw.strip()
    if isinstance(default, bool):
        return raw.lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float) or default is None:
        if raw.lower() in ('none', 'off'):
            return None
        return float(raw)
    return raw


def configure_logging(level: Optional[str] = None) -> None:
    """Set up root logging once; the level defaults to TIMETABLE_LOG_LEVEL."""
    level = (level or os.getenv('TIMETABLE_LOG_LEVEL', 'INFO')).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
