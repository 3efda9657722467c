"""
Worker pool for independent generation runs.

Each run gets its own engine, model and assignment; nothing mutable is shared
between threads. A shared threading.Event cancels every run in flight.
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from threading import Event
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from config import EngineConfig
from engine import TimetableEngine, TimetableResult
from models import ScheduleSnapshot

logger = logging.getLogger(__name__)

Snapshot = Union[ScheduleSnapshot, Mapping[str, Any]]

# Thread pool for fire-and-forget runs
_run_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="timetable_run")


def _run(snapshot: Snapshot, config: EngineConfig, cancel_event: Optional[Event],
         progress: Optional[Callable[[str, int, int], None]] = None) -> TimetableResult:
    return TimetableEngine(config).generate(snapshot, cancel_event=cancel_event, progress=progress)


def run_many(jobs: Iterable[Union[Snapshot, Tuple[Snapshot, EngineConfig]]],
             config: Optional[EngineConfig] = None, max_workers: Optional[int] = None,
             cancel_event: Optional[Event] = None) -> List[TimetableResult]:
    """
    Run several independent generations in parallel.

    Args:
        jobs: Snapshots, or (snapshot, config) pairs to override the shared config
        config: Config for jobs that bring none
        max_workers: Pool size (defaults to config.max_workers)
        cancel_event: Shared cancellation flag

    Returns:
        Results in job order. The first failing job's exception is re-raised.
    """
    config = config or EngineConfig()
    prepared = []
    for job in jobs:
        if isinstance(job, tuple):
            prepared.append(job)
        else:
            prepared.append((job, config))
    if not prepared:
        return []

    workers = max_workers or config.max_workers
    logger.info("[RUNNER] %d runs on %d workers", len(prepared), workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="timetable_run") as pool:
        futures = [pool.submit(_run, snapshot, cfg, cancel_event) for snapshot, cfg in prepared]
        return [f.result() for f in futures]


def generate_candidates(snapshot: Snapshot, seeds: Sequence[int], config: Optional[EngineConfig] = None,
                        max_workers: Optional[int] = None,
                        cancel_event: Optional[Event] = None) -> List[TimetableResult]:
    """Same input, one run per seed: A/B candidates for pick_best."""
    config = config or EngineConfig()
    jobs = [(snapshot, replace(config, random_seed=seed)) for seed in seeds]
    return run_many(jobs, config=config, max_workers=max_workers, cancel_event=cancel_event)


def pick_best(results: Iterable[TimetableResult]) -> TimetableResult:
    """Fewest unplaced occurrences, then lowest soft score, then lowest seed."""
    results = list(results)
    if not results:
        raise ValueError("pick_best needs at least one result")
    return min(results, key=lambda r: (len(r.report.unplaced), r.report.soft_score, r.seed))


def generate_async(snapshot: Snapshot, config: Optional[EngineConfig] = None,
                   cancel_event: Optional[Event] = None,
                   progress: Optional[Callable[[str, int, int], None]] = None) -> Future:
    """
    Submit one run to the shared pool.

    Example:
        >>> future = generate_async(snapshot)
        >>> result = future.result()  # Blocks until complete
    """
    return _run_executor.submit(_run, snapshot, config or EngineConfig(), cancel_event, progress)


def shutdown_executor():
    """Shut down the shared pool (call on application shutdown)."""
    _run_executor.shutdown(wait=True)
