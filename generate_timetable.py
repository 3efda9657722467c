"""
Generate a timetable from a JSON snapshot file.

Usage:
    python generate_timetable.py snapshot.json [output.json] [--seeds 1,2,3]

Engine settings come from TIMETABLE_* environment variables (a .env file is
honoured). With --seeds several candidates are generated in parallel and the
best one is kept.
"""
import json
import sys

from config import EngineConfig, configure_logging
from engine import TimetableEngine
from errors import SchedulingError
from runner import generate_candidates, pick_best


def _show_progress(phase, done, total):
    end = '\n' if phase == 'done' else '\r'
    print(f"  ⏳ {phase:<6} {done}/{total}   ", end=end, flush=True)


def main(argv):
    args = [a for a in argv if not a.startswith('--')]
    seeds = None
    for i, a in enumerate(argv):
        if a == '--seeds' and i + 1 < len(argv):
            seeds = [int(s) for s in argv[i + 1].split(',') if s.strip()]
            args.remove(argv[i + 1])
    if not args:
        print(__doc__)
        return 2

    config = EngineConfig.from_env()
    configure_logging(config.log_level)

    with open(args[0], 'r', encoding='utf-8') as f:
        snapshot = json.load(f)

    try:
        if seeds:
            result = pick_best(generate_candidates(snapshot, seeds, config))
        else:
            result = TimetableEngine(config).generate(snapshot, progress=_show_progress)
    except SchedulingError as e:
        print(f"❌ {e.__class__.__name__}: {e}")
        return 1

    report = result.report
    print("=" * 60)
    print(f"  TIMETABLE: {report.status}")
    print("=" * 60)
    print(f"  Placed:      {len(result.placements)}")
    print(f"  Unplaced:    {len(report.unplaced)}")
    print(f"  Soft score:  {report.soft_score:.3f}")
    print(f"  Solver:      {result.solver.status.value} ({result.solver.backtracks} backtracks)")
    for occ in report.unplaced:
        print(f"  - {occ}: {report.unplaced_reasons.get(occ, '')}")
    for error in report.data_errors:
        print(f"  ⚠️  {error}")
    for warning in report.warnings:
        print(f"  {warning}")

    if len(args) > 1:
        with open(args[1], 'w', encoding='utf-8') as f:
            json.dump(result.to_dict(), f, indent=2)
        print(f"\nSaved to {args[1]}")
    return 0


def cli():
    sys.exit(main(sys.argv[1:]))


if __name__ == '__main__':
    cli()
