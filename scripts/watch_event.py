#!/usr/bin/env python3
"""
Follow an event from the terminal: print one line each time its records change.

Usage: python scripts/watch_event.py [--event ID] [--interval SECONDS] [--once]
"""
import argparse
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from heatboard.bracket import build_bracket  # type: ignore  # noqa: E402
from heatboard.datastore import load_snapshot  # type: ignore  # noqa: E402
from heatboard.finals import compute_finals_state  # type: ignore  # noqa: E402
from heatboard.leaderboard import build_leaderboard  # type: ignore  # noqa: E402
from heatboard.metrics import RaceMetrics  # type: ignore  # noqa: E402
from heatboard.watch import SnapshotWatcher  # type: ignore  # noqa: E402


def report(snapshot):
    metrics = RaceMetrics(snapshot)
    bracket = build_bracket(snapshot, metrics)
    board = build_leaderboard(snapshot, metrics, bracket)
    current = snapshot.current_race()
    leader = board.pilot_ids[0] if board.pilot_ids else None
    line = f"[{snapshot.version[:12]}] race={current.id if current else '-'} leader={leader or '-'}"
    finals = compute_finals_state(snapshot, metrics, bracket)
    if finals.message:
        line += f" finals: {finals.message}"
    print(line, flush=True)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Print a summary line whenever an event changes")
    parser.add_argument("--event", help="event id (default: HEATBOARD_EVENT_ID or the current event)")
    parser.add_argument("--interval", type=float, help="poll interval in seconds (default: adaptive)")
    parser.add_argument("--once", action="store_true", help="print the current state and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    watcher = SnapshotWatcher(lambda: load_snapshot(args.event), interval=args.interval)
    watcher.subscribe(report)
    if args.once:
        watcher.poll_once()
        return 0
    try:
        watcher.run()
    except KeyboardInterrupt:
        watcher.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
