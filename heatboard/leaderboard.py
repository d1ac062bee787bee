"""Event leaderboard: ordering, per-pilot context and position changes.

Two orderings are produced from the same group tree.  The *current* one
covers every ordered race; the *previous* one leaves out the current race
and the last completed race, so comparing them shows who moved.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import kv
from .bracket import BracketView, EliminatedPilot, build_bracket
from .metrics import BestLap, ConsecutiveWindow, RaceMetrics, TotalRace
from .records import Channel, Snapshot
from .sorting import Condition, SortCriterion, SortDirection, SortGroup, sort_items

logger = logging.getLogger(__name__)

RACING_NOW = -2
NO_UPCOMING = -1
_FAR = sys.maxsize

CURRENT = "current"
PREVIOUS = "previous"


def race_windows(snapshot: Snapshot) -> Tuple[List[str], List[str]]:
    """``(current, previous)`` race id windows."""
    current = [race.id for race in snapshot.races_ordered()]
    current_race = snapshot.current_race()
    last_done = snapshot.last_completed_race()
    skip = {r.id for r in (current_race, last_done) if r is not None}
    return current, [rid for rid in current if rid not in skip]


def window_pilot_ids(snapshot: Snapshot, race_ids: Sequence[str]) -> List[str]:
    seen: List[str] = []
    for race_id in race_ids:
        race = snapshot.race(race_id)
        if race is None:
            continue
        for pilot_id in race.pilot_ids():
            if pilot_id not in seen:
                seen.append(pilot_id)
    return seen


def races_until_next(snapshot: Snapshot, pilot_id: str) -> int:
    """-2 if racing now, -1 if nothing is scheduled, else races to wait."""
    races = snapshot.races_ordered()
    current = snapshot.current_race_index()
    if current < 0:
        return NO_UPCOMING
    if pilot_id in races[current].pilot_ids():
        return RACING_NOW
    count = 0
    for race in races[current + 1:]:
        if pilot_id in race.pilot_ids():
            return count
        count += 1
    return NO_UPCOMING


def preferred_channel(snapshot: Snapshot, pilot_id: str) -> Optional[Channel]:
    """Channel from the current race onward, else the most recent earlier one."""
    races = snapshot.races_ordered()
    current = max(snapshot.current_race_index(), 0)
    for race in races[current:] + list(reversed(races[:current])):
        if pilot_id in race.pilot_ids():
            return snapshot.channel(race.channel_for(pilot_id))
    return None


def next_race_distance(value: int) -> int:
    if value == RACING_NOW:
        return -1000
    if value == NO_UPCOMING:
        return _FAR
    return value


@dataclass
class PilotContext:
    """Scope-independent facts about a pilot used by the sort tree."""

    races_until_next: int
    channel: Optional[Channel]
    eliminated: Optional[EliminatedPilot]


class LeaderboardInputs:
    """Lazily computed per-pilot metrics for both windows."""

    def __init__(self, snapshot: Snapshot, metrics: RaceMetrics, eliminated: Dict[str, EliminatedPilot]):
        self.snapshot = snapshot
        self.metrics = metrics
        self.current_ids, self.previous_ids = race_windows(snapshot)
        self._eliminated = eliminated
        self._context: Dict[str, PilotContext] = {}
        self._memo: Dict[Tuple[str, str, str], Any] = {}

    def window(self, scope: str) -> List[str]:
        return self.current_ids if scope == CURRENT else self.previous_ids

    def context(self, pilot_id: str) -> PilotContext:
        if pilot_id not in self._context:
            self._context[pilot_id] = PilotContext(
                races_until_next=races_until_next(self.snapshot, pilot_id),
                channel=preferred_channel(self.snapshot, pilot_id),
                eliminated=self._eliminated.get(pilot_id),
            )
        return self._context[pilot_id]

    def _get(self, name: str, scope: str, pilot_id: str, fn: Callable[[Sequence[str], str], Any]) -> Any:
        key = (name, scope, pilot_id)
        if key not in self._memo:
            self._memo[key] = fn(self.window(scope), pilot_id)
        return self._memo[key]

    def best_lap(self, scope: str, pilot_id: str) -> Optional[BestLap]:
        return self._get("best_lap", scope, pilot_id, self.metrics.best_lap_over)

    def consecutive(self, scope: str, pilot_id: str) -> Optional[ConsecutiveWindow]:
        return self._get("consecutive", scope, pilot_id, self.metrics.consecutive_over)

    def fastest_total_race(self, scope: str, pilot_id: str) -> Optional[TotalRace]:
        return self._get("total_race", scope, pilot_id, self.metrics.fastest_total_race_over)

    def best_holeshot(self, scope: str, pilot_id: str) -> Optional[float]:
        return self._get("holeshot", scope, pilot_id, self.metrics.best_holeshot_over)

    def total_laps(self, scope: str, pilot_id: str) -> int:
        return self._get("total_laps", scope, pilot_id, self.metrics.total_laps_over)


def default_sort_groups(inputs: LeaderboardInputs, scope: str = CURRENT) -> List[SortGroup]:
    def consecutive_time(pilot_id: str) -> Optional[float]:
        found = inputs.consecutive(scope, pilot_id)
        return found.time if found else None

    def best_lap_time(pilot_id: str) -> Optional[float]:
        found = inputs.best_lap(scope, pilot_id)
        return found.time if found else None

    def distance(pilot_id: str) -> int:
        return next_race_distance(inputs.context(pilot_id).races_until_next)

    def channel_number(pilot_id: str) -> int:
        channel = inputs.context(pilot_id).channel
        return channel.number if channel and channel.number is not None else _FAR

    def elimination_stage(pilot_id: str) -> Optional[int]:
        info = inputs.context(pilot_id).eliminated
        return info.stage if info else None

    def elimination_points(pilot_id: str) -> Optional[int]:
        info = inputs.context(pilot_id).eliminated
        return info.points if info else None

    eliminated = Condition("eliminated", lambda pid: inputs.context(pid).eliminated is not None)
    has_laps = Condition("has_laps", lambda pid: inputs.total_laps(scope, pid) > 0)
    has_consecutive = Condition("has_consecutive", lambda pid: inputs.consecutive(scope, pid) is not None)
    schedule = (
        SortCriterion("races_until_next", distance),
        SortCriterion("channel_number", channel_number),
    )
    return [
        SortGroup(
            "Active",
            condition=eliminated.inverse(),
            groups=(
                SortGroup(
                    "With Laps",
                    condition=has_laps,
                    groups=(
                        SortGroup("With Consecutive", (SortCriterion("consecutive", consecutive_time),), has_consecutive),
                        SortGroup("Without Consecutive", (SortCriterion("best_lap", best_lap_time),), has_consecutive.inverse()),
                    ),
                ),
                SortGroup("No Laps", schedule, has_laps.inverse()),
            ),
        ),
        SortGroup(
            "Eliminated",
            (
                SortCriterion("elimination_stage", elimination_stage, SortDirection.DESC),
                SortCriterion("elimination_points", elimination_points, SortDirection.DESC),
            ),
            eliminated,
        ),
        SortGroup("Fallback", schedule),
    ]


def position_changes(current: Sequence[str], previous: Sequence[str]) -> Dict[str, int]:
    """Pilot id -> previous 1-based rank, for pilots whose rank changed."""
    prev_rank = {pid: idx for idx, pid in enumerate(previous, start=1)}
    changes: Dict[str, int] = {}
    for idx, pid in enumerate(current, start=1):
        before = prev_rank.get(pid)
        if before is not None and before != idx:
            changes[pid] = before
    return changes


def apply_locked_positions(pilot_ids: Sequence[str], locks: Sequence[kv.LockedPosition]) -> List[str]:
    """Pin pilots to 1-based positions, lowest position first."""
    known = set(pilot_ids)
    applied = []
    seen = set()
    for lock in sorted(locks, key=lambda item: item.position):
        if lock.pilot_id in known and lock.pilot_id not in seen:
            applied.append(lock)
            seen.add(lock.pilot_id)
    ordered = [pid for pid in pilot_ids if pid not in seen]
    for lock in applied:
        ordered.insert(min(lock.position - 1, len(ordered)), lock.pilot_id)
    return ordered


@dataclass
class LeaderboardEntry:
    position: int
    pilot_id: str
    pilot_name: str
    best_lap: Optional[Dict[str, Any]] = None
    consecutive: Optional[Dict[str, Any]] = None
    fastest_total_race: Optional[Dict[str, Any]] = None
    best_holeshot: Optional[float] = None
    total_laps: int = 0
    channel: Optional[Dict[str, Any]] = None
    races_until_next: int = NO_UPCOMING
    next_race_label: Optional[str] = None
    eliminated: Optional[Dict[str, Any]] = None
    locked: bool = False


@dataclass
class Leaderboard:
    pilot_ids: List[str]
    previous_pilot_ids: List[str]
    entries: List[LeaderboardEntry]
    position_changes: Dict[str, int]
    split_index: Optional[int] = None
    next_race_label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pilot_ids": self.pilot_ids,
            "previous_pilot_ids": self.previous_pilot_ids,
            "entries": [asdict(e) for e in self.entries],
            "position_changes": self.position_changes,
            "split_index": self.split_index,
            "next_race_label": self.next_race_label,
        }


def _as_dict(value) -> Optional[Dict[str, Any]]:
    return asdict(value) if value is not None else None


def _channel_dict(channel: Optional[Channel]) -> Optional[Dict[str, Any]]:
    if channel is None:
        return None
    return {"id": channel.id, "label": channel.label, "number": channel.number, "color": channel.color}


def _label_for_pilot(resolved: kv.ResolvedOverrides, current_index: int, until_next: int) -> Optional[str]:
    if until_next == RACING_NOW:
        return None
    if until_next == NO_UPCOMING:
        return kv.next_race_label(resolved, None)
    return kv.next_race_label(resolved, current_index + 1 + until_next)


def build_leaderboard(
    snapshot: Snapshot,
    metrics: Optional[RaceMetrics] = None,
    bracket: Optional[BracketView] = None,
) -> Leaderboard:
    metrics = metrics or RaceMetrics(snapshot)
    bracket = bracket or build_bracket(snapshot, metrics)
    eliminated = {e.pilot_id: e for e in bracket.eliminated_pilots()} if bracket.enabled else {}
    inputs = LeaderboardInputs(snapshot, metrics, eliminated)

    current = sort_items(window_pilot_ids(snapshot, inputs.current_ids), default_sort_groups(inputs, CURRENT))
    previous = sort_items(window_pilot_ids(snapshot, inputs.previous_ids), default_sort_groups(inputs, PREVIOUS))
    changes = position_changes(current, previous)

    locks = kv.parse_locked_positions(snapshot.kv(kv.LEADERBOARD_NAMESPACE, kv.LOCKED_POSITIONS_KEY))
    ordered = apply_locked_positions(current, locks)
    locked_ids = {lock.pilot_id for lock in locks}

    races = snapshot.races_ordered()
    current_index = snapshot.current_race_index()
    overrides = kv.parse_next_race_overrides(snapshot.kv(kv.LEADERBOARD_NAMESPACE, kv.NEXT_RACE_OVERRIDES_KEY))
    resolved = kv.resolve_next_race_overrides(overrides, races)

    entries = []
    for position, pilot_id in enumerate(ordered, start=1):
        ctx = inputs.context(pilot_id)
        entries.append(
            LeaderboardEntry(
                position=position,
                pilot_id=pilot_id,
                pilot_name=snapshot.pilot_name(pilot_id),
                best_lap=_as_dict(inputs.best_lap(CURRENT, pilot_id)),
                consecutive=_as_dict(inputs.consecutive(CURRENT, pilot_id)),
                fastest_total_race=_as_dict(inputs.fastest_total_race(CURRENT, pilot_id)),
                best_holeshot=inputs.best_holeshot(CURRENT, pilot_id),
                total_laps=inputs.total_laps(CURRENT, pilot_id),
                channel=_channel_dict(ctx.channel),
                races_until_next=ctx.races_until_next,
                next_race_label=_label_for_pilot(resolved, current_index, ctx.races_until_next),
                eliminated=_as_dict(ctx.eliminated),
                locked=pilot_id in locked_ids,
            )
        )

    upcoming = current_index + 1 if 0 <= current_index < len(races) - 1 else None
    board = Leaderboard(
        pilot_ids=ordered,
        previous_pilot_ids=previous,
        entries=entries,
        position_changes=changes,
        split_index=kv.parse_split_index(snapshot.kv(kv.LEADERBOARD_NAMESPACE, kv.SPLIT_INDEX_KEY)),
        next_race_label=kv.next_race_label(resolved, upcoming),
    )
    logger.debug(
        "Leaderboard built: pilots=%d previous=%d changes=%d",
        len(board.pilot_ids),
        len(board.previous_pilot_ids),
        len(board.position_changes),
    )
    return board


@dataclass(frozen=True)
class ClosestLapRow:
    pilot_id: str
    pilot_name: str
    lap_time: float
    delta: float
    race_id: str
    lap_number: int


def closest_lap_rows(snapshot: Snapshot, target: Optional[float] = None) -> List[ClosestLapRow]:
    """Each pilot's lap closest to the target time, best first."""
    if target is None:
        target = kv.parse_closest_lap_target(snapshot.kv(kv.LEADERBOARD_NAMESPACE, kv.CLOSEST_LAP_TARGET_KEY))
    if target is None or target <= 0:
        return []
    best: Dict[str, ClosestLapRow] = {}
    for race in snapshot.races_ordered():
        for lap in snapshot.processed_laps(race.id):
            if lap.is_holeshot or not lap.pilot_id:
                continue
            delta = abs(lap.length_seconds - target)
            prior = best.get(lap.pilot_id)
            if prior is None or delta < prior.delta:
                best[lap.pilot_id] = ClosestLapRow(
                    pilot_id=lap.pilot_id,
                    pilot_name=snapshot.pilot_name(lap.pilot_id),
                    lap_time=lap.length_seconds,
                    delta=delta,
                    race_id=race.id,
                    lap_number=lap.lap_number,
                )
    return sorted(best.values(), key=lambda row: (row.delta, row.lap_time, row.pilot_id))


__all__ = [
    "ClosestLapRow",
    "Leaderboard",
    "LeaderboardEntry",
    "LeaderboardInputs",
    "NO_UPCOMING",
    "RACING_NOW",
    "apply_locked_positions",
    "build_leaderboard",
    "closest_lap_rows",
    "default_sort_groups",
    "next_race_distance",
    "position_changes",
    "preferred_channel",
    "race_windows",
    "races_until_next",
    "window_pilot_ids",
]
