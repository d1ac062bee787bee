"""Sort configurations for a single race and the resulting race rows."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .metrics import RaceMetrics
from .records import Race, Snapshot
from .sorting import Condition, NullHandling, SortCriterion, SortDirection, SortGroup, sort_items

ASC = SortDirection.ASC
DESC = SortDirection.DESC
LAST = NullHandling.LAST


def _criteria(metrics: RaceMetrics, race_id: str) -> Dict[str, SortCriterion]:
    def crit(name: str, fn, direction: SortDirection = ASC) -> SortCriterion:
        return SortCriterion(name, lambda pid: fn(race_id, pid), direction, LAST)

    return {
        "finish_elapsed": crit("finish_elapsed", metrics.finish_elapsed),
        "finish_detection": crit("finish_detection", metrics.finish_detection),
        "completion_time": crit("completion_time", metrics.completion_time),
        "best_lap": crit("best_lap", metrics.best_lap),
        "consecutive": crit("consecutive", metrics.consecutive),
        "first_detection": crit("first_detection", metrics.first_detection),
        "completed_laps": crit("completed_laps", metrics.completed_laps, DESC),
        "total_time": crit("total_time", metrics.total_time),
        "channel_slot": crit("channel_slot", metrics.channel_slot),
    }


def race_sort_groups(metrics: RaceMetrics, race_id: str) -> List[SortGroup]:
    """First-to-finish rounds: finishers always rank above non-finishers."""
    c = _criteria(metrics, race_id)
    completed = Condition("completed", lambda pid: metrics.has_finished(race_id, pid))
    return [
        SortGroup(
            "Completed",
            (
                c["finish_elapsed"],
                c["finish_detection"],
                c["completion_time"],
                c["best_lap"],
                c["first_detection"],
                c["completed_laps"],
                c["channel_slot"],
            ),
            completed,
        ),
        SortGroup(
            "Incomplete",
            (c["completed_laps"], c["total_time"], c["first_detection"], c["channel_slot"]),
            completed.inverse(),
        ),
        SortGroup("Fallback", (c["channel_slot"],)),
    ]


def practice_sort_groups(metrics: RaceMetrics, race_id: str) -> List[SortGroup]:
    """Qualifying and time-trial rounds, ranked by fastest consecutive window."""
    c = _criteria(metrics, race_id)
    has_window = Condition("has_consecutive", lambda pid: metrics.consecutive(race_id, pid) is not None)
    return [
        SortGroup(
            "With Consecutive",
            (
                c["consecutive"],
                c["best_lap"],
                c["finish_elapsed"],
                c["completed_laps"],
                c["first_detection"],
                c["channel_slot"],
            ),
            has_window,
        ),
        SortGroup(
            "Without Consecutive",
            (c["completed_laps"], c["best_lap"], c["first_detection"], c["channel_slot"]),
            has_window.inverse(),
        ),
        SortGroup("Fallback", (c["channel_slot"],)),
    ]


def is_race_round(snapshot: Snapshot, race: Race) -> bool:
    rnd = snapshot.round(race.round_id)
    # Unknown rounds are treated as races
    return rnd is None or rnd.event_type == "race"


def sort_groups_for(metrics: RaceMetrics, race: Race) -> List[SortGroup]:
    if is_race_round(metrics.snapshot, race):
        return race_sort_groups(metrics, race.id)
    return practice_sort_groups(metrics, race.id)


@dataclass
class RaceRow:
    position: int
    pilot_id: str
    pilot_name: str
    channel_id: Optional[str]
    channel_label: str
    completed_laps: int
    best_lap: Optional[float]
    consecutive: Optional[float]
    finish_elapsed: Optional[float]
    total_time: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sorted_pilot_ids(metrics: RaceMetrics, race: Race) -> List[str]:
    return sort_items(race.pilot_ids(), sort_groups_for(metrics, race))


def sorted_race_rows(snapshot: Snapshot, race_id: str, metrics: Optional[RaceMetrics] = None) -> List[RaceRow]:
    """Race entrants in resolved finishing order with 1-based positions."""
    race = snapshot.race(race_id)
    if race is None:
        return []
    metrics = metrics or RaceMetrics(snapshot)
    rows: List[RaceRow] = []
    for position, pilot_id in enumerate(sorted_pilot_ids(metrics, race), start=1):
        channel = snapshot.channel(race.channel_for(pilot_id))
        rows.append(
            RaceRow(
                position=position,
                pilot_id=pilot_id,
                pilot_name=snapshot.pilot_name(pilot_id),
                channel_id=channel.id if channel else None,
                channel_label=channel.label if channel else "",
                completed_laps=metrics.completed_laps(race_id, pilot_id),
                best_lap=metrics.best_lap(race_id, pilot_id),
                consecutive=metrics.consecutive(race_id, pilot_id),
                finish_elapsed=metrics.finish_elapsed(race_id, pilot_id),
                total_time=metrics.total_time(race_id, pilot_id),
            )
        )
    return rows


__all__ = [
    "RaceRow",
    "is_race_round",
    "practice_sort_groups",
    "race_sort_groups",
    "sort_groups_for",
    "sorted_pilot_ids",
    "sorted_race_rows",
]
