"""Per-pilot race metrics.

The module level functions are pure calculators over a pilot's processed
laps.  :class:`RaceMetrics` binds them to one :class:`~heatboard.records.Snapshot`
and memoises every ``(metric, race_id, pilot_id)`` lookup; build a fresh
instance whenever the snapshot changes.

Lap lengths are seconds.  Detection and race timestamps are epoch
milliseconds, so finish times are milliseconds too.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .records import ProcessedLap, Race, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_CONSECUTIVE_LAPS = 3


def consecutive_laps_setting() -> int:
    """Window size N for consecutive-lap metrics (``CONSECUTIVE_LAPS`` env)."""
    try:
        value = int(os.environ.get("CONSECUTIVE_LAPS", DEFAULT_CONSECUTIVE_LAPS))
    except ValueError:
        return DEFAULT_CONSECUTIVE_LAPS
    return value if value > 0 else DEFAULT_CONSECUTIVE_LAPS


@dataclass(frozen=True)
class BestLap:
    time: float
    race_id: str
    lap_number: int


@dataclass(frozen=True)
class ConsecutiveWindow:
    time: float
    race_id: str
    start_lap: int


@dataclass(frozen=True)
class TotalRace:
    time: float
    race_id: str


# ---------------------------------------------------------------------------
# Pure calculators over one pilot's processed laps in one race
# ---------------------------------------------------------------------------

def racing_laps(laps: Iterable[ProcessedLap]) -> List[ProcessedLap]:
    """Non-holeshot laps in lap-number order."""
    return sorted((lap for lap in laps if not lap.is_holeshot), key=lambda lap: lap.lap_number)


def holeshot_lap(laps: Iterable[ProcessedLap]) -> Optional[ProcessedLap]:
    shots = [lap for lap in laps if lap.is_holeshot]
    if not shots:
        return None
    return min(shots, key=lambda lap: lap.length_seconds)


def completed_lap_count(laps: Iterable[ProcessedLap]) -> int:
    return len(racing_laps(laps))


def best_lap_time(laps: Iterable[ProcessedLap]) -> Optional[float]:
    racing = racing_laps(laps)
    if not racing:
        return None
    return min(lap.length_seconds for lap in racing)


def best_consecutive(laps: Iterable[ProcessedLap], n: int) -> Optional[Tuple[float, int]]:
    """Fastest sum of ``n`` contiguous racing laps as ``(time, start_lap)``."""
    racing = racing_laps(laps)
    if n <= 0 or len(racing) < n:
        return None
    best: Optional[Tuple[float, int]] = None
    for i in range(len(racing) - n + 1):
        total = sum(lap.length_seconds for lap in racing[i:i + n])
        if best is None or total < best[0]:
            best = (total, racing[i].lap_number)
    return best


def _target_lap(laps: Iterable[ProcessedLap], target_laps: int) -> Optional[ProcessedLap]:
    if target_laps <= 0:
        return None
    racing = racing_laps(laps)
    if len(racing) < target_laps:
        return None
    return racing[target_laps - 1]


def finish_detection_time(laps: Iterable[ProcessedLap], target_laps: int) -> Optional[float]:
    lap = _target_lap(laps, target_laps)
    return lap.detection_time if lap is not None else None


def finish_elapsed_time(laps: Iterable[ProcessedLap], target_laps: int, race_start_ms: Optional[float]) -> Optional[float]:
    if race_start_ms is None:
        return None
    detected = finish_detection_time(laps, target_laps)
    if detected is None:
        return None
    return detected - race_start_ms


def completion_time(laps: Iterable[ProcessedLap], target_laps: int) -> Optional[float]:
    """Holeshot plus the first ``target_laps`` racing laps, in seconds."""
    laps = list(laps)
    if target_laps <= 0:
        return None
    racing = racing_laps(laps)
    if len(racing) < target_laps:
        return None
    shot = holeshot_lap(laps)
    base = shot.length_seconds if shot is not None else 0.0
    return base + sum(lap.length_seconds for lap in racing[:target_laps])


def total_time(laps: Iterable[ProcessedLap]) -> Optional[float]:
    laps = list(laps)
    if not laps:
        return None
    shot = holeshot_lap(laps)
    base = shot.length_seconds if shot is not None else 0.0
    return base + sum(lap.length_seconds for lap in racing_laps(laps))


def fastest_total_race(laps: Iterable[ProcessedLap], n: int) -> Optional[float]:
    """Holeshot plus the first ``n`` laps; needs a holeshot and ``n`` laps."""
    laps = list(laps)
    shot = holeshot_lap(laps)
    racing = racing_laps(laps)
    if shot is None or n <= 0 or len(racing) < n:
        return None
    return shot.length_seconds + sum(lap.length_seconds for lap in racing[:n])


class RaceMetrics:
    """Memoised metric lookups for one snapshot."""

    def __init__(self, snapshot: Snapshot, consecutive_laps: Optional[int] = None):
        self.snapshot = snapshot
        self.consecutive_laps = consecutive_laps if consecutive_laps else consecutive_laps_setting()
        self._cache: Dict[Tuple[str, str, str], Any] = {}
        logger.debug(
            "Metrics cache created: event=%s consecutive_laps=%s",
            snapshot.event_id,
            self.consecutive_laps,
        )

    def _memo(self, name: str, race_id: str, pilot_id: str, fn: Callable[[], Any]) -> Any:
        key = (name, race_id, pilot_id)
        if key not in self._cache:
            self._cache[key] = fn()
        return self._cache[key]

    def _race(self, race_id: str) -> Optional[Race]:
        return self.snapshot.race(race_id)

    def _target(self, race_id: str) -> int:
        race = self._race(race_id)
        return race.target_laps if race else 0

    def pilot_laps(self, race_id: str, pilot_id: str) -> List[ProcessedLap]:
        return self._memo(
            "laps",
            race_id,
            pilot_id,
            lambda: [lap for lap in self.snapshot.processed_laps(race_id) if lap.pilot_id == pilot_id],
        )

    # -- per race ----------------------------------------------------------
    def completed_laps(self, race_id: str, pilot_id: str) -> int:
        return self._memo("completed", race_id, pilot_id, lambda: completed_lap_count(self.pilot_laps(race_id, pilot_id)))

    def best_lap(self, race_id: str, pilot_id: str) -> Optional[float]:
        return self._memo("best_lap", race_id, pilot_id, lambda: best_lap_time(self.pilot_laps(race_id, pilot_id)))

    def consecutive(self, race_id: str, pilot_id: str) -> Optional[float]:
        def _calc():
            found = best_consecutive(self.pilot_laps(race_id, pilot_id), self.consecutive_laps)
            return found[0] if found else None

        return self._memo("consecutive", race_id, pilot_id, _calc)

    def finish_elapsed(self, race_id: str, pilot_id: str) -> Optional[float]:
        def _calc():
            race = self._race(race_id)
            if race is None:
                return None
            return finish_elapsed_time(self.pilot_laps(race_id, pilot_id), race.target_laps, race.start_ms)

        return self._memo("finish_elapsed", race_id, pilot_id, _calc)

    def finish_detection(self, race_id: str, pilot_id: str) -> Optional[float]:
        return self._memo(
            "finish_detection",
            race_id,
            pilot_id,
            lambda: finish_detection_time(self.pilot_laps(race_id, pilot_id), self._target(race_id)),
        )

    def completion_time(self, race_id: str, pilot_id: str) -> Optional[float]:
        return self._memo(
            "completion",
            race_id,
            pilot_id,
            lambda: completion_time(self.pilot_laps(race_id, pilot_id), self._target(race_id)),
        )

    def total_time(self, race_id: str, pilot_id: str) -> Optional[float]:
        return self._memo("total_time", race_id, pilot_id, lambda: total_time(self.pilot_laps(race_id, pilot_id)))

    def first_detection(self, race_id: str, pilot_id: str) -> Optional[float]:
        def _calc():
            times = [
                d.time_ms
                for d in self.snapshot.detections_for(race_id)
                if d.pilot_id == pilot_id and d.valid and d.time_ms is not None
            ]
            return min(times) if times else None

        return self._memo("first_detection", race_id, pilot_id, _calc)

    def channel_slot(self, race_id: str, pilot_id: str) -> Optional[int]:
        race = self._race(race_id)
        if race is None:
            return None
        for idx, pc in enumerate(race.pilot_channels):
            if pc.pilot_id == pilot_id:
                return idx
        return None

    def has_finished(self, race_id: str, pilot_id: str) -> bool:
        return self.finish_elapsed(race_id, pilot_id) is not None or self.completion_time(race_id, pilot_id) is not None

    # -- folded across a window of races ------------------------------------
    def best_lap_over(self, race_ids: Sequence[str], pilot_id: str) -> Optional[BestLap]:
        best: Optional[BestLap] = None
        for race_id in race_ids:
            racing = racing_laps(self.pilot_laps(race_id, pilot_id))
            if not racing:
                continue
            lap = min(racing, key=lambda item: item.length_seconds)
            if best is None or lap.length_seconds < best.time:
                best = BestLap(lap.length_seconds, race_id, lap.lap_number)
        return best

    def consecutive_over(self, race_ids: Sequence[str], pilot_id: str) -> Optional[ConsecutiveWindow]:
        best: Optional[ConsecutiveWindow] = None
        for race_id in race_ids:
            found = best_consecutive(self.pilot_laps(race_id, pilot_id), self.consecutive_laps)
            if found is None:
                continue
            if best is None or found[0] < best.time:
                best = ConsecutiveWindow(found[0], race_id, found[1])
        return best

    def fastest_total_race_over(self, race_ids: Sequence[str], pilot_id: str) -> Optional[TotalRace]:
        best: Optional[TotalRace] = None
        for race_id in race_ids:
            value = fastest_total_race(self.pilot_laps(race_id, pilot_id), self.consecutive_laps)
            if value is None:
                continue
            if best is None or value < best.time:
                best = TotalRace(value, race_id)
        return best

    def best_holeshot_over(self, race_ids: Sequence[str], pilot_id: str) -> Optional[float]:
        best: Optional[float] = None
        for race_id in race_ids:
            shot = holeshot_lap(self.pilot_laps(race_id, pilot_id))
            if shot is not None and (best is None or shot.length_seconds < best):
                best = shot.length_seconds
        return best

    def total_laps_over(self, race_ids: Sequence[str], pilot_id: str) -> int:
        return sum(self.completed_laps(race_id, pilot_id) for race_id in race_ids)


__all__ = [
    "BestLap",
    "ConsecutiveWindow",
    "DEFAULT_CONSECUTIVE_LAPS",
    "RaceMetrics",
    "TotalRace",
    "best_consecutive",
    "best_lap_time",
    "completed_lap_count",
    "completion_time",
    "consecutive_laps_setting",
    "fastest_total_race",
    "finish_detection_time",
    "finish_elapsed_time",
    "holeshot_lap",
    "racing_laps",
    "total_time",
]
