"""Parsers for key-value configuration entries.

Every value arrives as a JSON string written by an admin screen.  Parsing
never raises: a malformed value is logged at WARNING and the feature it
configures falls back to its default (usually disabled).
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .records import Race

logger = logging.getLogger(__name__)

RACE_NAMESPACE = "race"
LEADERBOARD_NAMESPACE = "leaderboard"
BRACKET_NAMESPACE = "bracket"

CURRENT_ORDER_KEY = "currentOrder"
SPLIT_INDEX_KEY = "splitIndex"
LOCKED_POSITIONS_KEY = "lockedPositions"
NEXT_RACE_OVERRIDES_KEY = "nextRaceOverrides"
CLOSEST_LAP_TARGET_KEY = "closestLapTargetSeconds"
ELIMINATION_CONFIG_KEY = "eliminationConfig"

DEFAULT_FORMAT_ID = "double-elim-6p-v1"

_MISSING = object()


def _decode(raw: Optional[str], key: str) -> Any:
    if raw is None:
        return _MISSING
    if not isinstance(raw, str):
        return raw
    if not raw.strip():
        return _MISSING
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Malformed KV value for %s: %r", key, raw[:80])
        return _MISSING


def _finite_number(val: Any) -> Optional[float]:
    if isinstance(val, bool):
        return None
    if not isinstance(val, (int, float, str)):
        return None
    try:
        out = float(val.strip() if isinstance(val, str) else val)
    except (ValueError, OverflowError):
        return None
    if math.isnan(out) or math.isinf(out):
        return None
    return out


def _clean_str(val: Any) -> str:
    return val.strip() if isinstance(val, str) else ""


# ---------------------------------------------------------------------------
# race/currentOrder
# ---------------------------------------------------------------------------

def parse_current_order(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    data = _decode(raw, CURRENT_ORDER_KEY)
    if not isinstance(data, dict):
        if data is not _MISSING:
            logger.warning("Ignoring %s: expected an object", CURRENT_ORDER_KEY)
        return None
    out: Dict[str, Any] = {}
    order = _finite_number(data.get("order"))
    if order is not None:
        out["order"] = int(order)
    source_id = _clean_str(data.get("sourceId"))
    if source_id:
        out["source_id"] = source_id
    return out or None


# ---------------------------------------------------------------------------
# leaderboard/splitIndex, leaderboard/closestLapTargetSeconds
# ---------------------------------------------------------------------------

def parse_split_index(raw: Optional[str]) -> Optional[int]:
    """Row after which the leaderboard draws a split line, or None."""
    data = _decode(raw, SPLIT_INDEX_KEY)
    if data is _MISSING:
        if raw is not None and raw.strip():
            # a bare non-JSON string may still be a number
            data = raw
        else:
            return None
    value = _finite_number(data)
    if value is None:
        logger.warning("Ignoring %s: %r is not a number", SPLIT_INDEX_KEY, raw)
        return None
    floored = math.floor(value)
    return floored if floored > 0 else None


def parse_closest_lap_target(raw: Optional[str]) -> Optional[float]:
    data = _decode(raw, CLOSEST_LAP_TARGET_KEY)
    if data is _MISSING:
        return None
    value = _finite_number(data)
    if value is None or value <= 0:
        logger.warning("Ignoring %s: %r is not a positive number", CLOSEST_LAP_TARGET_KEY, raw)
        return None
    return value


# ---------------------------------------------------------------------------
# leaderboard/lockedPositions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LockedPosition:
    pilot_id: str
    position: int
    note: Optional[str] = None
    done: bool = False


def parse_locked_positions(raw: Optional[str]) -> List[LockedPosition]:
    data = _decode(raw, LOCKED_POSITIONS_KEY)
    if data is _MISSING:
        return []
    if not isinstance(data, list):
        logger.warning("Ignoring %s: expected a list", LOCKED_POSITIONS_KEY)
        return []
    out: List[LockedPosition] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        pilot_id = _clean_str(entry.get("pilotId"))
        position = _finite_number(entry.get("position"))
        if not pilot_id or position is None or position <= 0:
            continue
        note = entry.get("note")
        out.append(
            LockedPosition(
                pilot_id=pilot_id,
                position=max(1, math.floor(position)),
                note=note if isinstance(note, str) else None,
                done=bool(entry.get("done")),
            )
        )
    return out


# ---------------------------------------------------------------------------
# leaderboard/nextRaceOverrides
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NextRaceOverride:
    label: str
    start_source_id: Optional[str] = None
    end_source_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"label": self.label}
        if self.start_source_id:
            out["startSourceId"] = self.start_source_id
        if self.end_source_id:
            out["endSourceId"] = self.end_source_id
        return out


@dataclass(frozen=True)
class ResolvedNextRaceOverride:
    label: str
    start_index: int
    end_index: int
    start_source_id: str
    end_source_id: Optional[str] = None

    def covers(self, index: int) -> bool:
        return self.start_index <= index <= self.end_index


@dataclass(frozen=True)
class ResolvedOverrides:
    ranges: Tuple[ResolvedNextRaceOverride, ...] = ()
    no_races_label: Optional[str] = None


def _override_from(entry: Any) -> Optional[NextRaceOverride]:
    if not isinstance(entry, dict):
        return None
    return NextRaceOverride(
        label=_clean_str(entry.get("label")),
        start_source_id=_clean_str(entry.get("startSourceId")) or None,
        end_source_id=_clean_str(entry.get("endSourceId")) or None,
    )


def parse_next_race_overrides(raw: Optional[str], keep_empty_labels: bool = False) -> List[NextRaceOverride]:
    """Stored override rows.

    Rows with an empty label are dropped unless ``keep_empty_labels`` is set
    (the admin form validates them instead).
    """
    data = _decode(raw, NEXT_RACE_OVERRIDES_KEY)
    if data is _MISSING:
        return []
    if not isinstance(data, list):
        logger.warning("Ignoring %s: expected a list", NEXT_RACE_OVERRIDES_KEY)
        return []
    out = []
    for entry in data:
        override = _override_from(entry)
        if override is None:
            continue
        if not override.label and not keep_empty_labels:
            continue
        out.append(override)
    return out


def _index_by_source(races: Sequence[Race]) -> Dict[str, int]:
    index: Dict[str, int] = {}
    for idx, race in enumerate(races):
        source_id = (race.source_id or "").strip()
        if source_id and source_id not in index:
            index[source_id] = idx
    return index


def resolve_next_race_overrides(overrides: Sequence[NextRaceOverride], races: Sequence[Race]) -> ResolvedOverrides:
    """Map override rows onto indexes of the ordered race list.

    Rows whose races cannot be found are skipped; the first labelled row
    without a start becomes the "no more races" label.
    """
    index = _index_by_source(races)
    last_index = len(races) - 1
    ranges: List[ResolvedNextRaceOverride] = []
    no_races_label: Optional[str] = None
    for override in overrides:
        if not override.label:
            continue
        if not override.start_source_id:
            if no_races_label is None:
                no_races_label = override.label
            continue
        start = index.get(override.start_source_id)
        if start is None:
            continue
        if override.end_source_id:
            end = index.get(override.end_source_id)
            if end is None:
                continue
        else:
            end = last_index
        ranges.append(
            ResolvedNextRaceOverride(
                label=override.label,
                start_index=min(start, end),
                end_index=max(start, end),
                start_source_id=override.start_source_id,
                end_source_id=override.end_source_id,
            )
        )
    ranges.sort(key=lambda r: r.start_index)
    return ResolvedOverrides(tuple(ranges), no_races_label)


def validate_next_race_overrides(overrides: Sequence[NextRaceOverride], races: Sequence[Race]) -> List[str]:
    """Human-readable problems with a set of override rows; empty when valid."""
    index = _index_by_source(races)
    errors: List[str] = []
    ranges: List[Tuple[int, int, int]] = []
    seen_no_races = False
    for row, override in enumerate(overrides, start=1):
        if not override.label:
            errors.append(f"Row {row}: label is required.")
        if not override.start_source_id:
            if seen_no_races:
                errors.append(f'Row {row}: only one "No more races" override is allowed.')
            seen_no_races = True
            continue
        start = index.get(override.start_source_id)
        if start is None:
            errors.append(f"Row {row}: start race is not in the current schedule.")
            continue
        end = start
        if override.end_source_id:
            found = index.get(override.end_source_id)
            if found is None:
                errors.append(f"Row {row}: end race is not in the current schedule.")
                continue
            end = found
        else:
            end = len(races) - 1
        if start > end:
            errors.append(f"Row {row}: start race must come before the end race.")
            continue
        ranges.append((start, end, row))
    ranges.sort()
    for prev, curr in zip(ranges, ranges[1:]):
        if curr[0] <= prev[1]:
            errors.append(f"Rows {prev[2]} and {curr[2]} overlap. Adjust the ranges.")
    return errors


def next_race_label(resolved: ResolvedOverrides, race_index: Optional[int]) -> Optional[str]:
    """Label shown in place of an upcoming race.

    ``race_index`` is the upcoming race's index in the ordered race list, or
    None when nothing is scheduled (the "no more races" label applies).
    """
    if race_index is None or race_index < 0:
        return resolved.no_races_label
    for rng in resolved.ranges:
        if rng.covers(race_index):
            return rng.label
    return None


# ---------------------------------------------------------------------------
# bracket/eliminationConfig
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BracketAnchor:
    bracket_order: int
    race_order: Optional[int] = None
    race_source_id: Optional[str] = None


@dataclass(frozen=True)
class EliminationConfig:
    format_id: str = DEFAULT_FORMAT_ID
    anchors: Tuple[BracketAnchor, ...] = ()
    notes: Optional[str] = None
    run_sequence: Tuple[int, ...] = field(default=())


def _parse_anchor(entry: Any) -> Optional[BracketAnchor]:
    if not isinstance(entry, dict):
        return None
    order = _finite_number(entry.get("bracketOrder"))
    if order is None or order != int(order) or order < 1:
        return None
    race_order_val = _finite_number(entry.get("raceOrder"))
    race_order = int(race_order_val) if race_order_val is not None and race_order_val == int(race_order_val) else None
    source_id = _clean_str(entry.get("raceSourceId")) or None
    if race_order is None and source_id is None:
        return None
    return BracketAnchor(int(order), race_order, source_id)


def parse_elimination_config(raw: Optional[str]) -> EliminationConfig:
    data = _decode(raw, ELIMINATION_CONFIG_KEY)
    if data is _MISSING:
        return EliminationConfig()
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: expected an object", ELIMINATION_CONFIG_KEY)
        return EliminationConfig()
    format_id = _clean_str(data.get("formatId")) or DEFAULT_FORMAT_ID
    anchors_raw = data.get("anchors")
    anchors = tuple(
        a for a in (_parse_anchor(e) for e in (anchors_raw if isinstance(anchors_raw, list) else [])) if a
    )
    notes = data.get("notes")
    seq_raw = data.get("runSequence")
    run_sequence: Tuple[int, ...] = ()
    if isinstance(seq_raw, list):
        run_sequence = tuple(
            int(v) for v in (_finite_number(x) for x in seq_raw) if v is not None and v >= 1 and v == int(v)
        )
    return EliminationConfig(
        format_id=format_id,
        anchors=anchors,
        notes=notes if isinstance(notes, str) else None,
        run_sequence=run_sequence,
    )


__all__ = [
    "BRACKET_NAMESPACE",
    "BracketAnchor",
    "CLOSEST_LAP_TARGET_KEY",
    "CURRENT_ORDER_KEY",
    "DEFAULT_FORMAT_ID",
    "ELIMINATION_CONFIG_KEY",
    "EliminationConfig",
    "LEADERBOARD_NAMESPACE",
    "LOCKED_POSITIONS_KEY",
    "LockedPosition",
    "NEXT_RACE_OVERRIDES_KEY",
    "NextRaceOverride",
    "RACE_NAMESPACE",
    "ResolvedNextRaceOverride",
    "ResolvedOverrides",
    "SPLIT_INDEX_KEY",
    "next_race_label",
    "parse_closest_lap_target",
    "parse_current_order",
    "parse_elimination_config",
    "parse_locked_positions",
    "parse_next_race_overrides",
    "parse_split_index",
    "resolve_next_race_overrides",
    "validate_next_race_overrides",
]
