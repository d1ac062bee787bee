"""Immutable record views over one event's data.

Everything the ranking engine reads lives on a :class:`Snapshot`.  Records
are plain frozen dataclasses built from database rows or snapshot JSON via
``from_row``; both camelCase (snapshot export) and snake_case (PostgreSQL)
field names are accepted.
"""

from __future__ import annotations

import hashlib
import json
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from functools import cached_property
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


def _pick(row: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in row and row[name] is not None:
            return row[name]
    return default


def _as_int(val: Any, default: int = 0) -> int:
    try:
        return int(val)
    except (TypeError, ValueError):
        return default


def _as_float(val: Any) -> Optional[float]:
    try:
        out = float(val)
    except (TypeError, ValueError):
        return None
    if math.isnan(out) or math.isinf(out):
        return None
    return out


def _as_bool(val: Any, default: bool = False) -> bool:
    if val is None:
        return default
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "t")
    return bool(val)


def _as_str(val: Any) -> str:
    return "" if val is None else str(val)


def timestamp_present(value: Any) -> bool:
    """Timestamps that are empty or "0"-prefixed have not happened yet."""
    if value is None:
        return False
    text = str(value).strip()
    return bool(text) and not text.startswith("0")


def to_millis(value: Any) -> Optional[float]:
    """Normalise a timestamp to epoch milliseconds.

    Accepts epoch numbers (already in milliseconds), numeric strings and
    ISO-8601 strings.  Returns ``None`` for anything that has not occurred or
    cannot be read.
    """
    if not timestamp_present(value):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _as_float(value)
    text = str(value).strip()
    num = _as_float(text)
    if num is not None:
        return num
    iso = text.replace("Z", "+00:00").replace(" ", "T", 1)
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000.0


@dataclass(frozen=True)
class Pilot:
    id: str
    name: str
    source_id: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Pilot":
        return cls(
            id=_as_str(_pick(row, "id")),
            name=_as_str(_pick(row, "name", default="")),
            source_id=_as_str(_pick(row, "sourceId", "source_id", default="")),
        )


@dataclass(frozen=True)
class Channel:
    id: str
    short_band: str = ""
    number: Optional[int] = None
    color: str = ""

    @property
    def label(self) -> str:
        return f"{self.short_band}{self.number if self.number is not None else ''}".strip()

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Channel":
        number = _pick(row, "number")
        return cls(
            id=_as_str(_pick(row, "id")),
            short_band=_as_str(_pick(row, "shortBand", "short_band", default="")),
            number=_as_int(number) if number is not None else None,
            color=_as_str(_pick(row, "color", default="")),
        )


@dataclass(frozen=True)
class Round:
    id: str
    name: str = ""
    order: int = 0
    event_type: str = "race"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Round":
        return cls(
            id=_as_str(_pick(row, "id")),
            name=_as_str(_pick(row, "name", default="")),
            order=_as_int(_pick(row, "order", "round_order", default=0)),
            event_type=_as_str(_pick(row, "eventType", "event_type", default="race")).lower(),
        )


@dataclass(frozen=True)
class PilotChannel:
    id: str
    pilot_id: str
    channel_id: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PilotChannel":
        return cls(
            id=_as_str(_pick(row, "id", default="")),
            pilot_id=_as_str(_pick(row, "pilotId", "pilot_id", "pilot", default="")),
            channel_id=_as_str(_pick(row, "channelId", "channel_id", "channel", default="")),
        )


@dataclass(frozen=True)
class Race:
    id: str
    round_id: str = ""
    race_order: int = 0
    race_number: int = 0
    source_id: str = ""
    start: Optional[str] = None
    end: Optional[str] = None
    target_laps: int = 0
    valid: bool = True
    pilot_channels: Tuple[PilotChannel, ...] = ()

    @property
    def has_started(self) -> bool:
        return timestamp_present(self.start)

    @property
    def has_ended(self) -> bool:
        return timestamp_present(self.end)

    @property
    def is_active(self) -> bool:
        return self.has_started and not self.has_ended

    @property
    def is_completed(self) -> bool:
        return self.has_started and self.has_ended

    @property
    def start_ms(self) -> Optional[float]:
        return to_millis(self.start)

    def pilot_ids(self) -> List[str]:
        seen: List[str] = []
        for pc in self.pilot_channels:
            if pc.pilot_id and pc.pilot_id not in seen:
                seen.append(pc.pilot_id)
        return seen

    def channel_for(self, pilot_id: str) -> Optional[str]:
        for pc in self.pilot_channels:
            if pc.pilot_id == pilot_id:
                return pc.channel_id or None
        return None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], pilot_channels: Iterable[PilotChannel] = ()) -> "Race":
        start = _pick(row, "start")
        end = _pick(row, "end")
        embedded = _pick(row, "pilotChannels", "pilot_channels", default=None)
        pcs = tuple(pilot_channels)
        if not pcs and embedded:
            pcs = tuple(PilotChannel.from_row(pc) for pc in embedded)
        return cls(
            id=_as_str(_pick(row, "id")),
            round_id=_as_str(_pick(row, "round", "roundId", "round_id", default="")),
            race_order=_as_int(_pick(row, "raceOrder", "race_order", default=0)),
            race_number=_as_int(_pick(row, "raceNumber", "race_number", default=0)),
            source_id=_as_str(_pick(row, "sourceId", "source_id", default="")).strip(),
            start=None if start is None else str(start),
            end=None if end is None else str(end),
            target_laps=_as_int(_pick(row, "targetLaps", "target_laps", default=0)),
            valid=_as_bool(_pick(row, "valid"), default=True),
            pilot_channels=pcs,
        )


@dataclass(frozen=True)
class Lap:
    id: str
    race_id: str
    detection_id: str
    lap_number: int = 0
    length_seconds: float = 0.0
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Lap":
        length = _as_float(_pick(row, "lengthSeconds", "length_seconds"))
        start_time = _pick(row, "startTime", "start_time")
        end_time = _pick(row, "endTime", "end_time")
        return cls(
            id=_as_str(_pick(row, "id")),
            race_id=_as_str(_pick(row, "race", "raceId", "race_id", default="")),
            detection_id=_as_str(_pick(row, "detection", "detectionId", "detection_id", default="")),
            lap_number=_as_int(_pick(row, "lapNumber", "lap_number", default=0)),
            length_seconds=length if length is not None else 0.0,
            start_time=None if start_time is None else str(start_time),
            end_time=None if end_time is None else str(end_time),
        )


@dataclass(frozen=True)
class Detection:
    id: str
    race_id: str
    pilot_id: str
    is_holeshot: bool = False
    valid: bool = True
    time: Optional[str] = None

    @property
    def time_ms(self) -> Optional[float]:
        return to_millis(self.time)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Detection":
        time_val = _pick(row, "time")
        return cls(
            id=_as_str(_pick(row, "id")),
            race_id=_as_str(_pick(row, "race", "raceId", "race_id", default="")),
            pilot_id=_as_str(_pick(row, "pilot", "pilotId", "pilot_id", default="")),
            is_holeshot=_as_bool(_pick(row, "isHoleshot", "is_holeshot")),
            valid=_as_bool(_pick(row, "valid"), default=True),
            time=None if time_val is None else str(time_val),
        )


@dataclass(frozen=True)
class KVEntry:
    namespace: str
    key: str
    value: Optional[str]
    event_id: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "KVEntry":
        value = _pick(row, "value")
        if value is not None and not isinstance(value, str):
            # JSONB columns come back already decoded
            value = json.dumps(value)
        return cls(
            namespace=_as_str(_pick(row, "namespace", default="")),
            key=_as_str(_pick(row, "key", default="")),
            value=value,
            event_id=_as_str(_pick(row, "event", "eventId", "event_id", default="")),
        )


@dataclass(frozen=True)
class ProcessedLap:
    """A lap joined to its (valid) detection."""

    id: str
    race_id: str
    lap_number: int
    length_seconds: float
    pilot_id: str
    is_holeshot: bool
    detection_time: Optional[float]


@dataclass(frozen=True)
class RaceStatus:
    has_started: bool
    is_active: bool
    is_completed: bool

    @classmethod
    def of(cls, race: Optional[Race]) -> "RaceStatus":
        if race is None:
            return cls(False, False, False)
        return cls(race.has_started, race.is_active, race.is_completed)


def process_laps(laps: Iterable[Lap], detections: Iterable[Detection]) -> List[ProcessedLap]:
    """Join laps to detections, dropping laps whose detection is missing or invalid."""
    by_id = {d.id: d for d in detections}
    out: List[ProcessedLap] = []
    for lap in laps:
        det = by_id.get(lap.detection_id)
        if det is None or not det.valid:
            continue
        out.append(
            ProcessedLap(
                id=lap.id,
                race_id=lap.race_id,
                lap_number=lap.lap_number,
                length_seconds=lap.length_seconds,
                pilot_id=det.pilot_id,
                is_holeshot=det.is_holeshot,
                detection_time=det.time_ms,
            )
        )
    out.sort(key=lambda lap: (lap.lap_number, lap.id))
    return out


def find_current_race_index(races: List[Race]) -> int:
    """Index of the race happening now in an ordered race list.

    The first valid active race wins; otherwise the race after the last
    completed one (capped at the final index); otherwise the first race.
    Returns -1 for an empty list.
    """
    if not races:
        return -1
    for idx, race in enumerate(races):
        if race.valid and race.is_active:
            return idx
    for idx in range(len(races) - 1, -1, -1):
        race = races[idx]
        if race.valid and race.is_completed:
            return min(idx + 1, len(races) - 1)
    return 0


def find_last_completed_index(races: List[Race]) -> int:
    for idx in range(len(races) - 1, -1, -1):
        if races[idx].valid and races[idx].is_completed:
            return idx
    return -1


@dataclass(frozen=True, eq=False)
class Snapshot:
    """One consistent view of an event's records."""

    event_id: str = ""
    pilots: Tuple[Pilot, ...] = ()
    channels: Tuple[Channel, ...] = ()
    rounds: Tuple[Round, ...] = ()
    races: Tuple[Race, ...] = ()
    laps: Tuple[Lap, ...] = ()
    detections: Tuple[Detection, ...] = ()
    kv_entries: Tuple[KVEntry, ...] = field(default=())

    # -- indexes -----------------------------------------------------------
    @cached_property
    def _pilots_by_id(self) -> Dict[str, Pilot]:
        return {p.id: p for p in self.pilots}

    @cached_property
    def _channels_by_id(self) -> Dict[str, Channel]:
        return {c.id: c for c in self.channels}

    @cached_property
    def _rounds_by_id(self) -> Dict[str, Round]:
        return {r.id: r for r in self.rounds}

    @cached_property
    def _races_by_id(self) -> Dict[str, Race]:
        return {r.id: r for r in self.races}

    @cached_property
    def _laps_by_race(self) -> Dict[str, List[Lap]]:
        out: Dict[str, List[Lap]] = {}
        for lap in self.laps:
            out.setdefault(lap.race_id, []).append(lap)
        return out

    @cached_property
    def _detections_by_race(self) -> Dict[str, List[Detection]]:
        out: Dict[str, List[Detection]] = {}
        for det in self.detections:
            out.setdefault(det.race_id, []).append(det)
        return out

    @cached_property
    def _processed(self) -> Dict[str, List[ProcessedLap]]:
        return {
            race_id: process_laps(laps, self._detections_by_race.get(race_id, []))
            for race_id, laps in self._laps_by_race.items()
        }

    @cached_property
    def _ordered(self) -> List[Race]:
        def _key(race: Race):
            rnd = self._rounds_by_id.get(race.round_id)
            return (rnd.order if rnd else 0, race.race_order, race.race_number, race.id)

        return sorted((r for r in self.races if r.valid), key=_key)

    # -- accessors ---------------------------------------------------------
    def pilot(self, pilot_id: str) -> Optional[Pilot]:
        return self._pilots_by_id.get(pilot_id)

    def pilot_name(self, pilot_id: str) -> str:
        pilot = self.pilot(pilot_id)
        return pilot.name if pilot else "Unknown"

    def channel(self, channel_id: Optional[str]) -> Optional[Channel]:
        if not channel_id:
            return None
        return self._channels_by_id.get(channel_id)

    def round(self, round_id: str) -> Optional[Round]:
        return self._rounds_by_id.get(round_id)

    def race(self, race_id: str) -> Optional[Race]:
        return self._races_by_id.get(race_id)

    def laps_for(self, race_id: str) -> List[Lap]:
        return list(self._laps_by_race.get(race_id, []))

    def detections_for(self, race_id: str) -> List[Detection]:
        return list(self._detections_by_race.get(race_id, []))

    def processed_laps(self, race_id: str) -> List[ProcessedLap]:
        return self._processed.get(race_id, [])

    def races_ordered(self) -> List[Race]:
        """Valid races ordered by round order, then race order."""
        return list(self._ordered)

    def races_by_race_order(self) -> List[Race]:
        return sorted(self.races, key=lambda r: (r.race_order, r.id))

    def current_race_index(self) -> int:
        return find_current_race_index(self._ordered)

    def current_race(self) -> Optional[Race]:
        idx = self.current_race_index()
        return self._ordered[idx] if idx >= 0 else None

    def last_completed_race(self) -> Optional[Race]:
        idx = find_last_completed_index(self._ordered)
        return self._ordered[idx] if idx >= 0 else None

    def status(self, race_id: str) -> RaceStatus:
        return RaceStatus.of(self.race(race_id))

    def kv(self, namespace: str, key: str) -> Optional[str]:
        """Raw JSON string stored under (namespace, key) for this event."""
        for entry in self.kv_entries:
            if entry.namespace != namespace or entry.key != key:
                continue
            if entry.event_id and self.event_id and entry.event_id != self.event_id:
                continue
            return entry.value
        return None

    def has_kv(self, namespace: str, key: str) -> bool:
        return self.kv(namespace, key) is not None

    # -- serialisation -----------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "pilots": [asdict(p) for p in self.pilots],
            "channels": [asdict(c) for c in self.channels],
            "rounds": [asdict(r) for r in self.rounds],
            "races": [asdict(r) for r in self.races],
            "laps": [asdict(lap) for lap in self.laps],
            "detections": [asdict(d) for d in self.detections],
            "kv": [asdict(e) for e in self.kv_entries],
        }

    @cached_property
    def version(self) -> str:
        """Content hash; identical records always give the same version."""
        data = self.to_dict()
        for name in ("pilots", "channels", "rounds", "races", "laps", "detections"):
            data[name] = sorted(data[name], key=lambda rec: str(rec.get("id")))
        data["kv"] = sorted(data["kv"], key=lambda rec: (rec["namespace"], rec["key"], rec["event_id"]))
        payload = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Snapshot":
        """Build a snapshot from collections keyed by name.

        ``pilotChannels`` rows (each carrying a ``race`` reference) are folded
        into their races; races may also embed their own ``pilotChannels``.
        """
        pcs_by_race: Dict[str, List[PilotChannel]] = {}
        for row in data.get("pilotChannels") or data.get("pilot_channels") or []:
            race_id = _as_str(_pick(row, "race", "raceId", "race_id", default=""))
            pcs_by_race.setdefault(race_id, []).append(PilotChannel.from_row(row))
        event = data.get("event") or data.get("event_id") or next(iter(data.get("events") or []), "")
        if isinstance(event, Mapping):
            event = event.get("id") or ""
        return cls(
            event_id=str(event),
            pilots=tuple(Pilot.from_row(r) for r in data.get("pilots") or []),
            channels=tuple(Channel.from_row(r) for r in data.get("channels") or []),
            rounds=tuple(Round.from_row(r) for r in data.get("rounds") or []),
            races=tuple(
                Race.from_row(r, pcs_by_race.get(_as_str(_pick(r, "id")), ()))
                for r in data.get("races") or []
            ),
            laps=tuple(Lap.from_row(r) for r in data.get("laps") or []),
            detections=tuple(Detection.from_row(r) for r in data.get("detections") or []),
            kv_entries=tuple(KVEntry.from_row(r) for r in data.get("client_kv") or data.get("kv") or []),
        )


__all__ = [
    "Channel",
    "Detection",
    "KVEntry",
    "Lap",
    "Pilot",
    "PilotChannel",
    "ProcessedLap",
    "Race",
    "RaceStatus",
    "Round",
    "Snapshot",
    "find_current_race_index",
    "find_last_completed_index",
    "process_laps",
    "timestamp_present",
    "to_millis",
]
