"""Elimination bracket formats and their mapping onto the live race list.

A format is a static graph: nodes (one per bracket race) grouped into
rounds and joined by ``advance``/``drop`` edges.  Formats ship as JSON under
``heatboard/formats`` and are validated when loaded; any structural or
referential problem raises :class:`BracketFormatError`.

The mapping from nodes to races is recomputed from scratch for every
snapshot.  By default node ``n`` is the ``n``-th race in race order; anchors
from the ``bracket/eliminationConfig`` entry shift that alignment.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from . import kv
from .metrics import RaceMetrics
from .race_sorting import sorted_race_rows
from .records import Race, Snapshot

logger = logging.getLogger(__name__)

FORMATS_DIR = Path(__file__).resolve().parent / "formats"
DEFAULT_FORMAT_ID = kv.DEFAULT_FORMAT_ID

# format id -> (file name, display label)
FORMAT_FILES = {
    "double-elim-6p-v1": ("double-elim-6p-v1.json", "Double Elimination (6P v1)"),
    "nzo-top24-de-v1": ("nzo-top24-de-v1.json", "NZO Top 24 Double Elimination"),
}

STAGES = ("winners", "redemption")
EDGE_TYPES = ("advance", "drop")

POSITION_POINTS = {1: 100, 2: 80, 3: 60, 4: 40, 5: 20, 6: 10}


def position_to_points(position: Optional[int]) -> int:
    """Points for a finishing position: 100/80/60/40/20/10, else 0."""
    if position is None:
        return 0
    return POSITION_POINTS.get(position, 0)


class BracketFormatError(ValueError):
    """A bracket format document is malformed or internally inconsistent."""


Destination = Union[int, str]


@dataclass(frozen=True)
class ProgressionRule:
    positions: Tuple[int, ...]
    destination: Destination


@dataclass(frozen=True)
class BracketNode:
    order: int
    code: str
    name: str
    round_id: str
    round_label: str
    stage: str
    description: str
    slot_count: int = 6
    rules: Tuple[ProgressionRule, ...] = ()

    def rule_for(self, position: Optional[int]) -> Optional[ProgressionRule]:
        if position is None:
            return None
        for rule in self.rules:
            if position in rule.positions:
                return rule
        return None


@dataclass(frozen=True)
class BracketRound:
    id: str
    label: str
    node_orders: Tuple[int, ...]


@dataclass(frozen=True)
class BracketEdge:
    source: int
    target: int
    type: str


@dataclass(frozen=True)
class BracketFormat:
    id: str
    label: str
    nodes: Tuple[BracketNode, ...]
    rounds: Tuple[BracketRound, ...]
    edges: Tuple[BracketEdge, ...]
    run_sequence: Optional[Tuple[int, ...]] = None

    def node(self, order: int) -> Optional[BracketNode]:
        for node in self.nodes:
            if node.order == order:
                return node
        return None

    def edge(self, source: int, target: int) -> Optional[BracketEdge]:
        for edge in self.edges:
            if edge.source == source and edge.target == target:
                return edge
        return None

    def round_index(self, round_id: str) -> Optional[int]:
        """1-based position of a round within the format."""
        for idx, rnd in enumerate(self.rounds, start=1):
            if rnd.id == round_id:
                return idx
        return None


# ---------------------------------------------------------------------------
# Loading and validation
# ---------------------------------------------------------------------------

def _require_str(data: Mapping[str, Any], name: str, where: str) -> str:
    val = data.get(name)
    if not isinstance(val, str) or not val:
        raise BracketFormatError(f"{where}: {name} must be a non-empty string")
    return val


def _require_pos_int(val: Any, what: str) -> int:
    if isinstance(val, bool) or not isinstance(val, int) or val < 1:
        raise BracketFormatError(f"{what} must be a positive integer, got {val!r}")
    return val


def _parse_rule(raw: Any, where: str) -> ProgressionRule:
    if not isinstance(raw, dict):
        raise BracketFormatError(f"{where}: progression rule must be an object")
    positions = raw.get("positions")
    if not isinstance(positions, list) or not positions:
        raise BracketFormatError(f"{where}: progression rule positions must be a non-empty list")
    parsed = tuple(_require_pos_int(p, f"{where}: position") for p in positions)
    dest = raw.get("destination")
    if dest not in ("out", "final"):
        dest = _require_pos_int(dest, f"{where}: destination")
    return ProgressionRule(parsed, dest)


def _parse_node(raw: Any, idx: int) -> BracketNode:
    if not isinstance(raw, dict):
        raise BracketFormatError(f"nodes[{idx}] must be an object")
    order = _require_pos_int(raw.get("order"), f"nodes[{idx}].order")
    where = f"Node {order}"
    stage = raw.get("stage")
    if stage not in STAGES:
        raise BracketFormatError(f"{where}: stage must be one of {', '.join(STAGES)}")
    slot_count = raw.get("slotCount", 6)
    if isinstance(slot_count, bool) or not isinstance(slot_count, int) or not 2 <= slot_count <= 16:
        raise BracketFormatError(f"{where}: slotCount must be an integer between 2 and 16")
    rules_raw = raw.get("progressionRules", [])
    if not isinstance(rules_raw, list):
        raise BracketFormatError(f"{where}: progressionRules must be a list")
    return BracketNode(
        order=order,
        code=_require_str(raw, "code", where),
        name=_require_str(raw, "name", where),
        round_id=_require_str(raw, "roundId", where),
        round_label=_require_str(raw, "roundLabel", where),
        stage=stage,
        description=_require_str(raw, "description", where),
        slot_count=slot_count,
        rules=tuple(_parse_rule(r, where) for r in rules_raw),
    )


def _parse_round(raw: Any, idx: int) -> BracketRound:
    if not isinstance(raw, dict):
        raise BracketFormatError(f"rounds[{idx}] must be an object")
    where = f"rounds[{idx}]"
    orders = raw.get("nodeOrders")
    if not isinstance(orders, list):
        raise BracketFormatError(f"{where}: nodeOrders must be a list")
    return BracketRound(
        id=_require_str(raw, "id", where),
        label=_require_str(raw, "label", where),
        node_orders=tuple(_require_pos_int(o, f"{where}: node order") for o in orders),
    )


def _parse_edge(raw: Any, idx: int) -> BracketEdge:
    if not isinstance(raw, dict):
        raise BracketFormatError(f"edges[{idx}] must be an object")
    edge_type = raw.get("type")
    if edge_type not in EDGE_TYPES:
        raise BracketFormatError(f"edges[{idx}]: type must be advance or drop")
    return BracketEdge(
        source=_require_pos_int(raw.get("from"), f"edges[{idx}].from"),
        target=_require_pos_int(raw.get("to"), f"edges[{idx}].to"),
        type=edge_type,
    )


def _validate_references(fmt: BracketFormat) -> None:
    orders = set()
    for node in fmt.nodes:
        if node.order in orders:
            raise BracketFormatError(f"Duplicate bracket node order detected: {node.order}")
        orders.add(node.order)

    for node in fmt.nodes:
        for rule in node.rules:
            if isinstance(rule.destination, int) and rule.destination not in orders:
                raise BracketFormatError(
                    f"Node {node.order} has progression destination {rule.destination}, which does not exist in nodes"
                )

    round_ids = {rnd.id for rnd in fmt.rounds}
    for node in fmt.nodes:
        if node.round_id not in round_ids:
            raise BracketFormatError(f"Node {node.order} references missing round {node.round_id}")

    for rnd in fmt.rounds:
        for order in rnd.node_orders:
            if order not in orders:
                raise BracketFormatError(f"Round {rnd.id} includes missing node order {order}")

    for edge in fmt.edges:
        if edge.source not in orders:
            raise BracketFormatError(f"Edge source {edge.source} does not exist in nodes")
        if edge.target not in orders:
            raise BracketFormatError(f"Edge destination {edge.target} does not exist in nodes")

    for order in fmt.run_sequence or ():
        if order not in orders:
            raise BracketFormatError(f"runSequence includes missing node order {order}")


def load_format(raw: Any, format_id: str, label: str) -> BracketFormat:
    """Validate a format document and build a :class:`BracketFormat`."""
    if not isinstance(raw, dict):
        raise BracketFormatError("Bracket format must be a JSON object")
    nodes_raw = raw.get("nodes")
    rounds_raw = raw.get("rounds")
    edges_raw = raw.get("edges", [])
    if not isinstance(nodes_raw, list) or not nodes_raw:
        raise BracketFormatError("Bracket format needs at least one node")
    if not isinstance(rounds_raw, list) or not rounds_raw:
        raise BracketFormatError("Bracket format needs at least one round")
    if not isinstance(edges_raw, list):
        raise BracketFormatError("edges must be a list")
    seq_raw = raw.get("runSequence")
    run_sequence = None
    if seq_raw is not None:
        if not isinstance(seq_raw, list):
            raise BracketFormatError("runSequence must be a list")
        run_sequence = tuple(_require_pos_int(v, "runSequence entry") for v in seq_raw)
    fmt = BracketFormat(
        id=format_id,
        label=label,
        nodes=tuple(_parse_node(n, i) for i, n in enumerate(nodes_raw)),
        rounds=tuple(_parse_round(r, i) for i, r in enumerate(rounds_raw)),
        edges=tuple(_parse_edge(e, i) for i, e in enumerate(edges_raw)),
        run_sequence=run_sequence,
    )
    _validate_references(fmt)
    return fmt


def load_format_file(path: Union[str, Path], format_id: Optional[str] = None, label: Optional[str] = None) -> BracketFormat:
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise BracketFormatError(f"{path.name} is not valid JSON: {exc}") from exc
    return load_format(raw, format_id or path.stem, label or path.stem)


_REGISTRY: Dict[str, BracketFormat] = {}


def _load_registered(format_id: str) -> BracketFormat:
    if format_id not in _REGISTRY:
        file_name, label = FORMAT_FILES[format_id]
        _REGISTRY[format_id] = load_format_file(FORMATS_DIR / file_name, format_id, label)
        logger.info("Bracket format loaded: %s (%d nodes)", format_id, len(_REGISTRY[format_id].nodes))
    return _REGISTRY[format_id]


def get_format(format_id: Optional[str]) -> BracketFormat:
    """Registered format by id; unknown ids fall back to the default."""
    if format_id and format_id not in FORMAT_FILES:
        logger.warning("Unknown bracket format %r; using %s", format_id, DEFAULT_FORMAT_ID)
    if not format_id or format_id not in FORMAT_FILES:
        format_id = DEFAULT_FORMAT_ID
    return _load_registered(format_id)


def list_formats() -> List[BracketFormat]:
    return [_load_registered(fid) for fid in FORMAT_FILES]


# ---------------------------------------------------------------------------
# Mapping nodes to races
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnchorPoint:
    bracket_order: int
    race_index: int


def _sorted_by_race_order(races: Iterable[Race]) -> List[Race]:
    return sorted(races, key=lambda r: r.race_order)


def build_anchor_points(races: Sequence[Race], anchors: Sequence[kv.BracketAnchor]) -> List[AnchorPoint]:
    sorted_races = _sorted_by_race_order(races)
    by_order: Dict[int, int] = {}
    by_source: Dict[str, int] = {}
    for idx, race in enumerate(sorted_races):
        by_order[race.race_order] = idx
        if race.source_id:
            by_source[race.source_id.strip()] = idx
    points: List[AnchorPoint] = []
    for anchor in anchors:
        race_index = None
        if anchor.race_source_id:
            race_index = by_source.get(anchor.race_source_id.strip())
        if race_index is None and anchor.race_order is not None:
            race_index = by_order.get(anchor.race_order)
        if race_index is None:
            continue
        points.append(AnchorPoint(anchor.bracket_order, race_index))
    if sorted_races and not any(p.bracket_order == 1 for p in points):
        points.append(AnchorPoint(1, 0))
    points.sort(key=lambda p: (p.bracket_order, p.race_index))
    return points


def map_races_to_bracket(
    races: Sequence[Race],
    anchors: Sequence[kv.BracketAnchor],
    nodes: Sequence[BracketNode],
) -> Dict[int, Optional[Race]]:
    """One race (or None) per node order."""
    sorted_races = _sorted_by_race_order(races)
    if not sorted_races:
        return {node.order: None for node in nodes}
    points = build_anchor_points(sorted_races, anchors)
    mapping: Dict[int, Optional[Race]] = {}
    current = points[0]
    for node in sorted(nodes, key=lambda n: n.order):
        for candidate in points:
            if candidate.bracket_order <= node.order:
                current = candidate
        idx = current.race_index + (node.order - current.bracket_order)
        mapping[node.order] = sorted_races[idx] if 0 <= idx < len(sorted_races) else None
    return mapping


def map_races_to_bracket_heats(
    races: Sequence[Race],
    anchors: Sequence[kv.BracketAnchor],
    nodes: Sequence[BracketNode],
    run_sequence: Optional[Sequence[int]] = None,
) -> Dict[int, List[Race]]:
    """Every heat per node order, following an optional run sequence.

    Without a run sequence each node has at most one heat.  With one, the
    ``k``-th entry names the node that owns the ``k``-th race after the
    governing anchor; anchors are placed at the first occurrence of their
    node in the sequence.
    """
    if not run_sequence:
        single = map_races_to_bracket(races, anchors, nodes)
        return {order: ([race] if race is not None else []) for order, race in single.items()}

    mapping: Dict[int, List[Race]] = {node.order: [] for node in nodes}
    sorted_races = _sorted_by_race_order(races)
    if not sorted_races:
        return mapping

    first_pos: Dict[int, int] = {}
    for pos, order in enumerate(run_sequence):
        first_pos.setdefault(order, pos)
    placed = sorted(
        ((first_pos[p.bracket_order], p.race_index) for p in build_anchor_points(sorted_races, anchors) if p.bracket_order in first_pos),
    )
    for pos, order in enumerate(run_sequence):
        seq_pos, race_index = 0, 0
        for anchor_pos, anchor_index in placed:
            if anchor_pos <= pos:
                seq_pos, race_index = anchor_pos, anchor_index
        idx = race_index + (pos - seq_pos)
        if order in mapping and 0 <= idx < len(sorted_races):
            mapping[order].append(sorted_races[idx])
    return mapping


# ---------------------------------------------------------------------------
# Slot outcomes and node views
# ---------------------------------------------------------------------------

def slot_outcome(node: BracketNode, edges: Sequence[BracketEdge], position: Optional[int]) -> Tuple[bool, bool]:
    """``(is_winner, is_eliminated)`` for a finishing position in a node."""
    rule = node.rule_for(position)
    if rule is None:
        return False, False
    if rule.destination == "out":
        return False, True
    if rule.destination == "final":
        return True, False
    for edge in edges:
        if edge.source == node.order and edge.target == rule.destination:
            if edge.type == "advance":
                return True, False
            if edge.type == "drop":
                return False, True
    return False, False


def destination_label(node: BracketNode, nodes: Sequence[BracketNode], position: Optional[int]) -> Optional[str]:
    rule = node.rule_for(position)
    if rule is None:
        return None
    if rule.destination == "out":
        return "OUT"
    if rule.destination == "final":
        return "FINAL"
    for dest in nodes:
        if dest.order == rule.destination:
            return f"-> {dest.name}"
    return None


@dataclass
class BracketSlot:
    pilot_id: Optional[str]
    name: str
    channel_id: Optional[str] = None
    channel_label: str = ""
    position: Optional[int] = None
    points: Optional[int] = None
    is_winner: bool = False
    is_eliminated: bool = False
    is_predicted: bool = False
    destination_label: Optional[str] = None


EMPTY_SLOT_NAME = "Awaiting assignment"


def _placeholder() -> BracketSlot:
    return BracketSlot(pilot_id=None, name=EMPTY_SLOT_NAME)


@dataclass
class BracketNodeView:
    node: BracketNode
    races: List[Race]
    status: str
    slots: List[BracketSlot] = field(default_factory=list)

    @property
    def race(self) -> Optional[Race]:
        return self.races[0] if self.races else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.node.order,
            "code": self.node.code,
            "name": self.node.name,
            "round_id": self.node.round_id,
            "stage": self.node.stage,
            "race_id": self.race.id if self.race else None,
            "race_ids": [r.id for r in self.races],
            "status": self.status,
            "slots": [asdict(s) for s in self.slots],
        }


@dataclass(frozen=True)
class EliminatedPilot:
    pilot_id: str
    node_order: int
    node_name: str
    position: int
    points: int
    stage: int


@dataclass
class BracketView:
    format: BracketFormat
    config: kv.EliminationConfig
    enabled: bool
    nodes: List[BracketNodeView]

    def node(self, order: int) -> Optional[BracketNodeView]:
        for view in self.nodes:
            if view.node.order == order:
                return view
        return None

    def edge_state(self, edge: BracketEdge) -> str:
        source = self.node(edge.source)
        if source is not None and source.status in ("completed", "active"):
            return source.status
        return "pending"

    def eliminated_pilots(self) -> List[EliminatedPilot]:
        return eliminated_pilots(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format_id": self.format.id,
            "format_label": self.format.label,
            "enabled": self.enabled,
            "mapping": {str(v.node.order): (v.race.id if v.race else None) for v in self.nodes},
            "nodes": [v.to_dict() for v in self.nodes],
            "edges": [
                {"from": e.source, "to": e.target, "type": e.type, "state": self.edge_state(e)}
                for e in self.format.edges
            ],
            "eliminated": [asdict(p) for p in self.eliminated_pilots()],
        }


def node_status(races: Sequence[Race]) -> str:
    if not races:
        return "unassigned"
    if any(r.is_active for r in races):
        return "active"
    if all(r.is_completed for r in races):
        return "completed"
    return "scheduled"


def _slot_positions(snapshot: Snapshot, metrics: RaceMetrics, races: Sequence[Race]) -> Dict[str, Tuple[int, int]]:
    """Pilot id -> (display position, points) over a node's heats.

    A position only counts once the pilot has finished or the heat is
    completed.  Multi-heat nodes rank pilots by points summed over their
    counted heats.
    """
    totals: Dict[str, List[int]] = {}
    for race in races:
        for row in sorted_race_rows(snapshot, race.id, metrics):
            finished = metrics.finish_elapsed(race.id, row.pilot_id) is not None or race.is_completed
            if not finished:
                continue
            totals.setdefault(row.pilot_id, []).append(row.position)
    if len(races) <= 1:
        return {pid: (positions[0], position_to_points(positions[0])) for pid, positions in totals.items()}
    scored = [
        (pid, sum(position_to_points(p) for p in positions), min(positions))
        for pid, positions in totals.items()
    ]
    scored.sort(key=lambda item: (-item[1], item[2]))
    return {pid: (rank, points) for rank, (pid, points, _best) in enumerate(scored, start=1)}


def _build_node_view(snapshot: Snapshot, metrics: RaceMetrics, fmt: BracketFormat, node: BracketNode, races: List[Race]) -> BracketNodeView:
    status = node_status(races)
    if not races:
        return BracketNodeView(node, races, status, [_placeholder() for _ in range(node.slot_count)])
    positions = _slot_positions(snapshot, metrics, races)
    slots: List[BracketSlot] = []
    seen = set()
    for race in races:
        for pc in race.pilot_channels:
            if not pc.pilot_id or pc.pilot_id in seen:
                continue
            seen.add(pc.pilot_id)
            position, points = positions.get(pc.pilot_id, (None, None))
            is_winner, is_eliminated = slot_outcome(node, fmt.edges, position)
            channel = snapshot.channel(pc.channel_id)
            slots.append(
                BracketSlot(
                    pilot_id=pc.pilot_id,
                    name=snapshot.pilot_name(pc.pilot_id),
                    channel_id=pc.channel_id or None,
                    channel_label=channel.label if channel else "",
                    position=position,
                    points=points,
                    is_winner=is_winner,
                    is_eliminated=is_eliminated,
                    destination_label=destination_label(node, fmt.nodes, position),
                )
            )
    while len(slots) < node.slot_count:
        slots.append(_placeholder())
    return BracketNodeView(node, races, status, slots)


def apply_predicted_assignments(views: Mapping[int, BracketNodeView], edges: Sequence[BracketEdge]) -> None:
    """Seat pilots from started source nodes into open downstream slots."""
    predictions: Dict[int, List[BracketSlot]] = {}
    for edge in edges:
        source = views.get(edge.source)
        target = views.get(edge.target)
        if source is None or target is None:
            continue
        if source.status not in ("completed", "active"):
            continue
        for slot in source.slots:
            if not slot.pilot_id or slot.is_predicted:
                continue
            if (slot.is_winner if edge.type == "advance" else slot.is_eliminated):
                predictions.setdefault(edge.target, []).append(
                    BracketSlot(pilot_id=slot.pilot_id, name=slot.name, is_predicted=True)
                )
    for order, predicted in predictions.items():
        target = views[order]
        seated = {s.pilot_id for s in target.slots if s.pilot_id}
        slots = [replace(s) for s in target.slots]
        for slot in predicted:
            if slot.pilot_id in seated:
                continue
            open_idx = next((i for i, s in enumerate(slots) if s.pilot_id is None), None)
            if open_idx is None:
                break
            slots[open_idx] = slot
            seated.add(slot.pilot_id)
        target.slots = slots


def elimination_config(snapshot: Snapshot) -> Tuple[kv.EliminationConfig, bool]:
    """Parsed config and whether the entry exists (which enables the bracket)."""
    raw = snapshot.kv(kv.BRACKET_NAMESPACE, kv.ELIMINATION_CONFIG_KEY)
    return kv.parse_elimination_config(raw), raw is not None


def build_bracket(snapshot: Snapshot, metrics: Optional[RaceMetrics] = None) -> BracketView:
    metrics = metrics or RaceMetrics(snapshot)
    config, enabled = elimination_config(snapshot)
    fmt = get_format(config.format_id)
    run_sequence = config.run_sequence or fmt.run_sequence
    heats = map_races_to_bracket_heats(snapshot.races_by_race_order(), config.anchors, fmt.nodes, run_sequence)
    views = [_build_node_view(snapshot, metrics, fmt, node, heats.get(node.order, [])) for node in fmt.nodes]
    if enabled:
        apply_predicted_assignments({v.node.order: v for v in views}, fmt.edges)
    logger.debug(
        "Bracket mapped: format=%s enabled=%s assigned=%d",
        fmt.id,
        enabled,
        sum(1 for v in views if v.races),
    )
    return BracketView(fmt, config, enabled, views)


def eliminated_pilots(view: BracketView) -> List[EliminatedPilot]:
    """Pilots knocked out so far; later rounds carry a higher stage."""
    found: Dict[str, EliminatedPilot] = {}
    for node_view in view.nodes:
        stage = view.format.round_index(node_view.node.round_id) or 0
        for slot in node_view.slots:
            if not slot.pilot_id or slot.is_predicted or not slot.is_eliminated or slot.position is None:
                continue
            entry = EliminatedPilot(
                pilot_id=slot.pilot_id,
                node_order=node_view.node.order,
                node_name=node_view.node.name,
                position=slot.position,
                points=slot.points or 0,
                stage=stage,
            )
            prior = found.get(slot.pilot_id)
            if prior is None or entry.stage >= prior.stage:
                found[slot.pilot_id] = entry
    return list(found.values())


__all__ = [
    "AnchorPoint",
    "BracketEdge",
    "BracketFormat",
    "BracketFormatError",
    "BracketNode",
    "BracketNodeView",
    "BracketRound",
    "BracketSlot",
    "BracketView",
    "DEFAULT_FORMAT_ID",
    "EliminatedPilot",
    "ProgressionRule",
    "apply_predicted_assignments",
    "build_anchor_points",
    "build_bracket",
    "destination_label",
    "eliminated_pilots",
    "elimination_config",
    "get_format",
    "list_formats",
    "load_format",
    "load_format_file",
    "map_races_to_bracket",
    "map_races_to_bracket_heats",
    "node_status",
    "position_to_points",
    "slot_outcome",
]
