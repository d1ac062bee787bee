"""Top-6 finals: pool formation, heat discovery, scoring and champion detection.

Once both bracket finals (winners and redemption) are complete, their top
three finishers form the finals pool.  Every later race that features a
finalist is a finals heat.  Completed heats score points per position and
count wins; a pilot reaching the configured win count is champion.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .bracket import BracketView, build_bracket, map_races_to_bracket_heats, position_to_points
from .metrics import RaceMetrics
from .race_sorting import sorted_race_rows
from .records import Race, Snapshot

logger = logging.getLogger(__name__)

FINALS_POOL_SIZE = 6
FINALISTS_PER_FINAL = 3


@dataclass(frozen=True)
class FinalsRules:
    min_heats: int = 3
    max_heats: int = 7
    wins_required: int = 2


DEFAULT_FINALS_RULES = FinalsRules()


@dataclass(frozen=True)
class FinalsConfig(FinalsRules):
    winners_final_order: int = 0
    redemption_final_order: int = 0
    finals_race_number: Optional[int] = None


FINALS_CONFIG_BY_FORMAT = {
    "double-elim-6p-v1": FinalsConfig(
        min_heats=3, max_heats=7, wins_required=2,
        winners_final_order=28, redemption_final_order=29,
    ),
    "nzo-top24-de-v1": FinalsConfig(
        min_heats=3, max_heats=13, wins_required=3,
        winners_final_order=16, redemption_final_order=18, finals_race_number=19,
    ),
}


@dataclass(frozen=True)
class HeatResult:
    pilot_id: str
    pilot_name: str
    position: int
    points: int


@dataclass
class FinalsHeat:
    race_id: str
    race_order: int
    heat_number: int
    is_completed: bool
    is_active: bool
    results: List[HeatResult] = field(default_factory=list)


@dataclass(frozen=True)
class Finalist:
    pilot_id: str
    pilot_name: str
    source_race: str
    source_position: int


@dataclass
class RankingInput:
    pilot_id: str
    pilot_name: str
    wins: int = 0
    heat_results: List[HeatResult] = field(default_factory=list)


@dataclass
class RankedParticipant:
    pilot_id: str
    pilot_name: str
    wins: int
    total_points: int
    best_of_score: int
    worst_heat_points: Optional[int]
    heat_results: List[HeatResult]
    is_champion: bool
    final_position: int = 0


def find_champion(participants: Sequence[RankingInput], rules: FinalsRules = DEFAULT_FINALS_RULES) -> Optional[RankingInput]:
    for p in participants:
        if p.wins >= rules.wins_required:
            return p
    return None


def compute_finals_rankings(
    participants: Sequence[RankingInput],
    completed_heats: int,
    rules: FinalsRules = DEFAULT_FINALS_RULES,
) -> List[RankedParticipant]:
    """Champion first, then best-of score, then total points (both descending).

    Best-of drops a pilot's worst heat, but only once they have raced at
    least ``min_heats`` heats.  Remaining ties keep input order.
    """
    champion = find_champion(participants, rules)
    ranked: List[RankedParticipant] = []
    for p in participants:
        points = [r.points for r in p.heat_results]
        total = sum(points)
        best_of, worst = total, None
        if len(points) >= rules.min_heats and points:
            worst = min(points)
            best_of = total - worst
        ranked.append(
            RankedParticipant(
                pilot_id=p.pilot_id,
                pilot_name=p.pilot_name,
                wins=p.wins,
                total_points=total,
                best_of_score=best_of,
                worst_heat_points=worst,
                heat_results=list(p.heat_results),
                is_champion=champion is not None and champion.pilot_id == p.pilot_id,
            )
        )
    ranked.sort(key=lambda r: (not r.is_champion, -r.best_of_score, -r.total_points))
    for idx, r in enumerate(ranked, start=1):
        r.final_position = idx
    return ranked


def requires_more_heats(
    participants: Sequence[RankingInput],
    completed_heats: int,
    rules: FinalsRules = DEFAULT_FINALS_RULES,
) -> bool:
    if completed_heats < rules.min_heats:
        return True
    if completed_heats >= rules.max_heats:
        return False
    return find_champion(participants, rules) is None


def finals_message(
    participants: Sequence[RankingInput],
    completed_heats: int,
    total_heats: int,
    rules: FinalsRules = DEFAULT_FINALS_RULES,
) -> str:
    if total_heats == 0:
        return "Finals have not started yet."
    if completed_heats < rules.min_heats:
        remaining = rules.min_heats - completed_heats
        noun = "heat" if remaining == 1 else "heats"
        return f"Finals waiting for results. At least {remaining} more {noun} must complete before rankings lock in."
    champion = find_champion(participants, rules)
    if champion is not None:
        return f"{champion.pilot_name} is the champion with {champion.wins} wins!"
    if completed_heats >= rules.max_heats:
        return "Finals complete. Maximum heats reached."
    return f"Finals in progress. Waiting for a pilot to earn {rules.wins_required} wins."


def select_finals_race_candidates(
    sorted_races: Sequence[Race],
    redemption_final_race_order: int,
    finals_race_number: Optional[int] = None,
) -> List[Race]:
    later = [r for r in sorted_races if r.race_order > redemption_final_race_order]
    if finals_race_number is None:
        return later
    numbered = [r for r in later if r.race_number == finals_race_number]
    return numbered or later


@dataclass
class FinalsState:
    enabled: bool = False
    finalists: List[Finalist] = field(default_factory=list)
    heats: List[FinalsHeat] = field(default_factory=list)
    participants: List[RankedParticipant] = field(default_factory=list)
    min_heats: int = DEFAULT_FINALS_RULES.min_heats
    max_heats: int = DEFAULT_FINALS_RULES.max_heats
    wins_required: int = DEFAULT_FINALS_RULES.wins_required
    champion_id: Optional[str] = None
    is_complete: bool = False
    requires_more_heats: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _disabled(rules: FinalsRules, message: Optional[str] = None, finalists: Optional[List[Finalist]] = None) -> FinalsState:
    return FinalsState(
        enabled=False,
        finalists=finalists or [],
        min_heats=rules.min_heats,
        max_heats=rules.max_heats,
        wins_required=rules.wins_required,
        message=message,
    )


def _top_finishers(view: BracketView, order: int, source: str) -> List[Finalist]:
    node = view.node(order)
    if node is None:
        return []
    out = []
    for slot in node.slots:
        if slot.pilot_id and not slot.is_predicted and slot.position is not None and 1 <= slot.position <= FINALISTS_PER_FINAL:
            out.append(Finalist(slot.pilot_id, slot.name, source, slot.position))
    return out


def compute_finals_state(
    snapshot: Snapshot,
    metrics: Optional[RaceMetrics] = None,
    bracket: Optional[BracketView] = None,
) -> FinalsState:
    metrics = metrics or RaceMetrics(snapshot)
    bracket = bracket or build_bracket(snapshot, metrics)
    if not bracket.enabled:
        return _disabled(DEFAULT_FINALS_RULES)
    config = FINALS_CONFIG_BY_FORMAT.get(bracket.format.id)
    if config is None:
        return _disabled(DEFAULT_FINALS_RULES)

    races = snapshot.races_by_race_order()
    run_sequence = bracket.config.run_sequence or bracket.format.run_sequence
    heats_by_node = map_races_to_bracket_heats(races, bracket.config.anchors, bracket.format.nodes, run_sequence)
    winners_races = heats_by_node.get(config.winners_final_order, [])
    redemption_races = heats_by_node.get(config.redemption_final_order, [])
    if not winners_races or not redemption_races:
        return _disabled(config)
    if not all(r.is_completed for r in winners_races + redemption_races):
        return _disabled(config, "Waiting for bracket finals to complete before starting Top 6 finals.")

    # A pilot placed in both finals holds one seat
    finalists: List[Finalist] = []
    seen = set()
    for finalist in _top_finishers(bracket, config.winners_final_order, "winners") + _top_finishers(
        bracket, config.redemption_final_order, "redemption"
    ):
        if finalist.pilot_id not in seen:
            seen.add(finalist.pilot_id)
            finalists.append(finalist)
    if len(finalists) < FINALS_POOL_SIZE:
        return _disabled(
            config,
            f"Waiting for all 6 finalists to be determined. Currently have {len(finalists)}/6.",
            finalists,
        )

    last_redemption = redemption_races[-1]
    finalist_ids = {f.pilot_id for f in finalists}
    heats: List[FinalsHeat] = []
    block_started = False
    for race in select_finals_race_candidates(races, last_redemption.race_order, config.finals_race_number):
        if not race.has_started:
            if block_started:
                break
            continue
        rows = sorted_race_rows(snapshot, race.id, metrics)
        if not any(row.pilot_id in finalist_ids for row in rows):
            if block_started:
                break
            continue
        has_lap_data = any(lap.pilot_id in finalist_ids for lap in snapshot.processed_laps(race.id))
        if race.is_completed and not has_lap_data:
            if block_started:
                break
            continue
        block_started = True
        heats.append(
            FinalsHeat(
                race_id=race.id,
                race_order=race.race_order,
                heat_number=len(heats) + 1,
                is_completed=race.is_completed,
                is_active=race.is_active,
                results=[
                    HeatResult(row.pilot_id, row.pilot_name, row.position, position_to_points(row.position))
                    for row in rows
                    if row.pilot_id in finalist_ids
                ],
            )
        )

    inputs: Dict[str, RankingInput] = {f.pilot_id: RankingInput(f.pilot_id, f.pilot_name) for f in finalists}
    for heat in heats:
        if not heat.is_completed:
            continue
        for result in heat.results:
            participant = inputs.get(result.pilot_id)
            if participant is None:
                continue
            participant.heat_results.append(result)
            if result.position == 1:
                participant.wins += 1

    participants = list(inputs.values())
    completed = sum(1 for h in heats if h.is_completed)
    ranked = compute_finals_rankings(participants, completed, config)
    more = requires_more_heats(participants, completed, config)
    champion = next((r.pilot_id for r in ranked if r.is_champion), None)
    logger.debug("Finals recomputed: heats=%d completed=%d champion=%s", len(heats), completed, champion)
    return FinalsState(
        enabled=True,
        finalists=finalists,
        heats=heats,
        participants=ranked,
        min_heats=config.min_heats,
        max_heats=config.max_heats,
        wins_required=config.wins_required,
        champion_id=champion,
        is_complete=not more and completed >= config.min_heats,
        requires_more_heats=more,
        message=finals_message(participants, completed, len(heats), config),
    )


__all__ = [
    "DEFAULT_FINALS_RULES",
    "FINALS_CONFIG_BY_FORMAT",
    "Finalist",
    "FinalsConfig",
    "FinalsHeat",
    "FinalsRules",
    "FinalsState",
    "HeatResult",
    "RankedParticipant",
    "RankingInput",
    "compute_finals_rankings",
    "compute_finals_state",
    "finals_message",
    "position_to_points",
    "requires_more_heats",
    "select_finals_race_candidates",
]
