from heatboard import kv
from heatboard.finals import (
    FINALS_CONFIG_BY_FORMAT,
    FinalsRules,
    HeatResult,
    RankingInput,
    compute_finals_rankings,
    compute_finals_state,
    finals_message,
    requires_more_heats,
    select_finals_race_candidates,
)
from heatboard.records import Race


def _participant(pid, points, wins=0):
    results = [HeatResult(pid, pid.upper(), 0, p) for p in points]
    return RankingInput(pid, pid.upper(), wins=wins, heat_results=results)


def test_best_of_breaks_equal_totals():
    a = _participant("a", [100, 100, 60], wins=2)
    b = _participant("b", [80, 80, 100], wins=1)
    rules = FinalsRules(wins_required=3)
    ranked = compute_finals_rankings([b, a], 3, rules)
    assert [r.pilot_id for r in ranked] == ["a", "b"]
    assert (ranked[0].total_points, ranked[0].best_of_score, ranked[0].worst_heat_points) == (260, 200, 60)
    assert (ranked[1].total_points, ranked[1].best_of_score, ranked[1].worst_heat_points) == (260, 180, 80)
    assert [r.final_position for r in ranked] == [1, 2]


def test_champion_ranks_first_regardless_of_points():
    strong = _participant("strong", [80, 80, 80], wins=0)
    champ = _participant("champ", [100, 100, 10], wins=2)
    ranked = compute_finals_rankings([strong, champ], 3)
    assert ranked[0].pilot_id == "champ"
    assert ranked[0].is_champion


def test_worst_heat_only_dropped_after_min_heats():
    ranked = compute_finals_rankings([_participant("a", [100, 20])], 2)
    assert ranked[0].best_of_score == 120
    assert ranked[0].worst_heat_points is None


def test_requires_more_heats():
    one = [_participant("a", [100], wins=1)]
    assert requires_more_heats(one, 1)
    two_wins = [_participant("a", [100, 100, 60], wins=2), _participant("b", [80, 80, 100], wins=1)]
    assert not requires_more_heats(two_wins, 3)
    ranked = compute_finals_rankings(two_wins, 3)
    champion_id = next(r.pilot_id for r in ranked if r.is_champion)
    assert champion_id == "a"
    no_champ = [_participant("a", [100], wins=1), _participant("b", [100], wins=1)]
    assert requires_more_heats(no_champ, 4)
    assert not requires_more_heats(no_champ, 7)


def test_messages():
    nobody = [_participant("a", [], wins=0)]
    assert finals_message(nobody, 0, 0) == "Finals have not started yet."
    assert finals_message(nobody, 2, 2) == (
        "Finals waiting for results. At least 1 more heat must complete before rankings lock in."
    )
    assert "At least 3 more heats" in finals_message(nobody, 0, 1)
    assert finals_message([_participant("a", [], wins=2)], 3, 3) == "A is the champion with 2 wins!"
    assert finals_message(nobody, 7, 7) == "Finals complete. Maximum heats reached."
    assert finals_message(nobody, 4, 4) == "Finals in progress. Waiting for a pilot to earn 2 wins."


def test_candidates_prefer_configured_race_number():
    races = [Race(id=f"r{i}", race_order=i, race_number=n) for i, n in ((17, 17), (18, 1), (19, 19), (20, 19))]
    assert [r.id for r in select_finals_race_candidates(races, 17)] == ["r18", "r19", "r20"]
    assert [r.id for r in select_finals_race_candidates(races, 17, 19)] == ["r19", "r20"]
    assert [r.id for r in select_finals_race_candidates(races, 17, 42)] == ["r18", "r19", "r20"]


def test_nzo_rules():
    config = FINALS_CONFIG_BY_FORMAT["nzo-top24-de-v1"]
    assert (config.min_heats, config.max_heats, config.wins_required) == (3, 13, 3)


# -- full state over a double elimination event ------------------------------

WINNERS = ["w1", "w2", "w3", "w4", "w5", "w6"]
REDEMPTION = ["d1", "d2", "d3", "d4", "d5", "d6"]
FINALISTS = ["w1", "w2", "w3", "d1", "d2", "d3"]


def _seed_bracket(event, finals_completed=True, redemption=REDEMPTION):
    event.round("main")
    event.kv(kv.BRACKET_NAMESPACE, kv.ELIMINATION_CONFIG_KEY, {"formatId": "double-elim-6p-v1"})
    # Nodes 1-27 map onto empty completed races
    for order in range(1, 28):
        event.race(f"b{order}", [], order=order, round_id="main", start=1000 * order, end=1000 * order + 500)
    end = 100000 if finals_completed else None
    # Without lap data, completed races rank pilots by channel slot
    event.race("b28", WINNERS, order=28, round_id="main", start=50000, end=end)
    event.race("b29", redemption, order=29, round_id="main", start=60000, end=end)


def _finals_heat(event, race_id, order, finishing, completed=True):
    start = 1_000_000 * order
    event.race(race_id, FINALISTS, order=order, round_id="main", start=start,
               end=start + 500_000 if completed else None)
    for idx, pid in enumerate(finishing):
        lap = 20.0 + idx
        event.laps(race_id, pid, [lap, lap, lap], holeshot=1.0)


def test_finals_disabled_without_bracket_config(event):
    event.round("main")
    event.race("r1", ["a"], order=1, round_id="main")
    state = compute_finals_state(event.snapshot())
    assert not state.enabled
    assert state.message is None


def test_finals_wait_for_bracket_finals(event):
    _seed_bracket(event, finals_completed=False)
    state = compute_finals_state(event.snapshot())
    assert not state.enabled
    assert state.message == "Waiting for bracket finals to complete before starting Top 6 finals."


def test_finals_pool_and_champion(event):
    _seed_bracket(event)
    _finals_heat(event, "f1", 30, ["w1", "d1", "w2", "w3", "d2", "d3"])
    _finals_heat(event, "f2", 31, ["w1", "w2", "d1", "w3", "d2", "d3"])
    snapshot = event.snapshot()

    state = compute_finals_state(snapshot)
    assert state.enabled
    assert [f.pilot_id for f in state.finalists] == FINALISTS
    assert [h.heat_number for h in state.heats] == [1, 2]
    # w1 already has two wins but the minimum heat count is not reached yet
    assert state.requires_more_heats
    assert state.champion_id == "w1"
    assert not state.is_complete
    assert "At least 1 more heat" in state.message

    _finals_heat(event, "f3", 32, ["d1", "w1", "w2", "w3", "d2", "d3"])
    state = compute_finals_state(event.snapshot())
    assert not state.requires_more_heats
    assert state.champion_id == "w1"
    assert state.is_complete
    assert state.participants[0].pilot_id == "w1"
    assert state.participants[0].wins == 2
    assert state.participants[0].total_points == 280
    assert state.message == "W1 is the champion with 2 wins!"
    assert state.to_dict()["champion_id"] == "w1"


def test_running_heat_is_listed_but_not_scored(event):
    _seed_bracket(event)
    _finals_heat(event, "f1", 30, ["w1", "d1", "w2", "w3", "d2", "d3"])
    _finals_heat(event, "f2", 31, ["d1", "w1"], completed=False)
    state = compute_finals_state(event.snapshot())
    assert [h.is_completed for h in state.heats] == [True, False]
    assert state.heats[1].is_active
    d1 = next(p for p in state.participants if p.pilot_id == "d1")
    assert d1.wins == 0
    assert d1.total_points == 80


def test_pilot_in_both_bracket_finals_holds_one_seat(event):
    _seed_bracket(event, redemption=["w1", "d2", "d3", "d4", "d5", "d6"])
    state = compute_finals_state(event.snapshot())
    assert not state.enabled
    assert [f.pilot_id for f in state.finalists] == ["w1", "w2", "w3", "d2", "d3"]
    assert state.message == "Waiting for all 6 finalists to be determined. Currently have 5/6."
