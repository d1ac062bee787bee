from heatboard.metrics import RaceMetrics
from heatboard.race_sorting import is_race_round, sorted_pilot_ids, sorted_race_rows


def _race_with_four(event):
    event.round("final", event_type="race")
    event.race("r1", ["a", "b", "c", "d"], round_id="final", start=10000, end=100000, target_laps=3)
    event.laps("r1", "a", [20.0, 20.0, 18.0], holeshot=2.0)   # detected at 70000
    event.laps("r1", "b", [20.0, 20.0, 18.0], holeshot=1.5)   # detected at 69500
    event.laps("r1", "c", [22.0, 22.0, 22.0], holeshot=2.0)   # detected at 78000
    event.laps("r1", "d", [10.0, 10.0], holeshot=1.0)         # 2 of 3 laps


def test_finishers_by_finish_time_then_non_finisher(event):
    _race_with_four(event)
    rows = sorted_race_rows(event.snapshot(), "r1")
    assert [r.pilot_id for r in rows] == ["b", "a", "c", "d"]
    assert [r.position for r in rows] == [1, 2, 3, 4]
    assert rows[0].finish_elapsed == 59500.0
    assert rows[3].finish_elapsed is None
    assert rows[0].channel_label == "R2"


def test_non_finisher_with_fast_laps_stays_below_finishers(event):
    event.round("final", event_type="race")
    event.race("r1", ["slow", "quick"], round_id="final", start=10000, end=100000, target_laps=2)
    event.laps("r1", "slow", [40.0, 40.0])
    event.laps("r1", "quick", [5.0])
    ids = sorted_pilot_ids(RaceMetrics(event.snapshot()), event.snapshot().race("r1"))
    assert ids == ["slow", "quick"]


def test_pilots_without_laps_fall_back_to_channel_order(event):
    event.round("final", event_type="race")
    event.race("r1", ["x", "y", "z"], round_id="final", start=10000, target_laps=3)
    event.laps("r1", "z", [30.0])
    rows = sorted_race_rows(event.snapshot(), "r1")
    assert [r.pilot_id for r in rows] == ["z", "x", "y"]


def test_practice_round_ranks_by_consecutive(event):
    event.round("quali", event_type="practice")
    event.race("q1", ["a", "b", "c"], round_id="quali", start=10000, end=200000, target_laps=0)
    event.laps("q1", "a", [20.0, 20.0, 20.0, 30.0])
    event.laps("q1", "b", [19.0, 19.0, 19.0])
    event.laps("q1", "c", [10.0, 10.0])
    snapshot = event.snapshot()
    assert not is_race_round(snapshot, snapshot.race("q1"))
    rows = sorted_race_rows(snapshot, "q1")
    assert [r.pilot_id for r in rows] == ["b", "a", "c"]
    assert rows[2].consecutive is None


def test_unknown_round_is_scored_as_a_race(event):
    event.race("r1", ["a"], round_id="missing", start=10000)
    snapshot = event.snapshot()
    assert is_race_round(snapshot, snapshot.race("r1"))


def test_ordering_is_repeatable(event):
    _race_with_four(event)
    snapshot = event.snapshot()
    first = [r.pilot_id for r in sorted_race_rows(snapshot, "r1")]
    again = [r.pilot_id for r in sorted_race_rows(event.snapshot(), "r1")]
    assert first == again


def test_unknown_race_has_no_rows(event):
    assert sorted_race_rows(event.snapshot(), "nope") == []
