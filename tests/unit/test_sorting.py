from heatboard.sorting import (
    Condition,
    NullHandling,
    SortCriterion,
    SortDirection,
    SortGroup,
    describe_groups,
    group_path,
    path_names,
    sort_items,
)


def _values(mapping):
    return lambda item: mapping.get(item)


def test_single_group_ascending_with_nulls_last():
    times = {"a": 12.0, "b": None, "c": 10.5, "d": 11.0}
    groups = [SortGroup("All", (SortCriterion("time", _values(times)),))]
    assert sort_items(["a", "b", "c", "d"], groups) == ["c", "d", "a", "b"]


def test_nulls_first_and_descending():
    laps = {"a": 3, "b": None, "c": 5}
    groups = [
        SortGroup(
            "All",
            (SortCriterion("laps", _values(laps), SortDirection.DESC, NullHandling.FIRST),),
        )
    ]
    assert sort_items(["a", "b", "c"], groups) == ["b", "c", "a"]


def test_nan_is_treated_as_missing():
    times = {"a": float("nan"), "b": 9.0}
    groups = [SortGroup("All", (SortCriterion("time", _values(times)),))]
    assert sort_items(["a", "b"], groups) == ["b", "a"]


def test_group_order_beats_criteria():
    finished = {"slow": True, "fast": False}
    times = {"slow": 99.0, "fast": 1.0}
    done = Condition("finished", lambda pid: finished[pid])
    groups = [
        SortGroup("Finished", (SortCriterion("time", _values(times)),), done),
        SortGroup("Not finished", (SortCriterion("time", _values(times)),), done.inverse()),
    ]
    # A finisher always ranks above a non-finisher, whatever the times
    assert sort_items(["fast", "slow"], groups) == ["slow", "fast"]


def test_nested_groups_and_path_names():
    laps = {"a": 2, "b": 0, "c": 4}
    has_laps = Condition("has_laps", lambda pid: laps[pid] > 0)
    groups = [
        SortGroup(
            "Active",
            groups=(
                SortGroup("With Laps", (SortCriterion("laps", _values(laps), SortDirection.DESC),), has_laps),
                SortGroup("No Laps", (), has_laps.inverse()),
            ),
        ),
    ]
    assert path_names("a", groups) == ["Active", "With Laps"]
    assert path_names("b", groups) == ["Active", "No Laps"]
    assert [idx for idx, _g in group_path("b", groups)] == [0, 1]
    assert sort_items(["b", "a", "c"], groups) == ["c", "a", "b"]


def test_items_without_a_group_sort_last():
    never = Condition("never", lambda pid: False)
    groups = [SortGroup("Only", condition=Condition("is_a", lambda pid: pid == "a")), SortGroup("Nope", condition=never)]
    assert sort_items(["z", "a"], groups) == ["a", "z"]


def test_ties_keep_input_order_and_repeat_exactly():
    groups = [SortGroup("All", (SortCriterion("zero", lambda pid: 0),))]
    items = ["p3", "p1", "p2"]
    first = sort_items(items, groups)
    assert first == items
    assert sort_items(items, groups) == first


def test_describe_groups_is_plain_data():
    groups = [SortGroup("All", (SortCriterion("time", lambda pid: None, SortDirection.DESC),), Condition("x", bool))]
    desc = describe_groups(groups)
    assert desc == [
        {
            "name": "All",
            "condition": "x",
            "criteria": [{"name": "time", "direction": "desc", "nulls": "last"}],
            "groups": [],
        }
    ]


def test_parent_only_item_compares_on_parent_criteria_first():
    finished = {"c", "t"}
    times = {"c": 30.0, "p": 35.0, "q": 25.0, "t": 30.0}
    groups = [
        SortGroup(
            "Racers",
            (SortCriterion("time", _values(times)),),
            groups=(SortGroup("Finishers", (), Condition("finished", lambda item: item in finished)),),
        )
    ]
    assert path_names("p", groups) == ["Racers"]
    assert path_names("c", groups) == ["Racers", "Finishers"]

    # Parent criteria decide before path depth
    assert sort_items(["p", "c"], groups) == ["c", "p"]
    assert sort_items(["c", "q"], groups) == ["q", "c"]

    # On a tie the shorter path ranks first
    times["p"] = 30.0
    assert sort_items(["t", "p"], groups) == ["p", "t"]
    assert sort_items(["p", "t"], groups) == ["p", "t"]
