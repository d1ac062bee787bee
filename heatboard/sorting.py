"""Hierarchical multi-criteria sorting.

A sort configuration is a tree of :class:`SortGroup` objects.  Every item
walks the tree depth-first, taking the first group at each level whose
condition holds (or that has none); the sequence of chosen groups is the
item's *group path*.  Items are ordered first by the sibling index of each
group on their paths, then by the criteria of the deepest shared group.

Missing metric values are ``None`` and are placed by each criterion's
null-handling policy, never compared numerically.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from functools import cmp_to_key
from typing import Callable, Dict, Hashable, List, Optional, Sequence, Tuple


class SortDirection(Enum):
    ASC = "asc"
    DESC = "desc"


class NullHandling(Enum):
    FIRST = "first"
    LAST = "last"


ValueFn = Callable[[str], Optional[float]]


@dataclass(frozen=True)
class Condition:
    """A named membership predicate for a :class:`SortGroup`."""

    name: str
    test: Callable[[str], bool] = field(compare=False)

    def __call__(self, item: str) -> bool:
        return bool(self.test(item))

    def inverse(self) -> "Condition":
        return Condition(f"not {self.name}", lambda item: not self.test(item))


@dataclass(frozen=True)
class SortCriterion:
    name: str
    value: ValueFn = field(compare=False)
    direction: SortDirection = SortDirection.ASC
    nulls: NullHandling = NullHandling.LAST


@dataclass(frozen=True)
class SortGroup:
    name: str
    criteria: Tuple[SortCriterion, ...] = ()
    condition: Optional[Condition] = None
    groups: Tuple["SortGroup", ...] = ()

    def matches(self, item: str) -> bool:
        return self.condition is None or self.condition(item)


GroupPath = Tuple[Tuple[int, SortGroup], ...]


def group_path(item: str, groups: Sequence[SortGroup]) -> GroupPath:
    """Depth-first walk selecting the first matching group at each level."""
    path: List[Tuple[int, SortGroup]] = []
    level: Sequence[SortGroup] = groups
    while level:
        chosen = None
        for idx, group in enumerate(level):
            if group.matches(item):
                chosen = (idx, group)
                break
        if chosen is None:
            break
        path.append(chosen)
        level = chosen[1].groups
    return tuple(path)


def _clean(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def _compare_criteria(a: str, b: str, criteria: Sequence[SortCriterion], read: Callable[[SortCriterion, str], Optional[float]]) -> int:
    for criterion in criteria:
        va = read(criterion, a)
        vb = read(criterion, b)
        if va is None and vb is None:
            continue
        if va is None:
            return -1 if criterion.nulls is NullHandling.FIRST else 1
        if vb is None:
            return 1 if criterion.nulls is NullHandling.FIRST else -1
        diff = (va > vb) - (va < vb)
        if diff:
            return diff if criterion.direction is SortDirection.ASC else -diff
    return 0


def sort_items(items: Sequence[str], groups: Sequence[SortGroup]) -> List[str]:
    """Return ``items`` in hierarchical order.

    The underlying sort is stable, so items that compare equal keep their
    input order and repeated calls over the same inputs agree exactly.
    Items with no group path sort after everything else.
    """
    paths: Dict[str, GroupPath] = {item: group_path(item, groups) for item in items}
    values: Dict[Tuple[int, Hashable], Optional[float]] = {}

    def read(criterion: SortCriterion, item: str) -> Optional[float]:
        key = (id(criterion), item)
        if key not in values:
            values[key] = _clean(criterion.value(item))
        return values[key]

    def compare(a: str, b: str) -> int:
        pa, pb = paths[a], paths[b]
        if not pa or not pb:
            return (not pa) - (not pb)
        depth = min(len(pa), len(pb))
        for level in range(depth):
            ia, ib = pa[level][0], pb[level][0]
            if ia != ib:
                return -1 if ia < ib else 1
        result = _compare_criteria(a, b, pa[depth - 1][1].criteria, read)
        if result:
            return result
        return (len(pa) > len(pb)) - (len(pa) < len(pb))

    return sorted(items, key=cmp_to_key(compare))


def path_names(item: str, groups: Sequence[SortGroup]) -> List[str]:
    return [group.name for _idx, group in group_path(item, groups)]


def describe_groups(groups: Sequence[SortGroup]) -> List[dict]:
    """Plain-data view of a group tree (names, conditions, criteria)."""
    return [
        {
            "name": group.name,
            "condition": group.condition.name if group.condition else None,
            "criteria": [
                {"name": c.name, "direction": c.direction.value, "nulls": c.nulls.value}
                for c in group.criteria
            ],
            "groups": describe_groups(group.groups),
        }
        for group in groups
    ]


__all__ = [
    "Condition",
    "GroupPath",
    "NullHandling",
    "SortCriterion",
    "SortDirection",
    "SortGroup",
    "describe_groups",
    "group_path",
    "path_names",
    "sort_items",
]
