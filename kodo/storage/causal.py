"""Version-vector helpers.

Each operation carries the causal context of the entry it produced: a map of
workstation id to the highest counter from that workstation folded into the
entry. Comparing two contexts tells whether one operation has seen the other.
"""

from enum import Enum
from typing import Dict, Iterable, Mapping

Context = Dict[str, int]


class Order(Enum):
    EQUAL = "equal"
    BEFORE = "before"  # left is dominated by right
    AFTER = "after"  # left dominates right
    CONCURRENT = "concurrent"


def dominates(left: Mapping[str, int], right: Mapping[str, int]) -> bool:
    """True when `left` has seen everything `right` has."""
    return all(left.get(ws, 0) >= counter for ws, counter in right.items())


def compare(left: Mapping[str, int], right: Mapping[str, int]) -> Order:
    left_ge = dominates(left, right)
    right_ge = dominates(right, left)
    if left_ge and right_ge:
        return Order.EQUAL
    if left_ge:
        return Order.AFTER
    if right_ge:
        return Order.BEFORE
    return Order.CONCURRENT


def join(*contexts: Mapping[str, int]) -> Context:
    """Component-wise maximum."""
    merged: Context = {}
    for ctx in contexts:
        for ws, counter in ctx.items():
            if counter > merged.get(ws, 0):
                merged[ws] = counter
    return merged


def max_counter(contexts: Iterable[Mapping[str, int]]) -> int:
    return max((max(ctx.values(), default=0) for ctx in contexts), default=0)
