"""Candidate selection after ranking.

``select_cluster`` keeps a score-homogeneous group at the top of the list
instead of a fixed top-K, so one strong match is not padded out with
mediocre ones.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TypeVar

T = TypeVar("T")


def _score_attr(item: object) -> float:
    return float(getattr(item, "score"))


def select_cluster(
    items_sorted_desc: Sequence[T],
    min_score: float,
    max_gap: float,
    max_count: int,
    score: Callable[[T], float] = _score_attr,
) -> list[T]:
    """Pick the contiguous top cluster from a descending list.

    Items below *min_score* are skipped.  After the first qualifying item,
    later items are accepted while their drop from the previously selected
    score stays within *max_gap*; the first larger drop ends the walk.  When
    nothing qualifies, the first *max_count* items are returned unchanged.
    """
    if max_count <= 0:
        return []

    selected: list[T] = []
    prev: float | None = None
    for item in items_sorted_desc:
        value = score(item)
        if value < min_score:
            continue
        if prev is not None and prev - value > max_gap:
            break
        selected.append(item)
        prev = value
        if len(selected) >= max_count:
            break

    if not selected:
        return list(items_sorted_desc[:max_count])
    return selected


def select_threshold(
    items_sorted_desc: Sequence[T],
    min_score: float,
    max_count: int,
    score: Callable[[T], float] = _score_attr,
) -> list[T]:
    """Keep items scoring at least *min_score*, up to *max_count*."""
    if max_count <= 0:
        return []
    return [item for item in items_sorted_desc if score(item) >= min_score][:max_count]
