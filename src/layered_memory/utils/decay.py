"""Temporal decay of similarity scores.

``adjusted = raw * exp(-age / half_life)`` with ages in seconds.  A
non-positive half-life disables decay entirely.
"""

from __future__ import annotations

import math
import time
from collections.abc import Iterable

from ..models.record import ScoredRecord
from ..models.validators import DecayField

SECONDS_PER_DAY = 86_400


def similarity_from_distance(distance: float) -> float:
    """Map a Euclidean distance to a similarity in ``(0, 1]``.

    Some clients report the distance negated; only its magnitude counts.
    """
    return 1.0 / (1.0 + abs(distance))


def decay_factor(record_timestamp: float | None, half_life_days: float, now: float | None = None) -> float:
    """Multiplier in ``(0, 1]`` for a record of the given age."""
    if half_life_days <= 0 or record_timestamp is None:
        return 1.0
    now = time.time() if now is None else now
    age = max(0.0, now - record_timestamp)
    return math.exp(-age / (half_life_days * SECONDS_PER_DAY))


def adjust(raw_score: float, record_timestamp: float | None, half_life_days: float, now: float | None = None) -> float:
    """Discount *raw_score* by the age of the record.

    Args:
        raw_score: Similarity in ``(0, 1]``.
        record_timestamp: UNIX seconds the record decays from; ``None`` counts as fresh.
        half_life_days: Decay scale in days; ``<= 0`` returns *raw_score* unchanged.
        now: Reference time, defaults to the current time.
    """
    if half_life_days <= 0:
        return raw_score
    return raw_score * decay_factor(record_timestamp, half_life_days, now)


def rank(
    candidates: Iterable[ScoredRecord],
    half_life_days: float,
    now: float | None = None,
    decay_field: DecayField = "created_at",
) -> list[ScoredRecord]:
    """Apply decay to each candidate's score and sort descending."""
    now = time.time() if now is None else now
    ranked = []
    for item in candidates:
        factor = decay_factor(item.record.decay_timestamp(decay_field), half_life_days, now)
        ranked.append(
            item.model_copy(
                update={
                    "score": item.score * factor,
                    "debug_info": {**item.debug_info, "decay_factor": round(factor, 4)},
                }
            )
        )
    ranked.sort(key=lambda r: r.score, reverse=True)
    return ranked
