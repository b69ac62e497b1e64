"""Heuristic gate deciding whether a layer's recall runs for a query.

Vector search costs an embedding call and context budget, so a layer only
searches when its keywords appear in the query or when it is configured
to always recall.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from functools import lru_cache

from ..config import LayerSettings


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str


@lru_cache(maxsize=64)
def _keyword_pattern(keywords: tuple[str, ...]) -> re.Pattern[str] | None:
    terms = [re.escape(k.strip()) for k in keywords if k and k.strip()]
    if not terms:
        return None
    # Longest first so multi-word phrases win over their prefixes.
    terms.sort(key=len, reverse=True)
    return re.compile("|".join(terms), re.IGNORECASE)


def matches_keywords(query: str, keywords: Sequence[str]) -> bool:
    """Case-insensitive substring match of any keyword or phrase."""
    pattern = _keyword_pattern(tuple(keywords))
    return bool(pattern and pattern.search(query))


def passes_length_check(settings: LayerSettings, query: str | None) -> bool:
    return query is not None and len(query.strip()) >= settings.min_query_chars


def explain_recall(settings: LayerSettings, query: str | None, keywords: Sequence[str] = ()) -> GateDecision:
    """Evaluate the gate and report which rule decided it."""
    if not settings.enabled:
        return GateDecision(False, "disabled")
    if not passes_length_check(settings, query):
        return GateDecision(False, "query too short")
    if settings.always_recall:
        return GateDecision(True, "always_recall")
    table = settings.recall_keywords if settings.recall_keywords is not None else keywords
    if matches_keywords(query, table):
        return GateDecision(True, "keyword match")
    return GateDecision(False, "no keyword match")


def should_recall(settings: LayerSettings, query: str | None, keywords: Sequence[str] = ()) -> bool:
    return explain_recall(settings, query, keywords).allowed
