"""In-conversation usefulness markers.

Users can grade a layer inline, e.g. ``memory-feedback: layer=goal useful=false``.
Every marker found in a turn is applied to the ledger in order of appearance.
Messages that ask for something to be remembered or forgotten are counted
as memory commands.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from functools import lru_cache

DEFAULT_MARKERS: tuple[str, ...] = ("memory-feedback", "memoria-feedback")


MEMORY_COMMAND = re.compile(
    r"remember|recuerda|guardar|guarda|save memory|olvida|forget|memoriza|memoria", re.IGNORECASE
)


@dataclass(frozen=True)
class FeedbackEvent:
    layer: str
    useful: bool


@lru_cache(maxsize=8)
def _feedback_pattern(markers: tuple[str, ...]) -> re.Pattern[str]:
    names = "|".join(re.escape(m) for m in markers)
    return re.compile(
        rf"(?:{names})\s*[: ]\s*layer\s*=\s*([a-z0-9_-]+)\s*(?:,|\s)+\s*useful\s*=\s*(true|false|1|0)",
        re.IGNORECASE,
    )


def parse_feedback(text: str | None, markers: Sequence[str] = DEFAULT_MARKERS) -> list[FeedbackEvent]:
    """All feedback markers in *text*, in order of appearance."""
    if not text:
        return []
    pattern = _feedback_pattern(tuple(markers))
    return [
        FeedbackEvent(layer=m.group(1).lower(), useful=m.group(2).lower() in ("true", "1"))
        for m in pattern.finditer(text)
    ]


def parse_feedback_all(texts: Iterable[str], markers: Sequence[str] = DEFAULT_MARKERS) -> list[FeedbackEvent]:
    events: list[FeedbackEvent] = []
    for text in texts:
        events.extend(parse_feedback(text, markers))
    return events


def count_memory_commands(texts: Iterable[str]) -> int:
    """Number of messages that mention a memory command."""
    return sum(1 for text in texts if text and MEMORY_COMMAND.search(text))
