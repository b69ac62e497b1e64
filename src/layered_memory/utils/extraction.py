"""Grammar-driven extraction of draft records from conversation text.

A single extractor serves every layer.  What differs between layers is
data: an :class:`ExtractionGrammar` naming the tag vocabulary, the
continuation sub-fields and the natural-language fallback pattern.

Extraction runs in two phases:

1. Explicit prefixes. ``<tag>: value`` opens a draft; a blank line or the
   next tag line closes it; ``status: ...``-style lines refine the open
   draft and anything else becomes a detail line.
2. Pattern fallback. Only when phase 1 found nothing and the capture mode
   allows it, a looser inline regex yields a few low-confidence drafts.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from ..config import CaptureMode
from ..models.record import DraftRecord

logger = logging.getLogger(__name__)

INJECTED_BLOCK_TAGS: tuple[str, ...] = (
    "relevant-memories",
    "episodic-memories",
    "procedural-memories",
    "tool-skill-memories",
    "entity-memories",
    "causal-graph",
    "collab-blackboard",
    "goal-intent",
    "timeline",
    "meta-memory",
    "sentiment-memory",
)


@dataclass(frozen=True)
class SubField:
    """Continuation line such as ``status: done`` refining an open draft."""

    name: str
    labels: tuple[str, ...]
    normalize: Callable[[str], str] = str.strip

    def match(self, line: str) -> str | None:
        m = _label_pattern(self.labels).match(line)
        return self.normalize(m.group("value")) if m else None


@dataclass(frozen=True)
class ExtractionGrammar:
    """Tag vocabulary and parsing rules for one layer."""

    name: str
    tags: tuple[str, ...]
    default_kind: str
    kind_map: Mapping[str, str] = field(default_factory=dict)
    sub_fields: tuple[SubField, ...] = ()
    seed_fields: Mapping[str, Callable[[str], str]] = field(default_factory=dict)
    """Fields derived from the tag value itself when a draft opens."""
    value_parser: Callable[[str, str], DraftRecord | None] | None = None
    """Turns ``(kind, value)`` into a draft; returning ``None`` drops the line."""
    line_parser: Callable[[str], DraftRecord | None] | None = None
    """Recognizes untagged lines that stand on their own (graph arrows)."""
    occurred_at_parser: Callable[[str], float | None] | None = None
    single_line: bool = False
    fallback: re.Pattern[str] | None = None
    """Inline pattern with a ``name`` group and an optional ``kind`` group."""
    fallback_fields: Mapping[str, str] = field(default_factory=dict)
    fallback_details: bool = False
    max_pattern_drafts: int = 5
    min_chars: int = 1

    @property
    def prefix_pattern(self) -> re.Pattern[str]:
        return _tag_pattern(self.tags)


def _alternation(words: Iterable[str]) -> str:
    return "|".join(re.escape(w) for w in sorted(words, key=len, reverse=True))


_PATTERN_CACHE: dict[tuple[str, tuple[str, ...]], re.Pattern[str]] = {}


def _tag_pattern(tags: tuple[str, ...]) -> re.Pattern[str]:
    key = ("tag", tags)
    if key not in _PATTERN_CACHE:
        _PATTERN_CACHE[key] = re.compile(
            rf"^\s*(?P<tag>{_alternation(tags)})\s*[:\-]\s*(?P<value>.+)$", re.IGNORECASE
        )
    return _PATTERN_CACHE[key]


def _label_pattern(labels: tuple[str, ...]) -> re.Pattern[str]:
    key = ("label", labels)
    if key not in _PATTERN_CACHE:
        _PATTERN_CACHE[key] = re.compile(
            rf"^\s*(?:{_alternation(labels)})\s*[:\-]\s*(?P<value>.+)$", re.IGNORECASE
        )
    return _PATTERN_CACHE[key]


def strip_injected(text: str, block_tags: Iterable[str] = INJECTED_BLOCK_TAGS) -> str:
    """Remove previously injected ``<tag>...</tag>`` context blocks."""
    if not text:
        return text
    for tag in block_tags:
        text = re.sub(rf"<{re.escape(tag)}>[\s\S]*?</{re.escape(tag)}>", "", text, flags=re.IGNORECASE)
    return text


def dedupe_drafts(drafts: Iterable[DraftRecord], seen: set[str] | None = None) -> list[DraftRecord]:
    """Drop drafts whose semantic key was already produced this turn."""
    seen = set() if seen is None else seen
    unique = []
    for draft in drafts:
        if not draft.name or draft.key in seen:
            continue
        seen.add(draft.key)
        unique.append(draft)
    return unique


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


def _open_draft(grammar: ExtractionGrammar, tag: str, value: str) -> DraftRecord | None:
    kind = grammar.kind_map.get(tag.lower(), grammar.default_kind)
    value = value.strip()
    if grammar.value_parser is not None:
        return grammar.value_parser(kind, value)
    fields = {name: fn(value) for name, fn in grammar.seed_fields.items()}
    occurred_at = grammar.occurred_at_parser(value) if grammar.occurred_at_parser else None
    return DraftRecord(
        kind=kind,
        name=value,
        fields={k: v for k, v in fields.items() if v},
        occurred_at=occurred_at,
    )


def _explicit_drafts(text: str, grammar: ExtractionGrammar) -> list[DraftRecord]:
    drafts: list[DraftRecord] = []
    current: DraftRecord | None = None
    prefix = grammar.prefix_pattern

    def close() -> None:
        nonlocal current
        if current is not None:
            drafts.append(current)
            current = None

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            close()
            continue

        match = prefix.match(line)
        if match:
            close()
            draft = _open_draft(grammar, match.group("tag"), match.group("value"))
            if draft is None:
                continue
            if grammar.single_line:
                drafts.append(draft)
            else:
                current = draft
            continue

        if grammar.line_parser is not None:
            standalone = grammar.line_parser(line)
            if standalone is not None:
                close()
                drafts.append(standalone)
                continue

        if current is None:
            continue

        for sub in grammar.sub_fields:
            value = sub.match(line)
            if value is not None:
                if value:
                    current.fields[sub.name] = value
                else:
                    current.fields.pop(sub.name, None)
                break
        else:
            current.details.append(line)

    close()
    return drafts


def _pattern_drafts(text: str, grammar: ExtractionGrammar) -> list[DraftRecord]:
    if grammar.fallback is None:
        return []
    drafts: list[DraftRecord] = []
    has_kind = "kind" in grammar.fallback.groupindex
    for match in grammar.fallback.finditer(text):
        name = match.group("name").strip()
        if len(name) < 2:
            continue
        kind = grammar.default_kind
        if has_kind and match.group("kind"):
            kind = grammar.kind_map.get(match.group("kind").lower(), grammar.default_kind)
        drafts.append(
            DraftRecord(
                kind=kind,
                name=name,
                fields=dict(grammar.fallback_fields),
                details=[text[:200]] if grammar.fallback_details else [],
                confidence="pattern",
            )
        )
        if len(drafts) >= grammar.max_pattern_drafts:
            break
    return drafts


def extract(
    text: str | None,
    grammar: ExtractionGrammar,
    capture_mode: CaptureMode = "explicit_or_pattern",
    block_tags: Iterable[str] = INJECTED_BLOCK_TAGS,
) -> list[DraftRecord]:
    """Parse *text* into deduplicated drafts according to *grammar*.

    Args:
        text: Raw message text; injected memory blocks are stripped first.
        grammar: The layer's extraction grammar.
        capture_mode: ``explicit`` forbids the pattern fallback, ``pattern``
            skips the explicit phase, ``explicit_or_pattern`` falls back only
            when no explicit draft was found.
        block_tags: Context block tags to strip before parsing.
    """
    if not text:
        return []
    cleaned = strip_injected(text, block_tags)
    if len(cleaned.strip()) < grammar.min_chars:
        return []

    drafts = [] if capture_mode == "pattern" else _explicit_drafts(cleaned, grammar)
    if not drafts and capture_mode != "explicit":
        drafts = _pattern_drafts(cleaned, grammar)

    unique = dedupe_drafts(drafts)
    if unique:
        logger.debug("Extracted %d %s draft(s) (%s)", len(unique), grammar.name, capture_mode)
    return unique
