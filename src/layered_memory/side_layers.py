"""File-backed layers that keep structured state instead of vectors.

The blackboard, sentiment and tool-skill layers run through the same gate,
format and ledger steps as the vector layers, but recall reads a JSON side
file and capture updates it.  Each layer object owns its store.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from .config import LayerSettings
from .models.record import BoardItem, SentimentEntry, ToolStats
from .storage.json_store import BoardStore, SentimentLog, ToolStatsStore
from .utils.extraction import INJECTED_BLOCK_TAGS, ExtractionGrammar, extract, strip_injected
from .utils.redaction import redact_sensitive, truncate
from .utils.sentiment import score_sentiment
from .utils.turn_context import TurnEnd, tool_steps

SAMPLE_CHARS = 160
TREND_WINDOW = 5


class SideLayer(Protocol):
    async def lines(self, query: str, settings: LayerSettings) -> list[str]: ...

    async def capture(self, turn: TurnEnd, settings: LayerSettings, now: float) -> int: ...


# ---------------------------------------------------------------------------
# Blackboard
# ---------------------------------------------------------------------------

BOARD_CLEAR = re.compile(r"^\s*(?:bb|blackboard)\s*(?:clear|reset|limpiar)\b", re.IGNORECASE | re.MULTILINE)


class BlackboardLayer:
    """Shared tagged lines (todo, decision, risk, ...) upserted by type and text."""

    def __init__(self, path: Path | str, grammar: ExtractionGrammar):
        self.store = BoardStore(path)
        self.grammar = grammar

    async def lines(self, query: str, settings: LayerSettings) -> list[str]:
        items = sorted((await self.store.items()).values(), key=lambda i: i.updated_at, reverse=True)
        return [f"- [{i.type}] {truncate(i.text, settings.max_line_chars)}" for i in items[: settings.recall_limit]]

    async def capture(self, turn: TurnEnd, settings: LayerSettings, now: float) -> int:
        added = 0
        for text in turn.context.texts(("user", "assistant")):
            cleaned = strip_injected(text, INJECTED_BLOCK_TAGS)
            clear = bool(BOARD_CLEAR.search(cleaned))
            items = [
                BoardItem(type=draft.kind, text=redact_sensitive(draft.name, settings.redaction_enabled), updated_at=now)
                for draft in extract(cleaned, self.grammar, settings.capture_mode)
            ]
            added += await self.store.apply(items, clear=clear)
        return added


# ---------------------------------------------------------------------------
# Sentiment
# ---------------------------------------------------------------------------


def _mean(entries: list[SentimentEntry]) -> float:
    return sum(e.score for e in entries) / len(entries) if entries else 0.0


class SentimentLayer:
    """Rolling log of per-turn user sentiment with last, average and trend."""

    def __init__(self, path: Path | str, max_entries: int = 500):
        self.log = SentimentLog(path, max_entries=max_entries)

    async def lines(self, query: str, settings: LayerSettings) -> list[str]:
        entries = await self.log.entries()
        if not entries:
            return []
        recent = entries[-settings.window_size :]
        last = recent[-1]
        # -0.0 + 0.0 is 0.0, so a flat trend renders as +0.00
        trend = _mean(recent[-TREND_WINDOW:]) - _mean(recent[-2 * TREND_WINDOW : -TREND_WINDOW]) + 0.0
        return [
            f"Last: {last.label} ({last.score:.2f})",
            f"Avg({len(recent)}): {_mean(recent):.2f}",
            f"Trend: {'+' if trend >= 0 else ''}{trend:.2f}",
        ]

    async def capture(self, turn: TurnEnd, settings: LayerSettings, now: float) -> int:
        combined = "\n".join(t for t in (strip_injected(u) for u in turn.context.user_texts) if t)
        if not combined.strip():
            return 0
        result = score_sentiment(combined)
        if result.matches < settings.min_matches:
            return 0
        sample = truncate(redact_sensitive(combined, settings.redaction_enabled), SAMPLE_CHARS)
        await self.log.append(SentimentEntry(ts=now, label=result.label, score=result.score, sample=sample))
        return 1


# ---------------------------------------------------------------------------
# Tool skill
# ---------------------------------------------------------------------------


def select_tools_for_prompt(prompt: str, stats: Mapping[str, ToolStats], always_recall: bool = False) -> list[str]:
    """Tools named in *prompt*, directly or through a pattern token like ``git``."""
    if always_recall or not prompt:
        return list(stats)
    lower = prompt.lower()
    matched = []
    for name, tool in stats.items():
        tokens = [name, *(key.split(":", 1)[1] if ":" in key else key for key in tool.patterns)]
        if any(token and token.lower() in lower for token in tokens):
            matched.append(name)
    return matched


def _percent(rate: float) -> int:
    return int(rate * 100 + 0.5)


def format_tool_summary(name: str, tool: ToolStats, settings: LayerSettings) -> str:
    """Success summary for one tool, or ``""`` below the usage or success floor."""
    if tool.total < settings.min_total or tool.rate < settings.min_success_rate:
        return ""
    lines = [f"Tool: {name} | success {tool.success}/{tool.total} ({_percent(tool.rate)}%)"]
    ranked = sorted(tool.patterns.items(), key=lambda kv: (-kv[1].rate, -kv[1].total))
    for key, pattern in ranked[: settings.recall_limit]:
        example = f" | ex: {pattern.examples[0]}" if pattern.examples else ""
        lines.append(f"- {key}: {pattern.success}/{pattern.total} ({_percent(pattern.rate)}%){example}")
    return "\n".join(lines)


class ToolSkillLayer:
    """Per-tool success rates and working examples learned from tool results."""

    def __init__(self, path: Path | str):
        self.store = ToolStatsStore(path)

    async def lines(self, query: str, settings: LayerSettings) -> list[str]:
        stats = await self.store.all()
        summaries = [
            summary
            for name in select_tools_for_prompt(query, stats, settings.always_recall)
            if (summary := format_tool_summary(name, stats[name], settings))
        ]
        return ["\n\n".join(summaries)] if summaries else []

    async def capture(self, turn: TurnEnd, settings: LayerSettings, now: float) -> int:
        steps = tool_steps(turn.context, settings.redaction_enabled)
        if not steps:
            return 0
        await self.store.record(steps, now, settings.max_examples)
        return len(steps)
