# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Routing ledger: per-layer activation, volume and usefulness statistics.

The ledger is the only state shared across layers.  Every mutation is a
read-modify-write of one JSON file, serialized by an ``asyncio.Lock`` so
concurrently running layers never lose each other's updates.  Persistence
is best effort: a failed write is logged and reported through
``last_save`` but never raised.

The mutation helpers at module level operate on a ``LedgerDocument`` and
are pure apart from the timestamp they are given.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import ValidationError

from ..models.ledger import LedgerDocument, LedgerEntry, RoutingStats, TokenSavings
from ..models.validators import finite_or_zero, normalize_layer_name
from ..storage.json_store import JsonDocumentStore, LoadStatus, SaveResult
from ..utils.feedback import FeedbackEvent
from ..utils.turn_context import format_iso

logger = logging.getLogger(__name__)

WEEK_SECONDS = 7 * 24 * 60 * 60


def start_of_week(ts: float) -> float:
    """UTC Monday 00:00 of the week containing *ts*."""
    day = datetime.fromtimestamp(ts, timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return (day - timedelta(days=day.weekday())).timestamp()


# ---------------------------------------------------------------------------
# Pure mutations
# ---------------------------------------------------------------------------


def apply_activation(doc: LedgerDocument, layer: str, chars: float, now: float) -> bool:
    layer = normalize_layer_name(layer)
    if not layer:
        return False
    chars = finite_or_zero(chars)
    stats = doc.routing_stats
    entry = stats.layers.setdefault(layer, LedgerEntry())
    entry.activations += 1
    entry.chars_injected += chars
    entry.last_activated_at = now

    stats.total_activations += 1
    stats.total_chars_injected += chars
    stats.current_session_chars += chars
    stats.current_session_activations += 1
    stats.last_updated_at = now
    return True


def apply_feedback_event(doc: LedgerDocument, layer: str, useful: bool, now: float) -> bool:
    layer = normalize_layer_name(layer)
    if not layer:
        return False
    stats = doc.routing_stats
    entry = stats.layers.setdefault(layer, LedgerEntry())
    if useful:
        entry.useful_up += 1
    else:
        entry.useful_down += 1
    entry.useful_rate = round(entry.useful_up / (entry.useful_up + entry.useful_down), 2)
    entry.last_feedback_at = now
    stats.last_updated_at = now
    return True


def finalize_routing_session(stats: RoutingStats, now: float) -> None:
    """Fold the current session into lifetime totals and reset it."""
    session_chars = stats.current_session_chars
    session_acts = stats.current_session_activations
    stats.sessions += 1
    stats.total_session_chars += session_chars
    stats.total_session_activations += session_acts
    stats.after_routing_avg = round(stats.total_session_chars / stats.sessions)
    stats.last_session_chars = session_chars
    stats.last_session_activations = session_acts
    stats.current_session_chars = 0
    stats.current_session_activations = 0
    stats.last_updated_at = now


def update_token_savings(doc: LedgerDocument, now: float, baseline: float | None = None) -> bool:
    """Derive savings for the last finalized session.

    Returns False (and only mirrors ``after_routing_avg``) when no
    pre-routing baseline is known.
    """
    stats = doc.routing_stats
    token = doc.token_savings
    if stats.after_routing_avg is not None:
        token.after_routing_avg = stats.after_routing_avg
    if baseline is not None:
        token.before_routing_avg = baseline
    if token.before_routing_avg is None:
        return False

    saved = max(0, round(token.before_routing_avg - (stats.last_session_chars or 0)))
    token.saved_last_session = saved
    token.saved_total += saved

    if token.week_start is None or now - token.week_start >= WEEK_SECONDS:
        token.week_start = start_of_week(now)
        token.saved_this_week = 0
    token.saved_this_week += saved
    return True


def format_routing_lines(doc: LedgerDocument) -> list[str]:
    stats = doc.routing_stats
    if not stats.layers:
        return []
    lines = []
    if stats.after_routing_avg is not None:
        lines.append(f"Routing avg chars/session: {round(stats.after_routing_avg)}")
    ordered = sorted(stats.layers.items(), key=lambda item: item[1].activations, reverse=True)
    for layer, entry in ordered:
        useful = f", useful={entry.useful_rate}" if entry.useful_rate is not None else ""
        lines.append(f"{layer}: act={entry.activations}, avg_chars={entry.avg_chars}{useful}")
    return lines


def apply_turn_counters(
    doc: LedgerDocument,
    tool_calls: int,
    tool_errors: int,
    memory_commands: int,
    ltm_count: int | None,
    now: float,
) -> None:
    counters = doc.counters
    counters.sessions += 1
    counters.last_session_at = now
    counters.tool_calls += max(0, tool_calls)
    counters.tool_errors += max(0, tool_errors)
    if memory_commands > 0:
        counters.memory_commands += memory_commands
        counters.last_memory_command_at = now
    if ltm_count is not None:
        counters.ltm_count = ltm_count
        counters.ltm_updated_at = now


def format_counter_lines(doc: LedgerDocument) -> list[str]:
    counters = doc.counters
    if counters.last_session_at is None:
        return []
    lines = [
        f"Sessions: {counters.sessions}",
        f"Last session: {format_iso(counters.last_session_at)}",
        f"Tool calls: {counters.tool_calls} | errors: {counters.tool_errors}",
    ]
    if counters.last_memory_command_at is not None:
        lines.append(f"Memory commands: {counters.memory_commands}")
    if counters.ltm_count is not None:
        lines.append(f"LTM count: {counters.ltm_count}")
    return lines


# ---------------------------------------------------------------------------
# Ledger service
# ---------------------------------------------------------------------------


class RoutingLedger:
    """Lock-serialized, file-backed routing ledger.

    Usage::

        ledger = RoutingLedger(Path("~/.layered_memory/memory-meta.json").expanduser())
        await ledger.record_activation("goal", 312)
        await ledger.finalize_session()
        await ledger.compute_token_savings()
    """

    def __init__(
        self,
        path: Path | str,
        before_routing_avg: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = JsonDocumentStore(path)
        self._baseline = before_routing_avg
        self._clock = clock
        self._lock = asyncio.Lock()
        self.last_save: SaveResult | None = None

    @property
    def path(self) -> Path:
        return self._store.path

    async def _load(self) -> LedgerDocument:
        result = await self._store.aload()
        if result.status is LoadStatus.MISSING:
            logger.debug("Ledger %s not found, starting empty", self.path)
        if not result.ok:
            return LedgerDocument()
        try:
            return LedgerDocument.model_validate(result.data)
        except ValidationError as e:
            logger.warning("Ledger %s has invalid fields (%d), starting empty", self.path, e.error_count())
            return LedgerDocument()

    async def _mutate(self, fn: Callable[[LedgerDocument, float], object]) -> LedgerDocument:
        async with self._lock:
            doc = await self._load()
            changed = fn(doc, self._clock())
            if changed is not False:
                self.last_save = await self._store.asave(doc.model_dump(mode="json"))
            return doc

    async def record_activation(self, layer: str, chars: float) -> None:
        await self._mutate(lambda doc, now: apply_activation(doc, layer, chars, now))

    async def record_feedback(self, layer: str, useful: bool) -> None:
        await self._mutate(lambda doc, now: apply_feedback_event(doc, layer, useful, now))

    async def apply_feedback(self, events: Iterable[FeedbackEvent]) -> int:
        """Apply feedback events in order within a single write."""
        events = list(events)
        if not events:
            return 0

        def _apply(doc: LedgerDocument, now: float) -> bool:
            applied = [apply_feedback_event(doc, e.layer, e.useful, now) for e in events]
            return any(applied)

        await self._mutate(_apply)
        logger.debug("Applied %d feedback marker(s)", len(events))
        return len(events)

    async def finalize_session(self) -> RoutingStats:
        doc = await self._mutate(lambda doc, now: finalize_routing_session(doc.routing_stats, now))
        return doc.routing_stats

    async def compute_token_savings(self) -> TokenSavings | None:
        computed = False

        def _apply(doc: LedgerDocument, now: float) -> bool:
            nonlocal computed
            computed = update_token_savings(doc, now, self._baseline)
            return True

        doc = await self._mutate(_apply)
        return doc.token_savings if computed else None

    async def set_baseline(self, before_routing_avg: float) -> None:
        """Persist the pre-routing average context size used for savings."""
        baseline = max(0.0, finite_or_zero(before_routing_avg))
        self._baseline = baseline

        def _apply(doc: LedgerDocument, now: float) -> None:
            doc.token_savings.before_routing_avg = baseline

        await self._mutate(_apply)

    async def snapshot(self) -> LedgerDocument:
        async with self._lock:
            return await self._load()

    async def format_summary(self) -> list[str]:
        return format_routing_lines(await self.snapshot())

    async def record_turn(
        self,
        tool_calls: int = 0,
        tool_errors: int = 0,
        memory_commands: int = 0,
        ltm_count: int | None = None,
    ) -> None:
        """Count one finished turn in the session counters."""
        await self._mutate(
            lambda doc, now: apply_turn_counters(doc, tool_calls, tool_errors, memory_commands, ltm_count, now)
        )

    async def format_meta_lines(self) -> list[str]:
        """Counter lines followed by the routing summary, as the meta block shows them."""
        doc = await self.snapshot()
        routing = format_routing_lines(doc)
        return [*format_counter_lines(doc), *(["Routing stats:", *routing] if routing else [])]
