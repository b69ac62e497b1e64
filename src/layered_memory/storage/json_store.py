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
Best-effort JSON side files: the routing ledger, dedup indexes, pattern
statistics and the stores behind the file-backed layers.

Reads never raise: a missing file and a corrupt file both yield an empty
document, but the returned ``LoadResult`` says which one happened.  Writes
go to a temp file that is renamed over the target, and failures are
reported in ``SaveResult`` instead of raised.
"""

import asyncio
import json
import logging
import os
import re
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, RootModel, ValidationError

from ..errors import PersistenceError
from ..models.record import BoardItem, IndexEntry, PatternStats, SentimentEntry, ToolStats
from ..utils.turn_context import ToolStep

logger = logging.getLogger(__name__)

MIN_INDEX_NAME_CHARS = 3


def _name_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(name.strip())}(?!\w)", re.IGNORECASE)


class LoadStatus(str, Enum):
    OK = "ok"
    MISSING = "missing"
    CORRUPT = "corrupt"


@dataclass
class LoadResult:
    status: LoadStatus
    data: dict[str, Any] = field(default_factory=dict)
    error: PersistenceError | None = None

    @property
    def ok(self) -> bool:
        return self.status is LoadStatus.OK


@dataclass
class SaveResult:
    ok: bool
    path: Path
    error: PersistenceError | None = None


class JsonDocumentStore:
    """A single JSON object file, atomically rewritten on every save."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> LoadResult:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return LoadResult(LoadStatus.MISSING)
        except OSError as e:
            return self._corrupt(f"unreadable: {e}")

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            return self._corrupt(f"invalid JSON: {e}")
        if not isinstance(data, dict):
            return self._corrupt("top-level value is not an object")
        return LoadResult(LoadStatus.OK, data)

    def _corrupt(self, reason: str) -> LoadResult:
        error = PersistenceError(f"{self.path}: {reason}")
        logger.warning("Ignoring corrupt side file (using defaults): %s", error)
        return LoadResult(LoadStatus.CORRUPT, error=error)

    def save(self, data: dict[str, Any]) -> SaveResult:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_name, self.path)
            return SaveResult(True, self.path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            error = PersistenceError(f"{self.path}: write failed: {e}")
            logger.warning("Side file write failed (non-fatal): %s", error)
            return SaveResult(False, self.path, error)

    async def aload(self) -> LoadResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.load)

    async def asave(self, data: dict[str, Any]) -> SaveResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.save, data)


# ---------------------------------------------------------------------------
# Typed side files
# ---------------------------------------------------------------------------


class _IndexDocument(RootModel[dict[str, IndexEntry]]):
    pass


class _StatsDocument(RootModel[dict[str, PatternStats]]):
    pass


class _BoardDocument(RootModel[dict[str, BoardItem]]):
    pass


class _ToolDocument(RootModel[dict[str, ToolStats]]):
    pass


class _SentimentDocument(BaseModel):
    entries: list[SentimentEntry] = Field(default_factory=list)


class _TypedStore:
    """A JSON store holding one mapping of pydantic rows, guarded by a lock."""

    document: type[RootModel]

    def __init__(self, path: Path | str):
        self._store = JsonDocumentStore(path)
        self._lock = asyncio.Lock()
        self.last_save: SaveResult | None = None

    @property
    def path(self) -> Path:
        return self._store.path

    async def _read(self) -> dict[str, Any]:
        result = await self._store.aload()
        if not result.ok:
            return {}
        try:
            return dict(self.document.model_validate(result.data).root)
        except ValidationError as e:
            logger.warning("Ignoring malformed rows in %s: %s", self.path, e.error_count())
            return {}

    async def _write(self, rows: dict[str, BaseModel]) -> SaveResult:
        self.last_save = await self._store.asave({k: v.model_dump() for k, v in rows.items()})
        return self.last_save


class LayerIndex(_TypedStore):
    """Semantic key -> latest ``IndexEntry`` for one layer."""

    document = _IndexDocument

    async def entries(self) -> dict[str, IndexEntry]:
        async with self._lock:
            return await self._read()

    async def get(self, key: str) -> IndexEntry | None:
        return (await self.entries()).get(key)

    async def put(self, entry: IndexEntry) -> SaveResult:
        async with self._lock:
            rows = await self._read()
            rows[entry.key] = entry
            return await self._write(rows)

    async def find_in_text(self, text: str, limit: int) -> list[IndexEntry]:
        """Entries whose name appears in *text* as a whole word, most recent first.

        Names shorter than ``MIN_INDEX_NAME_CHARS`` never match.
        """
        hits = [
            e
            for e in (await self.entries()).values()
            if len(e.name.strip()) >= MIN_INDEX_NAME_CHARS and _name_pattern(e.name).search(text)
        ]
        hits.sort(key=lambda e: e.updated_at, reverse=True)
        return hits[:limit]


class PatternStatsStore(_TypedStore):
    """Pattern key -> success counters for procedural memories."""

    document = _StatsDocument

    async def all(self) -> dict[str, PatternStats]:
        async with self._lock:
            return await self._read()

    async def record(self, pattern_key: str, success: bool, now: float) -> SaveResult | None:
        if not pattern_key:
            return None
        async with self._lock:
            rows = await self._read()
            stats = rows.get(pattern_key) or PatternStats()
            rows[pattern_key] = stats.model_copy(
                update={
                    "total": stats.total + 1,
                    "success": stats.success + (1 if success else 0),
                    "last_used_at": now,
                }
            )
            return await self._write(rows)


class BoardStore(_TypedStore):
    """Semantic key -> ``BoardItem`` for the shared blackboard."""

    document = _BoardDocument

    async def items(self) -> dict[str, BoardItem]:
        async with self._lock:
            return await self._read()

    async def apply(self, items: Iterable[BoardItem], clear: bool = False) -> int:
        """Optionally clear the board, then upsert *items*; returns how many were new.

        An item already on the board only has ``updated_at`` bumped.
        """
        items = list(items)
        if not items and not clear:
            return 0
        added = 0
        async with self._lock:
            rows = {} if clear else await self._read()
            for item in items:
                existing = rows.get(item.key)
                if existing is None:
                    rows[item.key] = item
                    added += 1
                else:
                    rows[item.key] = existing.model_copy(update={"updated_at": item.updated_at})
            await self._write(rows)
        return added


class ToolStatsStore(_TypedStore):
    """Tool name -> ``ToolStats`` with per-pattern counters and examples."""

    document = _ToolDocument

    async def all(self) -> dict[str, ToolStats]:
        async with self._lock:
            return await self._read()

    async def record(self, steps: Iterable[ToolStep], now: float, max_examples: int = 3) -> SaveResult | None:
        """Count every step; successful steps also lead their pattern's examples."""
        steps = [s for s in steps if s.tool_name]
        if not steps:
            return None
        async with self._lock:
            rows = await self._read()
            for step in steps:
                tool = rows.get(step.tool_name) or ToolStats()
                pattern = tool.patterns.get(step.pattern) or PatternStats()
                examples = pattern.examples
                if step.succeeded and step.text:
                    examples = list(dict.fromkeys([step.text, *examples]))[:max_examples]
                tool.patterns[step.pattern] = PatternStats(
                    total=pattern.total + 1,
                    success=pattern.success + (1 if step.succeeded else 0),
                    last_used_at=now,
                    examples=examples,
                )
                tool.total += 1
                tool.success += 1 if step.succeeded else 0
                tool.last_used_at = now
                rows[step.tool_name] = tool
            return await self._write(rows)


class SentimentLog:
    """Append-only sentiment history, capped to the newest ``max_entries``."""

    def __init__(self, path: Path | str, max_entries: int = 500):
        self._store = JsonDocumentStore(path)
        self._lock = asyncio.Lock()
        self.max_entries = max_entries
        self.last_save: SaveResult | None = None

    @property
    def path(self) -> Path:
        return self._store.path

    async def _read(self) -> list[SentimentEntry]:
        result = await self._store.aload()
        if not result.ok:
            return []
        try:
            return _SentimentDocument.model_validate(result.data).entries
        except ValidationError as e:
            logger.warning("Ignoring malformed rows in %s: %s", self.path, e.error_count())
            return []

    async def entries(self) -> list[SentimentEntry]:
        async with self._lock:
            return await self._read()

    async def append(self, entry: SentimentEntry) -> SaveResult:
        async with self._lock:
            entries = [*await self._read(), entry][-self.max_entries :]
            document = _SentimentDocument(entries=entries)
            self.last_save = await self._store.asave(document.model_dump())
            return self.last_save
