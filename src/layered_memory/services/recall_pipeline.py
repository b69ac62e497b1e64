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
Recall pipeline: gate -> embed -> search -> rank -> select -> format -> ledger.

One pipeline instance serves one layer.  External failures are logged and
end the run without a block; nothing is raised to the caller.
"""

import logging
import time
from collections.abc import Callable

from ..config import RerankSettings
from ..embeddings import EmbeddingProvider
from ..errors import ExternalCallError
from ..models.record import MemoryRecord, ScoredRecord
from ..utils.cluster_select import select_cluster, select_threshold
from ..utils.decay import rank
from ..utils.llm_reranker import LLMReranker, rerank_candidates
from ..utils.recall_gate import explain_recall, passes_length_check
from ..utils.redaction import truncate
from .layer_runtime import LayerRuntime, PipelineOutcome, PipelineState, call_external
from .routing_ledger import RoutingLedger

logger = logging.getLogger(__name__)


class RecallPipeline:
    """Produces at most one context block per query for a single layer."""

    def __init__(
        self,
        runtime: LayerRuntime,
        embeddings: EmbeddingProvider | None,
        ledger: RoutingLedger,
        reranker: LLMReranker | None = None,
        rerank_settings: RerankSettings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.runtime = runtime
        self.embeddings = embeddings
        self.ledger = ledger
        self.reranker = reranker
        self.rerank_settings = rerank_settings or RerankSettings()
        self.clock = clock

    async def run(self, query: str | None) -> PipelineOutcome:
        outcome = PipelineOutcome(layer=self.runtime.name)
        outcome.enter(PipelineState.GATE_CHECK)
        try:
            if self.runtime.side is not None:
                lines = await self._side_lines(query, outcome)
            elif self.runtime.definition.vector_backed:
                lines = await self._vector_lines(query, outcome)
            else:
                lines = await self._ledger_lines(query, outcome)
            if lines is None:
                return outcome
            if not lines:
                outcome.enter(PipelineState.IDLE)
                return outcome

            outcome.enter(PipelineState.FORMATTING)
            outcome.block, body = self._format(lines)
            await self.ledger.record_activation(self.runtime.name, len(body))
            outcome.enter(PipelineState.INJECTED)
            outcome.enter(PipelineState.IDLE)
        except Exception as e:
            logger.warning(
                "Recall for layer '%s' failed during %s (non-fatal): %s",
                self.runtime.name,
                outcome.state.value,
                e,
            )
            outcome.fail(e)
        return outcome

    def _skip(self, outcome: PipelineOutcome, reason: str) -> None:
        logger.debug("Recall for layer '%s' skipped: %s", self.runtime.name, reason)
        outcome.enter(PipelineState.SKIPPED)
        outcome.enter(PipelineState.IDLE)

    async def _ledger_lines(self, query: str | None, outcome: PipelineOutcome) -> list[str] | None:
        decision = explain_recall(self.runtime.settings, query, self.runtime.definition.recall_keywords)
        if not decision.allowed:
            self._skip(outcome, decision.reason)
            return None
        return await self.ledger.format_meta_lines()

    async def _side_lines(self, query: str | None, outcome: PipelineOutcome) -> list[str] | None:
        runtime = self.runtime
        settings = runtime.settings
        if not settings.enabled or not passes_length_check(settings, query):
            self._skip(outcome, "disabled or query too short")
            return None
        if runtime.definition.keyword_gate:
            decision = explain_recall(settings, query, runtime.definition.recall_keywords)
            if not decision.allowed:
                self._skip(outcome, decision.reason)
                return None
        outcome.enter(PipelineState.SEARCHING)
        return await call_external("search", runtime.side.lines(query, settings), settings.timeout_seconds)

    async def _vector_lines(self, query: str | None, outcome: PipelineOutcome) -> list[str] | None:
        runtime = self.runtime
        settings = runtime.settings
        if not settings.enabled or not passes_length_check(settings, query):
            self._skip(outcome, "disabled or query too short")
            return None

        index_hits = await self._index_hits(query) if runtime.definition.use_index and runtime.index else []
        decision = explain_recall(settings, query, runtime.definition.recall_keywords)
        if not decision.allowed and not index_hits:
            self._skip(outcome, decision.reason)
            return None

        selected: list[ScoredRecord] = []
        if decision.allowed:
            try:
                selected = await self._search(query, outcome)
            except ExternalCallError as e:
                if not index_hits:
                    raise
                logger.warning("Vector recall for layer '%s' failed, using index matches (non-fatal): %s", runtime.name, e)
                outcome.error = str(e)

        combined = self._merge(index_hits, selected)
        extras = await self._format_extras()
        return [runtime.definition.format_line(i, item, extras) for i, item in enumerate(combined, start=1)]

    async def _search(self, query: str, outcome: PipelineOutcome) -> list[ScoredRecord]:
        runtime = self.runtime
        settings = runtime.settings
        if self.embeddings is None or runtime.table is None:
            raise ExternalCallError("search", "layer has no vector store")

        outcome.enter(PipelineState.EMBEDDING)
        vector = await call_external("embed", self.embeddings.embed(query), settings.timeout_seconds)

        outcome.enter(PipelineState.SEARCHING)
        limit = settings.recall_limit * settings.candidate_multiplier
        candidates = await call_external("search", runtime.table.search(vector, limit), settings.timeout_seconds)

        if settings.rerank and self.reranker is not None and candidates:
            cfg = self.rerank_settings
            pool = candidates[: cfg.max_documents]
            candidates = await call_external(
                "rerank",
                rerank_candidates(self.reranker, query, pool, cfg.max_total_seconds, cfg.max_doc_chars),
                cfg.max_total_seconds + cfg.timeout_seconds,
            )

        outcome.enter(PipelineState.RANKING)
        ranked = rank(candidates, settings.half_life_days, now=self.clock(), decay_field=runtime.definition.decay_field)
        if settings.selection == "cluster":
            selected = select_cluster(ranked, settings.min_score, settings.max_gap, settings.recall_limit)
        else:
            selected = select_threshold(ranked, settings.min_score, settings.recall_limit)
        if runtime.definition.sort_key is not None:
            selected = sorted(selected, key=runtime.definition.sort_key)
        logger.debug("Layer '%s': %d candidate(s), %d selected", runtime.name, len(candidates), len(selected))
        return selected

    async def _index_hits(self, query: str) -> list[ScoredRecord]:
        entries = await self.runtime.index.find_in_text(query, self.runtime.settings.recall_limit)
        hits = []
        for entry in entries:
            record = MemoryRecord(
                id=entry.record_id,
                layer=self.runtime.name,
                text=entry.summary,
                kind=entry.kind,
                key=entry.key,
                created_at=entry.created_at,
                updated_at=entry.updated_at,
            )
            hits.append(ScoredRecord(record=record, raw_score=1.0, score=1.0, debug_info={"source": "index"}))
        return hits

    def _merge(self, index_hits: list[ScoredRecord], selected: list[ScoredRecord]) -> list[ScoredRecord]:
        combined: list[ScoredRecord] = []
        seen: set[str] = set()
        for item in [*index_hits, *selected]:
            key = item.record.key or item.record.id
            if key in seen:
                continue
            seen.add(key)
            combined.append(item)
            if len(combined) >= self.runtime.settings.recall_limit:
                break
        return combined

    async def _format_extras(self) -> dict:
        extras = {"max_line_chars": self.runtime.settings.max_line_chars}
        if self.runtime.pattern_stats is not None:
            extras["pattern_stats"] = await self.runtime.pattern_stats.all()
        return extras

    def _format(self, lines: list[str]) -> tuple[str, str]:
        definition = self.runtime.definition
        body = "\n".join(lines)
        if definition.header:
            body = f"{definition.header}\n{body}"
        body = truncate(body, self.runtime.settings.max_chars)
        return f"<{definition.block_tag}>\n{body}\n</{definition.block_tag}>", body
