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
Memory engine: wires layers, stores and the routing ledger to host hooks.

Each enabled layer gets a ``LayerRuntime`` (settings, vector table, index
and pattern stats) plus a recall and a capture pipeline.  Before a turn,
every layer's recall runs as its own task; blocks are joined in priority
order.  After a turn, every layer captures, the session counters are
bumped, then feedback markers are applied and the routing session is
finalized.  No handler ever raises.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from qdrant_client import QdrantClient

from ..config import ConfigError, Settings
from ..embeddings import EmbeddingProvider, create_embedding_provider
from ..hooks import BeforeTurnStartEvent, HookRegistry, TurnEndEvent
from ..layers import BUILTIN_LAYERS, LayerDefinition, injected_block_tags
from ..storage.factory import create_qdrant_client, create_vector_table
from ..storage.json_store import LayerIndex, PatternStatsStore
from ..utils.feedback import count_memory_commands, parse_feedback_all
from ..utils.llm_reranker import LLMReranker, OllamaReranker
from ..utils.turn_context import TurnEnd, collect_context
from .capture_pipeline import CapturePipeline
from .layer_runtime import LayerRuntime, PipelineOutcome
from .recall_pipeline import RecallPipeline
from .routing_ledger import RoutingLedger

logger = logging.getLogger(__name__)


class MemoryEngine:
    """Layered conversational memory behind two host hooks.

    Usage::

        engine = MemoryEngine(Settings())
        await engine.initialize()

        context = await engine.before_turn_start(BeforeTurnStartEvent(prompt=prompt))
        ...
        await engine.turn_end(TurnEndEvent(messages=messages))
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        embeddings: EmbeddingProvider | None = None,
        client: QdrantClient | None = None,
        ledger: RoutingLedger | None = None,
        reranker: LLMReranker | None = None,
        definitions: Sequence[LayerDefinition] = BUILTIN_LAYERS,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or Settings()
        self.definitions = tuple(definitions)
        self.clock = clock
        self.ledger = ledger or RoutingLedger(
            self.settings.ledger_path,
            before_routing_avg=self.settings.ledger.before_routing_avg,
            clock=clock,
        )
        self._embeddings = embeddings
        self._client = client
        self._owns_client = client is None
        self._reranker = reranker
        self._block_tags = injected_block_tags(self.definitions)
        self._init_lock = asyncio.Lock()
        self._initialized = False

        self.runtimes: dict[str, LayerRuntime] = {}
        self._recall: dict[str, RecallPipeline] = {}
        self._capture: dict[str, CapturePipeline] = {}
        self.last_outcomes: list[PipelineOutcome] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Register every enabled layer; invalid layers are logged and skipped."""
        async with self._init_lock:
            if self._initialized:
                return
            if any(d.vector_backed for d in self.definitions):
                self._init_vector_backend()

            for definition in sorted(self.definitions, key=lambda d: -d.priority):
                try:
                    layer_settings = definition.settings(self.settings.layers.get(definition.name))
                except ConfigError as e:
                    logger.error("Skipping layer '%s': %s", definition.name, e)
                    continue
                if not layer_settings.enabled:
                    logger.info("Layer '%s' disabled", definition.name)
                    continue
                if definition.vector_backed and (self._embeddings is None or self._client is None):
                    logger.error("Skipping layer '%s': no embedding provider", definition.name)
                    continue
                self._register_layer(definition, layer_settings)

            self._initialized = True
            logger.info("Registered %d memory layer(s): %s", len(self.runtimes), ", ".join(self.runtimes))

    def _init_vector_backend(self) -> None:
        if self._embeddings is None:
            try:
                self._embeddings = create_embedding_provider(self.settings.embedding)
            except ConfigError as e:
                logger.error("Embedding provider unavailable, vector layers disabled: %s", e)
                return
        if self._client is None:
            self._client = create_qdrant_client(self.settings.qdrant, self.settings.data_dir)

    def _register_layer(self, definition: LayerDefinition, layer_settings) -> None:
        table = None
        if definition.vector_backed:
            table = create_vector_table(
                self._client, self.settings.qdrant, definition.name, self._embeddings.dimensions
            )
        layer_dir = self.settings.layer_dir(definition.name)
        runtime = LayerRuntime(
            definition=definition,
            settings=layer_settings,
            table=table,
            index=LayerIndex(layer_dir / "index.json") if definition.keeps_index else None,
            pattern_stats=PatternStatsStore(layer_dir / "pattern-stats.json") if definition.track_patterns else None,
            side=definition.side_layer(layer_dir) if definition.side_layer is not None else None,
        )

        reranker = self._reranker
        if layer_settings.rerank and reranker is None:
            reranker = self._reranker = OllamaReranker(self.settings.rerank)

        self.runtimes[definition.name] = runtime
        self._recall[definition.name] = RecallPipeline(
            runtime,
            self._embeddings,
            self.ledger,
            reranker=reranker,
            rerank_settings=self.settings.rerank,
            clock=self.clock,
        )
        self._capture[definition.name] = CapturePipeline(
            runtime, self._embeddings, clock=self.clock, block_tags=self._block_tags
        )
        logger.debug("Layer '%s' registered (priority %d)", definition.name, definition.priority)

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
        self._client = None

    # ------------------------------------------------------------------
    # Host hooks
    # ------------------------------------------------------------------

    def register(self, registry: HookRegistry) -> None:
        """Add one before-turn handler per layer and a single turn-end handler."""
        for definition in self.definitions:

            async def _recall(event: BeforeTurnStartEvent, name: str = definition.name) -> dict[str, str] | None:
                return await self.recall_layer(name, event)

            registry.add("before_turn_start", _recall, priority=definition.priority)
        registry.add("turn_end", self.turn_end)

    async def recall_layer(self, name: str, event: BeforeTurnStartEvent) -> dict[str, str] | None:
        """Recall for a single layer; ``None`` when it has nothing to inject."""
        try:
            await self.initialize()
            pipeline = self._recall.get(name)
            if pipeline is None:
                return None
            outcome = await pipeline.run(event.prompt)
        except Exception as e:
            logger.warning("Recall for layer '%s' failed (non-fatal): %s", name, e)
            return None
        return {"prependContext": outcome.block} if outcome.block else None

    async def before_turn_start(self, event: BeforeTurnStartEvent) -> dict[str, str] | None:
        """Run every layer's recall concurrently and join blocks by priority."""
        try:
            await self.initialize()
            ordered = sorted(self.runtimes.values(), key=lambda r: -r.priority)
            outcomes = await asyncio.gather(*(self._recall[r.name].run(event.prompt) for r in ordered))
        except Exception as e:
            logger.warning("before_turn_start failed (non-fatal): %s", e)
            return None

        self.last_outcomes = list(outcomes)
        blocks = [o.block for o in outcomes if o.block]
        if not blocks:
            return None
        logger.debug("Injecting %d block(s): %s", len(blocks), ", ".join(o.layer for o in outcomes if o.block))
        return {"prependContext": "\n\n".join(blocks)}

    async def turn_end(self, event: TurnEndEvent) -> list[PipelineOutcome]:
        """Capture the finished turn in every layer, then update the ledger."""
        if not event.messages:
            return []
        outcomes: list[PipelineOutcome] = []
        try:
            await self.initialize()
            context = collect_context(event.messages)
            turn = TurnEnd(
                context=context,
                success=event.success,
                duration_ms=event.duration_ms,
                agent_id=event.agent_id,
                session_key=event.session_key,
            )
            outcomes = list(await asyncio.gather(*(p.run(turn) for p in self._capture.values())))
            self.last_outcomes = outcomes

            await self.ledger.record_turn(
                tool_calls=context.tool_call_count,
                tool_errors=context.tool_errors,
                memory_commands=count_memory_commands(context.user_texts),
                ltm_count=await self._ltm_count(),
            )
            feedback = parse_feedback_all(context.user_texts, self.settings.ledger.feedback_markers)
            await self.ledger.apply_feedback(feedback)
            await self.ledger.finalize_session()
            await self.ledger.compute_token_savings()
        except Exception as e:
            logger.warning("turn_end failed (non-fatal): %s", e)
        return outcomes

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def _ltm_count(self) -> int | None:
        runtime = self.runtimes.get("memories")
        if runtime is None or runtime.table is None:
            return None
        try:
            return await runtime.table.count()
        except Exception as e:
            logger.debug("Memories count unavailable: %s", e)
            return None

    async def layer_counts(self) -> dict[str, Any]:
        """Stored record count per vector-backed layer (``None`` on failure)."""
        await self.initialize()
        counts: dict[str, Any] = {}
        for name, runtime in self.runtimes.items():
            if runtime.table is None:
                continue
            try:
                counts[name] = await runtime.table.count()
            except Exception as e:
                logger.warning("Count for layer '%s' failed (non-fatal): %s", name, e)
                counts[name] = None
        return counts
