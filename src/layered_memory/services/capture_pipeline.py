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
Capture pipeline: extract -> redact -> embed -> persist.

Drafts come from the layer's grammar (applied to each message of the
configured roles) and from its turn builder.  ``refresh`` layers keep one
row per semantic key: unchanged text only bumps ``updated_at``, changed
text overwrites the row in place.  ``append`` layers store every capture.
"""

import logging
import time
from collections.abc import Callable, Iterable

from ..embeddings import EmbeddingProvider
from ..errors import ExternalCallError
from ..models.record import DraftRecord, IndexEntry, MemoryRecord, semantic_key
from ..utils.extraction import INJECTED_BLOCK_TAGS, dedupe_drafts, extract
from ..utils.redaction import redact_payload, redact_sensitive, truncate
from ..utils.turn_context import TurnEnd
from .layer_runtime import LayerRuntime, PipelineOutcome, PipelineState, call_external

logger = logging.getLogger(__name__)


class CapturePipeline:
    """Turns one finished turn into stored records for a single layer."""

    def __init__(
        self,
        runtime: LayerRuntime,
        embeddings: EmbeddingProvider | None,
        clock: Callable[[], float] = time.time,
        block_tags: Iterable[str] = INJECTED_BLOCK_TAGS,
    ):
        self.runtime = runtime
        self.embeddings = embeddings
        self.clock = clock
        self.block_tags = tuple(block_tags)

    def drafts(self, turn: TurnEnd, now: float | None = None) -> list[DraftRecord]:
        """Grammar drafts from every captured message, then builder drafts."""
        definition = self.runtime.definition
        settings = self.runtime.settings
        seen: set[str] = set()
        drafts: list[DraftRecord] = []
        if definition.grammar is not None:
            for text in turn.context.texts(definition.capture_roles):
                found = extract(text, definition.grammar, settings.capture_mode, self.block_tags)
                drafts.extend(dedupe_drafts(found, seen))
        if definition.builder is not None:
            drafts.extend(dedupe_drafts(definition.builder(turn, settings, self.clock() if now is None else now), seen))
        return drafts

    async def run(self, turn: TurnEnd) -> PipelineOutcome:
        runtime = self.runtime
        outcome = PipelineOutcome(layer=runtime.name)
        settings = runtime.settings
        if not (settings.enabled and settings.capture_enabled):
            return outcome
        if not runtime.definition.vector_backed and runtime.side is None:
            return outcome

        outcome.enter(PipelineState.EXTRACTING)
        try:
            now = self.clock()
            if runtime.side is not None:
                outcome.enter(PipelineState.PERSISTING)
                capture = runtime.side.capture(turn, settings, now)
                outcome.stored = await call_external("store", capture, settings.timeout_seconds)
                if not outcome.stored:
                    outcome.enter(PipelineState.NO_RECORDS)
                outcome.enter(PipelineState.IDLE)
                return outcome

            drafts = self.drafts(turn, now)
            if not drafts:
                outcome.enter(PipelineState.NO_RECORDS)
                outcome.enter(PipelineState.IDLE)
                return outcome

            for draft in drafts:
                if await self._persist(draft, now, outcome):
                    outcome.stored += 1
            if outcome.stored:
                logger.info("Captured %d %s record(s)", outcome.stored, runtime.name)
            outcome.enter(PipelineState.IDLE)
        except Exception as e:
            logger.warning(
                "Capture for layer '%s' failed during %s (non-fatal): %s",
                runtime.name,
                outcome.state.value,
                e,
            )
            outcome.fail(e)
        return outcome

    async def _persist(self, draft: DraftRecord, now: float, outcome: PipelineOutcome) -> bool:
        """Store one draft; returns False when an unchanged row was only touched."""
        runtime = self.runtime
        definition = runtime.definition
        settings = runtime.settings
        if self.embeddings is None or runtime.table is None:
            raise ExternalCallError("store", "layer has no vector store")

        outcome.enter(PipelineState.REDACTING)
        redact = settings.redaction_enabled
        text = truncate(redact_sensitive(definition.summarize(draft, now), redact), settings.max_chars)
        name = redact_sensitive(draft.name, redact)
        key = semantic_key(draft.kind, name)

        existing = None
        if definition.dedupe == "refresh" and runtime.index is not None:
            existing = await runtime.index.get(key)

        if existing is not None and existing.summary == text:
            outcome.enter(PipelineState.PERSISTING)
            await call_external("touch", runtime.table.touch(existing.record_id, now), settings.timeout_seconds)
            await runtime.index.put(existing.model_copy(update={"updated_at": now}))
            logger.debug("Refreshed unchanged %s record %s", runtime.name, key)
            return False

        outcome.enter(PipelineState.EMBEDDING)
        vector = await call_external("embed", self.embeddings.embed(text), settings.timeout_seconds)

        identity = {"id": existing.record_id, "created_at": existing.created_at} if existing else {"created_at": now}
        record = MemoryRecord(
            **identity,
            layer=runtime.name,
            text=text,
            vector=vector,
            kind=definition.record_kind(draft),
            key=key,
            updated_at=now,
            occurred_at=draft.occurred_at if draft.occurred_at is not None else now,
            metadata=redact_payload(
                {**draft.metadata, **draft.fields, "name": name, "confidence": draft.confidence}, redact
            ),
        )

        outcome.enter(PipelineState.PERSISTING)
        write = runtime.table.upsert(record) if existing else runtime.table.store(record)
        await call_external("store", write, settings.timeout_seconds)

        if runtime.index is not None:
            await runtime.index.put(
                IndexEntry(
                    key=key,
                    name=name,
                    kind=draft.kind,
                    summary=text,
                    record_id=record.id,
                    created_at=record.created_at,
                    updated_at=now,
                )
            )
        pattern_key = draft.metadata.get("pattern_key")
        if runtime.pattern_stats is not None and pattern_key:
            await runtime.pattern_stats.record(pattern_key, bool(draft.metadata.get("success", True)), now)
        return True
