"""Tests for the per-layer recall pipeline."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from layered_memory.config import RerankSettings
from layered_memory.layers import BLACKBOARD, ENTITY, GOAL, META, SENTIMENT, TOOL_SKILL, LayerDefinition
from layered_memory.models.record import IndexEntry, MemoryRecord, SentimentEntry
from layered_memory.services.layer_runtime import LayerRuntime, PipelineState
from layered_memory.services.recall_pipeline import RecallPipeline
from layered_memory.services.routing_ledger import RoutingLedger
from layered_memory.storage.json_store import LayerIndex, PatternStatsStore
from layered_memory.storage.qdrant_table import QdrantVectorTable
from layered_memory.utils.turn_context import ToolStep, TurnEnd, collect_context, format_iso

NOW = 1_800_000_000.0

# =============================================================================
# Helpers
# =============================================================================


def make_runtime(definition: LayerDefinition, tmp_path, client, dims: int, **overrides) -> LayerRuntime:
    layer_dir = tmp_path / definition.name
    return LayerRuntime(
        definition=definition,
        settings=definition.settings(overrides),
        table=QdrantVectorTable(client, f"lmem_{definition.name}", dims) if definition.vector_backed else None,
        index=LayerIndex(layer_dir / "index.json") if definition.keeps_index else None,
        pattern_stats=PatternStatsStore(layer_dir / "pattern-stats.json") if definition.track_patterns else None,
        side=definition.side_layer(layer_dir) if definition.side_layer is not None else None,
    )


async def store(runtime: LayerRuntime, embeddings, text: str, **kwargs) -> MemoryRecord:
    record = MemoryRecord(layer=runtime.name, text=text, vector=embeddings.vector(text), created_at=NOW, **kwargs)
    await runtime.table.store(record)
    return record


def body_of(block: str, tag: str) -> str:
    return block[len(f"<{tag}>\n") : -len(f"\n</{tag}>")]


class FixedReranker:
    def __init__(self, scores: dict[str, float]):
        self.scores = scores
        self.calls = 0

    async def score(self, query: str, document: str) -> float | None:
        self.calls += 1
        for needle, value in self.scores.items():
            if needle in document:
                return value
        return None


@pytest.fixture
def ledger(tmp_path):
    return RoutingLedger(tmp_path / "memory-meta.json", clock=lambda: NOW)


# =============================================================================
# Gate
# =============================================================================


class TestGate:
    @pytest.mark.asyncio
    async def test_no_keyword_skips_without_embedding(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, fake_embeddings.dimensions)
        outcome = await RecallPipeline(runtime, fake_embeddings, ledger, clock=lambda: NOW).run("tell me a joke")

        assert outcome.block is None
        assert outcome.states == [PipelineState.IDLE, PipelineState.GATE_CHECK, PipelineState.SKIPPED, PipelineState.IDLE]
        assert fake_embeddings.calls == []

    @pytest.mark.asyncio
    async def test_short_query_skips(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, fake_embeddings.dimensions, min_query_chars=10)
        outcome = await RecallPipeline(runtime, fake_embeddings, ledger).run("goal?")
        assert PipelineState.SKIPPED in outcome.states


# =============================================================================
# Vector recall
# =============================================================================


class TestVectorRecall:
    @pytest.mark.asyncio
    async def test_injects_block_and_records_activation(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, fake_embeddings.dimensions, min_score=0.8)
        await store(runtime, fake_embeddings, "goal ship v2 release", metadata={"status": "active"})
        await store(runtime, fake_embeddings, "goal water the plants", metadata={"status": "active"})

        outcome = await RecallPipeline(runtime, fake_embeddings, ledger, clock=lambda: NOW).run("goal ship v2 release")

        assert outcome.state is PipelineState.IDLE
        assert PipelineState.INJECTED in outcome.states
        body = body_of(outcome.block, "goal-intent")
        assert body == "1. goal ship v2 release (active)"
        entry = (await ledger.snapshot()).routing_stats.layers["goal"]
        assert entry.activations == 1
        assert entry.chars_injected == len(body)

    @pytest.mark.asyncio
    async def test_nothing_selected_injects_nothing(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, fake_embeddings.dimensions)
        outcome = await RecallPipeline(runtime, fake_embeddings, ledger).run("what is the goal")
        assert outcome.block is None
        assert outcome.error is None
        assert not ledger.path.exists()

    @pytest.mark.asyncio
    async def test_block_truncated_to_max_chars(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, fake_embeddings.dimensions, max_chars=200)
        text = "goal " + " ".join(f"word{i}" for i in range(60))
        await store(runtime, fake_embeddings, text)

        outcome = await RecallPipeline(runtime, fake_embeddings, ledger, clock=lambda: NOW).run(text)

        body = body_of(outcome.block, "goal-intent")
        assert body.endswith("...")
        assert len(body) <= 203

    @pytest.mark.asyncio
    async def test_line_length_follows_layer_setting(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, fake_embeddings.dimensions, max_line_chars=40)
        text = "goal " + " ".join(f"word{i}" for i in range(20))
        await store(runtime, fake_embeddings, text)

        outcome = await RecallPipeline(runtime, fake_embeddings, ledger, clock=lambda: NOW).run(text)

        assert body_of(outcome.block, "goal-intent") == f"1. {text[:40].strip()}..."

    @pytest.mark.asyncio
    async def test_active_goals_listed_first(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, fake_embeddings.dimensions, min_score=0.0)
        await store(runtime, fake_embeddings, "goal alpha plan", metadata={"status": "done"})
        await store(runtime, fake_embeddings, "goal beta", metadata={"status": "active"})

        outcome = await RecallPipeline(runtime, fake_embeddings, ledger, clock=lambda: NOW).run("goal alpha plan")

        lines = body_of(outcome.block, "goal-intent").splitlines()
        assert lines[0].endswith("(active)")
        assert lines[1].endswith("(done)")

    @pytest.mark.asyncio
    async def test_reranker_reorders(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, fake_embeddings.dimensions, min_score=0.0, rerank=True)
        await store(runtime, fake_embeddings, "goal alpha plan")
        await store(runtime, fake_embeddings, "goal beta plan")
        reranker = FixedReranker({"beta": 0.99, "alpha": 0.1})

        pipeline = RecallPipeline(
            runtime, fake_embeddings, ledger, reranker=reranker, rerank_settings=RerankSettings(), clock=lambda: NOW
        )
        outcome = await pipeline.run("goal alpha plan")

        body = body_of(outcome.block, "goal-intent")
        assert body.index("beta") < body.index("alpha")
        assert reranker.calls == 2


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_embedding_failure_is_logged_not_raised(self, tmp_path, qdrant_client, ledger, clean_layer_env, caplog):
        embeddings = AsyncMock()
        embeddings.dimensions = 64
        embeddings.embed.side_effect = RuntimeError("model crashed")
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, 64)

        outcome = await RecallPipeline(runtime, embeddings, ledger).run("what is our goal")

        assert outcome.block is None
        assert outcome.state is PipelineState.IDLE
        assert "model crashed" in outcome.error
        assert "non-fatal" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout_becomes_external_error(self, tmp_path, qdrant_client, ledger, clean_layer_env):
        embeddings = AsyncMock()
        embeddings.dimensions = 64
        embeddings.embed.side_effect = asyncio.TimeoutError()
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, 64)

        outcome = await RecallPipeline(runtime, embeddings, ledger).run("what is our goal")

        assert "timed out" in outcome.error
        assert outcome.block is None

    @pytest.mark.asyncio
    async def test_failed_search_skips_ledger(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(GOAL, tmp_path, qdrant_client, fake_embeddings.dimensions)
        runtime.table = AsyncMock()
        runtime.table.search.side_effect = ConnectionError("qdrant down")

        outcome = await RecallPipeline(runtime, fake_embeddings, ledger).run("what is our goal")

        assert outcome.block is None
        assert PipelineState.SEARCHING in outcome.states
        assert not ledger.path.exists()


# =============================================================================
# Entity index
# =============================================================================


class TestEntityIndex:
    async def _seed_index(self, runtime):
        await runtime.index.put(
            IndexEntry(
                key="client::acme",
                name="Acme",
                kind="client",
                summary="Entity: Acme\nType: client\nDetails: renews in March",
                record_id="00000000-0000-4000-8000-0000000000aa",
                created_at=NOW,
                updated_at=NOW,
            )
        )

    @pytest.mark.asyncio
    async def test_index_hit_without_keyword(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(ENTITY, tmp_path, qdrant_client, fake_embeddings.dimensions)
        await self._seed_index(runtime)

        outcome = await RecallPipeline(runtime, fake_embeddings, ledger).run("how is Acme doing?")

        assert "1. [client] Entity: Acme" in outcome.block
        assert fake_embeddings.calls == []

    @pytest.mark.asyncio
    async def test_index_hit_survives_vector_failure(self, tmp_path, qdrant_client, ledger, clean_layer_env):
        embeddings = AsyncMock()
        embeddings.dimensions = 64
        embeddings.embed.side_effect = RuntimeError("down")
        runtime = make_runtime(ENTITY, tmp_path, qdrant_client, 64)
        await self._seed_index(runtime)

        outcome = await RecallPipeline(runtime, embeddings, ledger).run("client Acme status")

        assert "Entity: Acme" in outcome.block
        assert "down" in outcome.error

    @pytest.mark.asyncio
    async def test_index_and_vector_hits_deduplicated(self, tmp_path, qdrant_client, fake_embeddings, ledger, clean_layer_env):
        runtime = make_runtime(ENTITY, tmp_path, qdrant_client, fake_embeddings.dimensions, min_score=0.0)
        await self._seed_index(runtime)
        await store(runtime, fake_embeddings, "Entity: Acme\nType: client", kind="client", key="client::acme")

        outcome = await RecallPipeline(runtime, fake_embeddings, ledger).run("client Acme")

        assert outcome.block.count("Entity: Acme") == 1


# =============================================================================
# Meta layer
# =============================================================================


class TestMetaRecall:
    @pytest.mark.asyncio
    async def test_injects_routing_summary(self, tmp_path, ledger, clean_layer_env):
        await ledger.record_activation("goal", 100)
        runtime = make_runtime(META, tmp_path, None, 0)

        outcome = await RecallPipeline(runtime, None, ledger).run("show memory stats")

        assert outcome.block == "<meta-memory>\nRouting stats:\ngoal: act=1, avg_chars=100\n</meta-memory>"
        assert (await ledger.snapshot()).routing_stats.layers["meta"].activations == 1

    @pytest.mark.asyncio
    async def test_empty_ledger_injects_nothing(self, tmp_path, ledger, clean_layer_env):
        runtime = make_runtime(META, tmp_path, None, 0)
        outcome = await RecallPipeline(runtime, None, ledger).run("show memory stats")
        assert outcome.block is None

    @pytest.mark.asyncio
    async def test_gate(self, tmp_path, ledger, clean_layer_env):
        await ledger.record_activation("goal", 100)
        runtime = make_runtime(META, tmp_path, None, 0)
        outcome = await RecallPipeline(runtime, None, ledger).run("deploy the app")
        assert outcome.block is None
        assert PipelineState.SKIPPED in outcome.states

    @pytest.mark.asyncio
    async def test_session_counters_listed_before_routing(self, tmp_path, ledger, clean_layer_env):
        await ledger.record_turn(tool_calls=3, tool_errors=1, memory_commands=2, ltm_count=7)
        await ledger.record_activation("goal", 100)
        runtime = make_runtime(META, tmp_path, None, 0)

        outcome = await RecallPipeline(runtime, None, ledger).run("show memory stats")

        assert body_of(outcome.block, "meta-memory").splitlines() == [
            "Sessions: 1",
            f"Last session: {format_iso(NOW)}",
            "Tool calls: 3 | errors: 1",
            "Memory commands: 2",
            "LTM count: 7",
            "Routing stats:",
            "goal: act=1, avg_chars=100",
        ]


# =============================================================================
# File-backed layers
# =============================================================================


class TestSideLayerRecall:
    @pytest.mark.asyncio
    async def test_blackboard_always_recalls(self, tmp_path, ledger, clean_layer_env):
        runtime = make_runtime(BLACKBOARD, tmp_path, None, 0)
        turn = TurnEnd(context=collect_context([{"role": "user", "content": "todo: write docs"}]))
        await runtime.side.capture(turn, runtime.settings, NOW)

        outcome = await RecallPipeline(runtime, None, ledger).run("hi")

        assert outcome.block == "<collab-blackboard>\n- [todo] write docs\n</collab-blackboard>"
        assert (await ledger.snapshot()).routing_stats.layers["blackboard"].activations == 1

    @pytest.mark.asyncio
    async def test_empty_board_injects_nothing(self, tmp_path, ledger, clean_layer_env):
        runtime = make_runtime(BLACKBOARD, tmp_path, None, 0)
        outcome = await RecallPipeline(runtime, None, ledger).run("hi")
        assert outcome.block is None
        assert not ledger.path.exists()

    @pytest.mark.asyncio
    async def test_sentiment_keyword_gate(self, tmp_path, ledger, clean_layer_env):
        runtime = make_runtime(SENTIMENT, tmp_path, None, 0)
        await runtime.side.log.append(SentimentEntry(ts=NOW, label="positive", score=0.6))

        skipped = await RecallPipeline(runtime, None, ledger).run("deploy the app")
        recalled = await RecallPipeline(runtime, None, ledger).run("how is my mood lately")

        assert PipelineState.SKIPPED in skipped.states
        assert recalled.block.startswith("<sentiment-memory>\nLast: positive (0.60)\n")

    @pytest.mark.asyncio
    async def test_tool_skill_matches_without_keywords(self, tmp_path, ledger, clean_layer_env):
        runtime = make_runtime(TOOL_SKILL, tmp_path, None, 0)
        steps = [ToolStep("exec", "exec: git pull", "exec:git", True)] * 2
        await runtime.side.store.record(steps, NOW)

        outcome = await RecallPipeline(runtime, None, ledger).run("git pull please")
        short = await RecallPipeline(runtime, None, ledger).run("gi")

        assert outcome.block.startswith("<tool-skill-memories>\nTool: exec | success 2/2 (100%)")
        assert short.block is None
