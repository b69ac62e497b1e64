"""Tests for optional LLM re-ranking of recall candidates."""

import json
from types import SimpleNamespace

import httpx
import pytest

from layered_memory.config import RerankSettings
from layered_memory.models.record import MemoryRecord, ScoredRecord
from layered_memory.utils import llm_reranker
from layered_memory.utils.llm_reranker import (
    LLMReranker,
    OllamaReranker,
    build_prompt,
    parse_score,
    rerank_candidates,
)


def _scored(text: str, score: float) -> ScoredRecord:
    return ScoredRecord(record=MemoryRecord(layer="goal", text=text), raw_score=score, score=score)


class MapReranker:
    def __init__(self, scores):
        self.scores = scores
        self.seen = []

    async def score(self, query, document):
        self.seen.append(document)
        return self.scores.get(document)


def test_map_reranker_satisfies_protocol():
    assert isinstance(MapReranker({}), LLMReranker)


# --- build_prompt / parse_score ---


def test_build_prompt_substitutes_placeholders():
    template = "Q={{query}} D={{ Document }} again {{query}}"
    assert build_prompt(template, "why", "because") == "Q=why D=because again why"


def test_build_prompt_keeps_backslashes():
    assert build_prompt("{{document}}", "q", r"C:\temp\n") == r"C:\temp\n"


@pytest.mark.parametrize(
    "answer,expected",
    [
        ("85", 0.85),
        ("Score: 92/100", 0.92),
        ("0.7", 0.7),
        ("150", 1.0),
        ("-5", 0.0),
        ("no idea", None),
        ("", None),
    ],
)
def test_parse_score(answer, expected):
    assert parse_score(answer) == expected


# --- OllamaReranker ---


@pytest.mark.asyncio
async def test_ollama_reranker_scores_document():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": " 73 "})

    settings = RerankSettings(url="http://ollama.local:11434/", model="reranker")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        score = await OllamaReranker(settings, client=client).score("deploy", "deploy with helm")

    assert score == 0.73
    assert seen["url"] == "http://ollama.local:11434/api/generate"
    assert seen["body"]["model"] == "reranker"
    assert seen["body"]["stream"] is False
    assert "Query: deploy" in seen["body"]["prompt"]
    assert "Document: deploy with helm" in seen["body"]["prompt"]


@pytest.mark.asyncio
async def test_ollama_reranker_nonfatal_on_http_error(caplog):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
        score = await OllamaReranker(RerankSettings(), client=client).score("q", "d")
    assert score is None
    assert "non-fatal" in caplog.text


@pytest.mark.asyncio
async def test_ollama_reranker_nonfatal_on_timeout():
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await OllamaReranker(RerankSettings(), client=client).score("q", "d") is None


# --- rerank_candidates ---


@pytest.mark.asyncio
async def test_rerank_candidates_reorders():
    reranker = MapReranker({"alpha": 0.2, "beta": 0.9})
    result = await rerank_candidates(reranker, "q", [_scored("alpha", 0.8), _scored("beta", 0.5)], max_total_seconds=20)
    assert [r.record.text for r in result] == ["beta", "alpha"]
    assert all(r.debug_info["reranked"] for r in result)


@pytest.mark.asyncio
async def test_unscored_candidate_keeps_vector_score():
    reranker = MapReranker({"alpha": 0.2})
    result = await rerank_candidates(reranker, "q", [_scored("alpha", 0.8), _scored("beta", 0.5)], max_total_seconds=20)
    assert [(r.record.text, r.score) for r in result] == [("beta", 0.5), ("alpha", 0.2)]
    assert result[0].debug_info["reranked"] is False


@pytest.mark.asyncio
async def test_documents_truncated():
    reranker = MapReranker({})
    await rerank_candidates(reranker, "q", [_scored("x" * 100, 0.5)], max_total_seconds=20, max_doc_chars=10)
    assert reranker.seen == ["x" * 10 + "..."]


@pytest.mark.asyncio
async def test_budget_exhausted_drops_remaining(monkeypatch):
    ticks = iter([0.0, 0.0])
    fake_time = SimpleNamespace(monotonic=lambda: next(ticks, 100.0))
    monkeypatch.setattr(llm_reranker, "time", fake_time)
    reranker = MapReranker({"alpha": 0.4, "beta": 0.9})

    result = await rerank_candidates(reranker, "q", [_scored("alpha", 0.8), _scored("beta", 0.5)], max_total_seconds=20)

    assert [r.record.text for r in result] == ["alpha"]
    assert reranker.seen == ["alpha"]
