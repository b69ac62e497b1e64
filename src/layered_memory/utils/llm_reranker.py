"""
Optional LLM-based re-ranking of recall candidates.

Scores each candidate with a local Ollama-style ``/api/generate`` model that
answers with a single 0-100 relevance number.

Non-fatal: a candidate the model fails on keeps its vector score.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Protocol, runtime_checkable

import httpx

from ..config import RerankSettings
from ..models.record import ScoredRecord
from .redaction import truncate

logger = logging.getLogger(__name__)

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


@runtime_checkable
class LLMReranker(Protocol):
    """Protocol for pluggable LLM re-rankers."""

    async def score(self, query: str, document: str) -> float | None:
        """Relevance of *document* to *query* in ``[0, 1]``, or None on failure."""


def build_prompt(template: str, query: str, document: str) -> str:
    prompt = re.sub(r"\{\{\s*query\s*\}\}", lambda _: query, template, flags=re.IGNORECASE)
    return re.sub(r"\{\{\s*document\s*\}\}", lambda _: document, prompt, flags=re.IGNORECASE)


def parse_score(text: str) -> float | None:
    """First number in the model's answer, scaled from 0-100 to 0-1 and clamped."""
    match = _NUMBER.search(text or "")
    if not match:
        return None
    score = float(match.group(0))
    if score > 1:
        score = score / 100
    return min(1.0, max(0.0, score))


class OllamaReranker:
    def __init__(self, settings: RerankSettings, client: httpx.AsyncClient | None = None):
        self._settings = settings
        self._client = client

    async def score(self, query: str, document: str) -> float | None:
        cfg = self._settings
        url = cfg.url.rstrip("/") + "/api/generate"
        payload = {
            "model": cfg.model,
            "prompt": build_prompt(cfg.prompt_template, query, document),
            "stream": False,
            "options": {"temperature": 0, "num_predict": 32},
        }
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, timeout=cfg.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=cfg.timeout_seconds) as client:
                    response = await client.post(url, json=payload)
            response.raise_for_status()
            return parse_score(str(response.json().get("response", "")).strip())
        except httpx.TimeoutException:
            logger.warning("Rerank timeout after %ss (non-fatal)", cfg.timeout_seconds)
        except httpx.HTTPStatusError as e:
            logger.warning("Rerank HTTP error %s (non-fatal)", e.response.status_code)
        except Exception as e:
            logger.warning("Rerank error (non-fatal): %s", type(e).__name__)
        return None


async def rerank_candidates(
    reranker: LLMReranker,
    query: str,
    candidates: list[ScoredRecord],
    max_total_seconds: float,
    max_doc_chars: int = 800,
) -> list[ScoredRecord]:
    """Re-score *candidates* one by one within a total time budget.

    Candidates reached after the budget is spent are dropped; a candidate
    the model cannot score keeps its vector score.  Returns the scored
    candidates sorted descending.
    """
    start = time.monotonic()
    scored: list[ScoredRecord] = []
    for item in candidates:
        if time.monotonic() - start > max_total_seconds:
            logger.debug("Rerank budget exhausted after %d of %d candidates", len(scored), len(candidates))
            break
        value = await reranker.score(query, truncate(item.record.text, max_doc_chars))
        debug = {**item.debug_info, "reranked": value is not None}
        scored.append(item.model_copy(update={"score": value if value is not None else item.score, "debug_info": debug}))
    scored.sort(key=lambda r: r.score, reverse=True)
    return scored
