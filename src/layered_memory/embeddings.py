"""Embedding providers.

``SentenceTransformerEmbeddings`` runs a local model loaded lazily behind a
lock; ``OpenAIEmbeddings`` calls an OpenAI-compatible ``/v1/embeddings``
endpoint over httpx.  Both expose ``dimensions`` and ``async embed(text)``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Protocol, runtime_checkable

import httpx

from .config import ConfigError, EmbeddingSettings, resolve_env_vars, vector_dims_for_model
from .errors import ExternalCallError

try:
    from sentence_transformers import SentenceTransformer

    SENTENCE_TRANSFORMERS_AVAILABLE = True
except ImportError:
    SENTENCE_TRANSFORMERS_AVAILABLE = False

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    dimensions: int

    async def embed(self, text: str) -> list[float]: ...


class SentenceTransformerEmbeddings:
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model: str, dimensions: int | None = None):
        if not SENTENCE_TRANSFORMERS_AVAILABLE:
            raise ConfigError("sentence_transformers not installed. Install with: pip install sentence-transformers")
        self.model = model
        self.dimensions = dimensions or vector_dims_for_model(model)
        self._model_lock = threading.Lock()
        self._instance: Any = None

    def _load(self) -> Any:
        # Double-checked so concurrent first calls load the model once.
        if self._instance is None:
            with self._model_lock:
                if self._instance is None:
                    logger.info(f"Loading embedding model: {self.model}")
                    self._instance = SentenceTransformer(self.model)
                    logger.info(f"Loaded model: {self.model}")
        return self._instance

    def _encode(self, text: str) -> list[float]:
        vector = self._load().encode(text, convert_to_tensor=False, normalize_embeddings=True)
        embedding = vector.tolist() if hasattr(vector, "tolist") else list(vector)
        if not embedding:
            raise ValueError("Generated embedding is empty")
        return embedding

    async def embed(self, text: str) -> list[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._encode, text)


class OpenAIEmbeddings:
    """OpenAI-compatible embeddings endpoint."""

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.dimensions = vector_dims_for_model(model)
        self._api_key = api_key
        self._url = base_url.rstrip("/") + "/v1/embeddings"
        self._timeout = timeout_seconds
        self._client = client

    async def embed(self, text: str) -> list[float]:
        payload = {"model": self.model, "input": text}
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"}
        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=payload, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise ExternalCallError("embed", f"timeout after {self._timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise ExternalCallError("embed", f"HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalCallError("embed", type(e).__name__) from e

        try:
            return [float(x) for x in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError) as e:
            raise ExternalCallError("embed", "malformed response") from e


def create_embedding_provider(settings: EmbeddingSettings) -> EmbeddingProvider:
    """Build the configured provider.

    Raises:
        ConfigError: Unknown model, missing API key or unresolved ``${VAR}``.
    """
    vector_dims_for_model(settings.model)
    if settings.provider == "openai":
        if not settings.api_key:
            raise ConfigError("embedding.api_key is required for the openai provider")
        return OpenAIEmbeddings(
            model=settings.model,
            api_key=resolve_env_vars(settings.api_key),
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
        )
    return SentenceTransformerEmbeddings(settings.model)
