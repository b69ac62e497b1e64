"""Configuration for the layered memory engine.

Every settings class is a pydantic-settings model so each knob can be
overridden from the environment.  Layer settings are resolved per layer
name (``LMEM_GOAL_MIN_SCORE``, ``LMEM_ENTITY_ALWAYS_RECALL`` ...) on top of
the defaults each layer definition ships with.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Invalid configuration detected while registering a layer.

    Raised for unsupported embedding models, missing credentials and settings
    that fail validation.  Aborts only the layer being registered.
    """


# ---------------------------------------------------------------------------
# Embedding model registry
# ---------------------------------------------------------------------------

EMBEDDING_DIMENSIONS: dict[str, int] = {
    "all-MiniLM-L6-v2": 384,
    "all-MiniLM-L12-v2": 384,
    "all-mpnet-base-v2": 768,
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "intfloat/e5-small-v2": 384,
    "intfloat/e5-base-v2": 768,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}

_ENV_REF = re.compile(r"\$\{([^}]+)\}")


def vector_dims_for_model(model: str) -> int:
    """Return the vector size produced by *model*.

    Raises:
        ConfigError: If the model is not a known embedding model.
    """
    dims = EMBEDDING_DIMENSIONS.get(model)
    if dims is None:
        raise ConfigError(f"Unsupported embedding model: {model}")
    return dims


def resolve_env_vars(value: str) -> str:
    """Expand ``${VAR}`` references in *value* from the environment.

    Raises:
        ConfigError: If a referenced variable is not set.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        resolved = os.environ.get(name)
        if not resolved:
            raise ConfigError(f"Environment variable {name} is not set")
        return resolved

    return _ENV_REF.sub(_replace, value)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------

CaptureMode = Literal["explicit", "pattern", "explicit_or_pattern"]
SelectionPolicy = Literal["cluster", "threshold"]


class EmbeddingSettings(BaseSettings):
    """Embedding provider selection."""

    model_config = SettingsConfigDict(env_prefix="LMEM_EMBEDDING_", extra="ignore")

    provider: Literal["sentence_transformers", "openai"] = "sentence_transformers"
    model: str = "all-MiniLM-L6-v2"
    api_key: str | None = None
    base_url: str = "https://api.openai.com"
    timeout_seconds: float = Field(default=10.0, ge=1.0, le=20.0)


class LayerSettings(BaseSettings):
    """Per-layer recall and capture knobs.

    Instances are normally built through :meth:`for_layer`, which scopes the
    environment prefix to the layer name and seeds the layer's defaults.
    """

    model_config = SettingsConfigDict(env_prefix="LMEM_LAYER_", extra="ignore")

    enabled: bool = True
    always_recall: bool = False
    min_query_chars: int = Field(default=3, ge=0)
    recall_limit: int = Field(default=4, ge=1, le=50)
    candidate_multiplier: int = Field(default=3, ge=1, le=20)
    min_score: float = Field(default=0.5, ge=0.0, le=1.0)
    max_gap: float = Field(default=0.08, ge=0.0, le=1.0)
    half_life_days: float = 30.0
    """Decay half-life in days; ``<= 0`` disables decay."""
    selection: SelectionPolicy = "threshold"
    max_chars: int = Field(default=1200, ge=200)
    max_line_chars: int = Field(default=400, ge=40)
    capture_enabled: bool = True
    capture_mode: CaptureMode = "explicit_or_pattern"
    redaction_enabled: bool = True
    timeout_seconds: float = Field(default=10.0, ge=1.0, le=20.0)
    recall_keywords: list[str] | None = None
    rerank: bool = False
    min_steps: int = Field(default=2, ge=1)
    max_steps: int = Field(default=8, ge=1)
    min_matches: int = Field(default=1, ge=0)
    window_size: int = Field(default=20, ge=5)
    min_total: int = Field(default=2, ge=1)
    min_success_rate: float = Field(default=0.6, ge=0.0, le=1.0)
    max_examples: int = Field(default=3, ge=1)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment overrides the layer's shipped defaults.
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @classmethod
    def for_layer(cls, name: str, **defaults: Any) -> LayerSettings:
        """Build settings for layer *name* (env prefix ``LMEM_<NAME>_``).

        Raises:
            ConfigError: If the merged values fail validation.
        """
        prefix = f"LMEM_{name.upper().replace('-', '_')}_"
        try:
            return cls(_env_prefix=prefix, **defaults)
        except ValidationError as e:
            raise ConfigError(f"Invalid settings for layer '{name}': {e}") from e


class LedgerSettings(BaseSettings):
    """Routing ledger persistence and token-savings baseline."""

    model_config = SettingsConfigDict(env_prefix="LMEM_LEDGER_", extra="ignore")

    path: Path | None = None
    before_routing_avg: float | None = Field(default=None, ge=0)
    feedback_markers: list[str] = Field(default_factory=lambda: ["memory-feedback", "memoria-feedback"])


class RerankSettings(BaseSettings):
    """Ollama-style LLM reranker used by layers with ``rerank=True``."""

    model_config = SettingsConfigDict(env_prefix="LMEM_RERANK_", extra="ignore")

    url: str = "http://127.0.0.1:11434"
    model: str = "dengcao/Qwen3-Reranker-8B:Q5_K_M"
    timeout_seconds: float = Field(default=8.0, ge=1.0, le=20.0)
    max_total_seconds: float = Field(default=20.0, ge=1.0, le=120.0)
    max_doc_chars: int = Field(default=800, ge=50)
    max_documents: int = Field(default=8, ge=1)
    prompt_template: str = (
        "You are a reranker. Given a query and a document, rate how relevant the document is "
        "to the query.\nReturn ONLY a single number between 0 and 100.\n\n"
        "Query: {{query}}\n\nDocument: {{document}}\n\nScore:"
    )


class QdrantSettings(BaseSettings):
    """Vector store location: a server URL, an on-disk path, or ``:memory:``."""

    model_config = SettingsConfigDict(env_prefix="LMEM_QDRANT_", extra="ignore")

    url: str | None = None
    storage_path: Path | None = None
    collection_prefix: str = "lmem_"


class Settings(BaseSettings):
    """Aggregate engine settings."""

    model_config = SettingsConfigDict(env_prefix="LMEM_", extra="ignore")

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".layered_memory")
    layers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    """Programmatic per-layer overrides applied on top of layer defaults."""

    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    rerank: RerankSettings = Field(default_factory=RerankSettings)
    qdrant: QdrantSettings = Field(default_factory=QdrantSettings)

    @property
    def ledger_path(self) -> Path:
        return self.ledger.path or self.data_dir / "memory-meta.json"

    def layer_dir(self, layer: str) -> Path:
        return self.data_dir / layer
