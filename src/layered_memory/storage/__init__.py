"""Vector tables and JSON side files."""

from .base import VectorTable
from .json_store import (
    BoardStore,
    JsonDocumentStore,
    LayerIndex,
    LoadResult,
    LoadStatus,
    PatternStatsStore,
    SaveResult,
    SentimentLog,
    ToolStatsStore,
)
from .qdrant_table import QdrantVectorTable

__all__ = [
    "BoardStore",
    "JsonDocumentStore",
    "LayerIndex",
    "LoadResult",
    "LoadStatus",
    "PatternStatsStore",
    "QdrantVectorTable",
    "SaveResult",
    "SentimentLog",
    "ToolStatsStore",
    "VectorTable",
]
