"""Data models for layered memory records, drafts and the routing ledger."""

from .ledger import LedgerDocument, LedgerEntry, RoutingStats, TokenSavings
from .record import DraftRecord, IndexEntry, MemoryRecord, PatternStats, ScoredRecord, semantic_key

__all__ = [
    "DraftRecord",
    "IndexEntry",
    "LedgerDocument",
    "LedgerEntry",
    "MemoryRecord",
    "PatternStats",
    "RoutingStats",
    "ScoredRecord",
    "TokenSavings",
    "semantic_key",
]
