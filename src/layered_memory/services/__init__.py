"""Recall/capture pipelines, the routing ledger and the engine that drives them."""

from .capture_pipeline import CapturePipeline
from .engine import MemoryEngine
from .layer_runtime import LayerRuntime, PipelineOutcome, PipelineState
from .recall_pipeline import RecallPipeline
from .routing_ledger import RoutingLedger

__all__ = [
    "CapturePipeline",
    "LayerRuntime",
    "MemoryEngine",
    "PipelineOutcome",
    "PipelineState",
    "RecallPipeline",
    "RoutingLedger",
]
