"""
Layered conversational memory for agent hosts.

Each memory layer (goal, entity, graph, timeline, episodic, procedural,
meta, general memories, blackboard, sentiment, tool skill) recalls relevant records into the prompt before a
turn and captures new records after it.  A shared routing ledger tracks how
often each layer fires, how much context it adds and whether it helped.
"""

__version__ = "0.1.0"

from .config import ConfigError, Settings
from .hooks import BeforeTurnStartEvent, HookRegistry, TurnEndEvent
from .services.engine import MemoryEngine
from .services.routing_ledger import RoutingLedger

__all__ = [
    "BeforeTurnStartEvent",
    "ConfigError",
    "HookRegistry",
    "MemoryEngine",
    "RoutingLedger",
    "Settings",
    "TurnEndEvent",
]
