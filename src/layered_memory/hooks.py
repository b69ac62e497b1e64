"""Host lifecycle hooks.

Provides HookRegistry for registering prioritized async callbacks on the two
host events the engine reacts to.  ``before_turn_start`` handlers run
concurrently and may return ``{"prependContext": str}``; their contexts are
joined in priority order (higher first).  ``turn_end`` handlers run in
priority order.  Handler failures are logged but never propagate.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field

from .models.validators import NonNegativeFloat

logger = logging.getLogger(__name__)

HookName = Literal["before_turn_start", "turn_end"]

AsyncHookFn = Callable[[Any], Awaitable[Any]]


class BeforeTurnStartEvent(BaseModel):
    """Context for the hook fired before the agent starts a turn."""

    prompt: str = ""
    agent_id: str | None = None
    session_key: str | None = None


class TurnEndEvent(BaseModel):
    """Context for the hook fired after the agent finished a turn."""

    messages: list[Any] = Field(default_factory=list)
    duration_ms: NonNegativeFloat = 0
    success: bool = True
    agent_id: str | None = None
    session_key: str | None = None


@dataclass(frozen=True)
class _Registration:
    fn: AsyncHookFn
    priority: int


class HookRegistry:
    """Registry of prioritized async hook callbacks.

    Usage::

        registry = HookRegistry()
        engine = MemoryEngine(settings)
        engine.register(registry)

        result = await registry.fire_before_turn_start(BeforeTurnStartEvent(prompt="..."))
        if result:
            prompt = result["prependContext"] + "\\n\\n" + prompt
    """

    def __init__(self) -> None:
        self._hooks: dict[str, list[_Registration]] = {}

    def add(self, name: HookName, fn: AsyncHookFn, priority: int = 0) -> None:
        """Register an async hook handler.

        Args:
            name: Hook event name ("before_turn_start" or "turn_end").
            fn: Async callable receiving the event model for this hook type.
            priority: Higher runs (and is injected) first; ties keep
                registration order.
        """
        handlers = self._hooks.setdefault(name, [])
        handlers.append(_Registration(fn, priority))
        handlers.sort(key=lambda r: -r.priority)

    def handlers(self, name: HookName) -> list[AsyncHookFn]:
        return [r.fn for r in self._hooks.get(name, [])]

    async def fire_before_turn_start(self, event: BeforeTurnStartEvent) -> dict[str, str] | None:
        """Run all before-turn handlers concurrently and merge their contexts."""
        registrations = self._hooks.get("before_turn_start", [])
        if not registrations:
            return None
        results = await asyncio.gather(*(r.fn(event) for r in registrations), return_exceptions=True)

        parts = []
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Hook 'before_turn_start' raised (non-fatal): %s", result)
                continue
            if isinstance(result, BaseException):
                raise result
            if isinstance(result, Mapping) and result.get("prependContext"):
                parts.append(result["prependContext"])
        return {"prependContext": "\n\n".join(parts)} if parts else None

    async def fire_turn_end(self, event: TurnEndEvent) -> None:
        """Fire all turn-end handlers in priority order.

        Exceptions are caught and logged as WARNING; they never propagate.
        """
        for registration in self._hooks.get("turn_end", []):
            try:
                await registration.fn(event)
            except Exception as exc:
                logger.warning("Hook 'turn_end' raised (non-fatal): %s", exc)
