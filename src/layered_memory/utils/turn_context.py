"""Turn transcript digestion and the episode/procedure builders.

``collect_context`` flattens the host's message list into user texts,
assistant texts, tool calls and tool results.  The builders turn one
finished turn into a single episodic draft and, when enough tool steps
succeeded, a procedural draft keyed by the tool pattern.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..models.record import DraftRecord
from .extraction import strip_injected
from .redaction import redact_sensitive, truncate

SHELL_TOOLS = frozenset({"exec", "bash"})


@dataclass
class ToolCall:
    name: str
    arguments: Any = None


@dataclass
class ToolResult:
    tool_name: str
    tool_call_id: str | None = None
    is_error: bool = False
    exit_code: int | None = None
    text: str = ""

    @property
    def succeeded(self) -> bool:
        return not self.is_error and (self.exit_code is None or self.exit_code == 0)


@dataclass
class TurnContext:
    """Everything capture needs from one turn's transcript."""

    user_texts: list[str] = field(default_factory=list)
    assistant_texts: list[str] = field(default_factory=list)
    tool_calls: dict[str, ToolCall] = field(default_factory=dict)
    tool_results: list[ToolResult] = field(default_factory=list)
    tool_names: list[str] = field(default_factory=list)
    tool_call_count: int = 0

    def texts(self, roles: Iterable[str] = ("user", "assistant")) -> list[str]:
        roles = set(roles)
        out: list[str] = []
        if "user" in roles:
            out.extend(self.user_texts)
        if "assistant" in roles:
            out.extend(self.assistant_texts)
        return out

    @property
    def tool_errors(self) -> int:
        return sum(1 for result in self.tool_results if not result.succeeded)

    @property
    def last_user_text(self) -> str:
        return self.user_texts[-1] if self.user_texts else ""

    @property
    def last_assistant_text(self) -> str:
        return self.assistant_texts[-1] if self.assistant_texts else ""


def extract_text_content(content: Any) -> str:
    """Plain text of a message: a string, or the ``text`` blocks of a block list."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = [
        block["text"]
        for block in content
        if isinstance(block, Mapping) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    return "\n".join(parts)


def collect_context(messages: Iterable[Any] | None) -> TurnContext:
    ctx = TurnContext()
    if not messages:
        return ctx

    def note_tool(name: str) -> None:
        if name not in ctx.tool_names:
            ctx.tool_names.append(name)

    for msg in messages:
        if not isinstance(msg, Mapping):
            continue
        role = msg.get("role")

        if role == "user":
            text = extract_text_content(msg.get("content"))
            if text:
                ctx.user_texts.append(text)

        elif role == "assistant":
            content = msg.get("content")
            text = extract_text_content(content)
            if text:
                ctx.assistant_texts.append(text)
            if isinstance(content, list):
                for block in content:
                    if not isinstance(block, Mapping) or block.get("type") != "toolCall":
                        continue
                    ctx.tool_call_count += 1
                    call_id, name = block.get("id"), block.get("name")
                    if call_id and name:
                        ctx.tool_calls[call_id] = ToolCall(name=name, arguments=block.get("arguments"))
                        note_tool(name)

        elif role in ("toolResult", "tool"):
            name = msg.get("toolName") or msg.get("name") or msg.get("tool_name") or ""
            if name:
                note_tool(name)
            details = msg.get("details") or {}
            exit_code = details.get("exitCode") if isinstance(details, Mapping) else None
            ctx.tool_results.append(
                ToolResult(
                    tool_name=name,
                    tool_call_id=msg.get("toolCallId"),
                    is_error=bool(msg.get("isError")),
                    exit_code=exit_code if isinstance(exit_code, int) and not isinstance(exit_code, bool) else None,
                    text=extract_text_content(msg.get("content")),
                )
            )
    return ctx


# ---------------------------------------------------------------------------
# Tool step summaries
# ---------------------------------------------------------------------------


def summarize_args(tool_name: str, args: Any, redact: bool = True) -> str:
    """Short, redacted description of a tool call's main argument."""
    if not isinstance(args, Mapping):
        return ""
    if tool_name in SHELL_TOOLS:
        cmd = args.get("command") or args.get("cmd") or ""
        return truncate(redact_sensitive(str(cmd), redact), 120) if cmd else ""
    paths = args.get("paths")
    if isinstance(args.get("path"), str):
        return truncate(redact_sensitive(args["path"], redact), 80)
    if isinstance(paths, str):
        return truncate(redact_sensitive(paths, redact), 80)
    if isinstance(paths, list) and paths:
        return truncate(redact_sensitive(", ".join(str(p) for p in paths), redact), 120)
    if isinstance(args.get("file"), str):
        return truncate(redact_sensitive(args["file"], redact), 80)
    if isinstance(args.get("url"), str):
        return truncate(redact_sensitive(args["url"], redact), 120)
    return ""


def pattern_part(tool_name: str, args_summary: str) -> str:
    """Pattern token for one step: the tool name, plus the program for shells."""
    if not tool_name:
        return "unknown"
    if tool_name in SHELL_TOOLS:
        token = args_summary.split()[0] if args_summary.strip() else "cmd"
        return f"{tool_name}:{token}"
    return tool_name


@dataclass(frozen=True)
class ToolStep:
    tool_name: str
    text: str
    pattern: str
    succeeded: bool


def tool_steps(ctx: TurnContext, redact: bool = True) -> list[ToolStep]:
    """One step per named tool result, failed ones included."""
    steps = []
    for result in ctx.tool_results:
        if not result.tool_name:
            continue
        call = ctx.tool_calls.get(result.tool_call_id) if result.tool_call_id else None
        summary = summarize_args(result.tool_name, call.arguments if call else None, redact)
        text = f"{result.tool_name}: {summary}" if summary else result.tool_name
        steps.append(ToolStep(result.tool_name, text, pattern_part(result.tool_name, summary), result.succeeded))
    return steps


def successful_steps(ctx: TurnContext, redact: bool = True) -> list[tuple[str, str, str]]:
    """``(tool_name, step_text, pattern_part)`` for every successful tool result."""
    return [(s.tool_name, s.text, s.pattern) for s in tool_steps(ctx, redact) if s.succeeded]


def format_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


@dataclass
class TurnEnd:
    """The parts of a turn-end event the builders read."""

    context: TurnContext
    success: bool = True
    duration_ms: float = 0
    agent_id: str | None = None
    session_key: str | None = None


def build_episode(
    turn: TurnEnd,
    max_user_chars: int = 600,
    max_assistant_chars: int = 600,
    now: float | None = None,
    redact: bool = True,
) -> DraftRecord | None:
    """One episodic draft summarizing the turn, or ``None`` for an empty turn.

    User and assistant text are redacted before they are cut, so a cut can
    never leave a partial secret that the patterns no longer match.
    """
    ctx = turn.context
    if not ctx.last_user_text and not ctx.last_assistant_text and not ctx.tool_names:
        return None

    now = time.time() if now is None else now
    agent = turn.agent_id or "main"
    user = truncate(redact_sensitive(strip_injected(ctx.last_user_text), redact), max_user_chars)
    assistant = truncate(redact_sensitive(strip_injected(ctx.last_assistant_text), redact), max_assistant_chars)
    tools = ", ".join(ctx.tool_names) if ctx.tool_names else "none"
    outcome = assistant or ("completed" if turn.success else "failed")

    text = "\n".join(
        [
            f"When: {format_iso(now)}",
            f"Agent: {agent}",
            f"User asked: {user or '(no user text)'}",
            f"Actions: {tools}",
            f"Outcome: {outcome}",
            f"Success: {'yes' if turn.success else 'no'}",
        ]
    )
    return DraftRecord(
        kind="episodic",
        name=f"{agent}@{now}",
        text=text,
        occurred_at=now,
        metadata={
            "agent_id": agent,
            "session_key": turn.session_key or "",
            "duration_ms": turn.duration_ms or 0,
            "success": bool(turn.success),
            "tools": list(ctx.tool_names),
            "user_text": user,
            "assistant_text": assistant,
        },
    )


def build_procedure(
    turn: TurnEnd,
    min_steps: int = 2,
    max_steps: int = 8,
    max_user_chars: int = 600,
    redact: bool = True,
) -> DraftRecord | None:
    """A procedural draft from the turn's successful tool steps.

    Returns ``None`` when fewer than *min_steps* steps succeeded; at most
    *max_steps* steps are kept.
    """
    steps = successful_steps(turn.context, redact)[:max_steps]
    if len(steps) < min_steps:
        return None

    user = truncate(redact_sensitive(strip_injected(turn.context.last_user_text), redact), max_user_chars)
    pattern_key = " -> ".join(part for _, _, part in steps) or "unknown"
    lines = [f"Procedure pattern: {pattern_key}", f"Context: {user or '(no user text)'}", "Steps:"]
    lines.extend(f"{i}. {text}" for i, (_, text, _) in enumerate(steps, start=1))
    lines.append(f"Success: {'yes' if turn.success else 'no'}")

    return DraftRecord(
        kind="procedural",
        name=pattern_key,
        text="\n".join(lines),
        metadata={
            "pattern_key": pattern_key,
            "steps": [text for _, text, _ in steps],
            "success": bool(turn.success),
            "tool_count": len(steps),
        },
    )


def build_tool_edges(turn: TurnEnd, redact: bool = True) -> list[DraftRecord]:
    """``agent --used--> tool: args`` graph drafts for successful tool calls."""
    agent = turn.agent_id or "agent"
    drafts = []
    for _, text, _ in successful_steps(turn.context, redact):
        drafts.append(
            DraftRecord(
                kind="used",
                name=f"{agent} -> {text}",
                fields={"subject": agent, "relation": "used", "object": text},
                metadata={"source": "tool"},
            )
        )
    return drafts
