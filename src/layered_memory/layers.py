"""Built-in memory layers.

A layer is data: its block tag, hook priority, recall keywords, default
settings, extraction grammar (or turn builder), dedup policy and line
formatter.  The engine runs the same recall and capture pipelines for all
of them; layers with a ``side_layer`` read and write a JSON side file
instead of a vector collection.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import LayerSettings
from .models.record import DraftRecord, PatternStats, ScoredRecord
from .models.validators import DecayField, DedupePolicy
from .side_layers import BlackboardLayer, SentimentLayer, SideLayer, ToolSkillLayer
from .utils.date_parsing import parse_occurred_at
from .utils.extraction import INJECTED_BLOCK_TAGS, ExtractionGrammar, SubField
from .utils.redaction import truncate
from .utils.turn_context import TurnEnd, build_episode, build_procedure, build_tool_edges

LineFormatter = Callable[[int, ScoredRecord, Mapping[str, Any]], str]
TurnBuilder = Callable[[TurnEnd, LayerSettings, float], list[DraftRecord]]

DEFAULT_LINE_CHARS = 400


def _iso(ts: float | None) -> str:
    if ts is None:
        return ""
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


def line_chars(extras: Mapping[str, Any]) -> int:
    return int(extras.get("max_line_chars") or DEFAULT_LINE_CHARS)


def numbered_line(index: int, item: ScoredRecord, extras: Mapping[str, Any]) -> str:
    return f"{index}. {truncate(item.record.text, line_chars(extras))}"


def draft_summary(draft: DraftRecord, now: float) -> str:
    if draft.text:
        return draft.text
    details = " ".join(draft.details)
    return f"{draft.name}\n{details}" if details else draft.name


@dataclass(frozen=True)
class LayerDefinition:
    """Static description of one memory layer."""

    name: str
    block_tag: str
    priority: int
    recall_keywords: tuple[str, ...] = ()
    defaults: Mapping[str, Any] = field(default_factory=dict)
    grammar: ExtractionGrammar | None = None
    builder: TurnBuilder | None = None
    summarize: Callable[[DraftRecord, float], str] = draft_summary
    record_kind: Callable[[DraftRecord], str] = lambda draft: draft.kind
    dedupe: DedupePolicy = "append"
    use_index: bool = False
    """Match index names literally contained in the query on recall."""
    track_patterns: bool = False
    decay_field: DecayField = "created_at"
    sort_key: Callable[[ScoredRecord], Any] | None = None
    format_line: LineFormatter = numbered_line
    header: str | None = None
    vector_backed: bool = True
    capture_roles: tuple[str, ...] = ("user", "assistant")
    side_layer: Callable[[Path], SideLayer] | None = None
    """Builds the file-backed store that replaces vector search for this layer."""
    keyword_gate: bool = True

    @property
    def keeps_index(self) -> bool:
        return self.use_index or self.dedupe == "refresh"

    def settings(self, overrides: Mapping[str, Any] | None = None) -> LayerSettings:
        return LayerSettings.for_layer(self.name, **{**self.defaults, **(overrides or {})})


# ---------------------------------------------------------------------------
# Goal
# ---------------------------------------------------------------------------


def normalize_status(text: str) -> str:
    lower = (text or "").lower()
    if re.search(r"done|completed|resuelto|hecho|terminado|ok\b", lower):
        return "done"
    if re.search(r"cancel|cancelado|abandonado", lower):
        return "cancelled"
    return "active"


def normalize_priority(text: str) -> str:
    lower = (text or "").lower()
    if re.search(r"high|alto|urgent|urgente|crit", lower):
        return "high"
    if re.search(r"low|bajo", lower):
        return "low"
    if re.search(r"medium|medio", lower):
        return "medium"
    return ""


GOAL_GRAMMAR = ExtractionGrammar(
    name="goal",
    tags=("goal", "objective", "objetivo", "meta", "intent", "plan", "task"),
    default_kind="goal",
    sub_fields=(
        SubField("status", ("status",), normalize_status),
        SubField("priority", ("priority",), normalize_priority),
        SubField("owner", ("owner", "due", "responsable")),
    ),
    seed_fields={"status": normalize_status, "priority": normalize_priority},
    fallback=re.compile(
        r"(?:quiero|necesito|vamos a|we need to|we want to|i need to|let's|goal is to|plan to)\s+(?P<name>[^\n]{4,120})",
        re.IGNORECASE,
    ),
    fallback_fields={"status": "active"},
    max_pattern_drafts=1,
)


def goal_summary(draft: DraftRecord, now: float) -> str:
    f = draft.fields
    return (
        f"Goal: {draft.name}\nStatus: {f.get('status') or 'active'}\nPriority: {f.get('priority', '')}\n"
        f"Owner: {f.get('owner', '')}\nDetails: {' '.join(draft.details)}"
    )


def goal_line(index: int, item: ScoredRecord, extras: Mapping[str, Any]) -> str:
    meta = item.record.metadata
    priority = f" [{meta['priority']}]" if meta.get("priority") else ""
    status = f" ({meta['status']})" if meta.get("status") else ""
    return f"{index}. {truncate(item.record.text, line_chars(extras))}{priority}{status}"


def active_first(item: ScoredRecord) -> tuple[int, float]:
    return (0 if item.record.metadata.get("status", "active") == "active" else 1, -item.score)


# ---------------------------------------------------------------------------
# Entity
# ---------------------------------------------------------------------------

ENTITY_TYPES: dict[str, str] = {
    "entity": "entity",
    "perfil": "entity",
    "profile": "entity",
    "client": "client",
    "cliente": "client",
    "staff": "staff",
    "equipo": "staff",
    "team": "staff",
    "service": "service",
    "svc": "service",
    "vendor": "vendor",
    "proveedor": "vendor",
    "partner": "partner",
    "project": "project",
    "producto": "product",
    "product": "product",
    "app": "service",
    "sistema": "service",
}

ENTITY_GRAMMAR = ExtractionGrammar(
    name="entity",
    tags=tuple(ENTITY_TYPES),
    default_kind="entity",
    kind_map=ENTITY_TYPES,
    fallback=re.compile(
        r"\b(?P<kind>client|cliente|staff|service|svc|vendor|proveedor|partner|project|producto|product|app|sistema)"
        r"\s+(?P<name>[A-Za-z0-9][\w ._-]{2,60})",
        re.IGNORECASE,
    ),
    fallback_details=True,
    min_chars=4,
)


def entity_summary(draft: DraftRecord, now: float) -> str:
    return f"Entity: {draft.name}\nType: {draft.kind}\nDetails: {' '.join(draft.details)}"


def entity_line(index: int, item: ScoredRecord, extras: Mapping[str, Any]) -> str:
    return f"{index}. [{item.record.kind or 'entity'}] {truncate(item.record.text, line_chars(extras))}"


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


def _edge(subject: str, relation: str, obj: str) -> DraftRecord | None:
    subject, relation, obj = subject.strip(), relation.strip() or "related_to", obj.strip()
    if not subject or not obj:
        return None
    return DraftRecord(
        kind=relation,
        name=f"{subject} -> {obj}",
        fields={"subject": subject, "relation": relation, "object": obj},
        metadata={"source": "explicit"},
    )


def parse_edge(kind: str, value: str) -> DraftRecord | None:
    """``a | rel | b``, ``a -> rel -> b`` or two-part ``a -> b`` (``related_to``)."""
    if "|" in value:
        parts = [p.strip() for p in value.split("|") if p.strip()]
    elif "->" in value:
        parts = [p.strip() for p in value.split("->") if p.strip()]
    else:
        return None
    if len(parts) == 3:
        return _edge(parts[0], parts[1], parts[2])
    if len(parts) == 2:
        return _edge(parts[0], "related_to", parts[1])
    return None


_ARROW_LINE = re.compile(r"^(.+?)\s*--?\s*(\w[\w\s-]*?)\s*--?>\s*(.+)$")


def parse_arrow_line(line: str) -> DraftRecord | None:
    match = _ARROW_LINE.match(line)
    return _edge(match.group(1), match.group(2), match.group(3)) if match else None


GRAPH_GRAMMAR = ExtractionGrammar(
    name="graph",
    tags=("rel", "relation", "graph", "causal"),
    default_kind="related_to",
    value_parser=parse_edge,
    line_parser=parse_arrow_line,
    single_line=True,
)


def edge_summary(draft: DraftRecord, now: float) -> str:
    f = draft.fields
    return f"{f.get('subject', '')} --{f.get('relation') or 'related_to'}--> {f.get('object', '')}"


def graph_tool_edges(turn: TurnEnd, settings: LayerSettings, now: float) -> list[DraftRecord]:
    return build_tool_edges(turn, redact=settings.redaction_enabled)


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------

TIMELINE_GRAMMAR = ExtractionGrammar(
    name="timeline",
    tags=("event", "evento", "timeline", "time", "fecha", "when", "incident", "incidente", "deploy", "release"),
    default_kind="event",
    occurred_at_parser=parse_occurred_at,
    single_line=True,
)


def timeline_summary(draft: DraftRecord, now: float) -> str:
    occurred = draft.occurred_at if draft.occurred_at is not None else now
    return f"Event: {draft.name}\nOccurred: {_iso(occurred)}\nRecorded: {_iso(now)}"


def timeline_line(index: int, item: ScoredRecord, extras: Mapping[str, Any]) -> str:
    record = item.record
    when = f"[{_iso(record.occurred_at)}]" if record.occurred_at is not None else "[unknown]"
    return f"{when} {truncate(record.text, line_chars(extras))} (recorded {_iso(record.created_at)})"


# ---------------------------------------------------------------------------
# Episodic / procedural
# ---------------------------------------------------------------------------


def episode_builder(turn: TurnEnd, settings: LayerSettings, now: float) -> list[DraftRecord]:
    draft = build_episode(turn, now=now, redact=settings.redaction_enabled)
    return [draft] if draft else []


def procedure_builder(turn: TurnEnd, settings: LayerSettings, now: float) -> list[DraftRecord]:
    draft = build_procedure(
        turn,
        min_steps=settings.min_steps,
        max_steps=settings.max_steps,
        redact=settings.redaction_enabled,
    )
    return [draft] if draft else []


def procedural_line(index: int, item: ScoredRecord, extras: Mapping[str, Any]) -> str:
    stats: Mapping[str, PatternStats] = extras.get("pattern_stats") or {}
    pattern_key = item.record.metadata.get("pattern_key", "")
    stat = stats.get(pattern_key) if pattern_key else None
    rate = stat.rate_label if stat else "n/a"
    return f"{index}. {truncate(item.record.text, line_chars(extras))}\n   Success rate: {rate}"


# ---------------------------------------------------------------------------
# General memories
# ---------------------------------------------------------------------------

MEMORY_KINDS: dict[str, str] = {
    "remember": "fact",
    "recuerda": "fact",
    "note": "fact",
    "nota": "fact",
    "fact": "fact",
    "decision": "decision",
    "decisión": "decision",
    "preference": "preference",
    "preferencia": "preference",
    "i prefer": "preference",
    "prefiero": "preference",
    "we decided": "decision",
    "decidimos": "decision",
    "remember that": "fact",
    "recuerda que": "fact",
}

MEMORY_GRAMMAR = ExtractionGrammar(
    name="memories",
    tags=("remember", "recuerda", "note", "nota", "fact", "decision", "decisión", "preference", "preferencia"),
    default_kind="fact",
    kind_map=MEMORY_KINDS,
    fallback=re.compile(
        r"\b(?P<kind>i prefer|prefiero|we decided|decidimos|remember that|recuerda que)\s+(?P<name>[^\n]{4,160})",
        re.IGNORECASE,
    ),
)


def memory_line(index: int, item: ScoredRecord, extras: Mapping[str, Any]) -> str:
    return f"- [{item.record.kind or 'other'}] {truncate(item.record.text, line_chars(extras))}"


# ---------------------------------------------------------------------------
# File-backed layers
# ---------------------------------------------------------------------------

BOARD_TYPES: dict[str, str] = {
    "bb": "note",
    "blackboard": "note",
    "note": "note",
    "nota": "note",
    "decision": "decision",
    "decisión": "decision",
    "todo": "todo",
    "tarea": "todo",
    "task": "todo",
    "risk": "risk",
    "riesgo": "risk",
    "fact": "fact",
    "hecho": "fact",
    "question": "question",
    "pregunta": "question",
}

BLACKBOARD_GRAMMAR = ExtractionGrammar(
    name="blackboard",
    tags=tuple(BOARD_TYPES),
    default_kind="note",
    kind_map=BOARD_TYPES,
    single_line=True,
)


def blackboard_layer(layer_dir: Path) -> BlackboardLayer:
    return BlackboardLayer(layer_dir / "board.json", BLACKBOARD_GRAMMAR)


def sentiment_layer(layer_dir: Path) -> SentimentLayer:
    return SentimentLayer(layer_dir / "sentiment.json")


def tool_skill_layer(layer_dir: Path) -> ToolSkillLayer:
    return ToolSkillLayer(layer_dir / "tool-stats.json")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

MEMORIES = LayerDefinition(
    name="memories",
    block_tag="relevant-memories",
    priority=50,
    recall_keywords=(
        "remember", "recuerda", "recall", "prefer", "preferencia", "decid", "decision", "decisión",
        "what did", "que dije", "qué dije", "before", "antes", "memory", "memoria",
    ),
    defaults={
        "min_query_chars": 5,
        "recall_limit": 8,
        "candidate_multiplier": 3,
        "min_score": 0.82,
        "max_gap": 0.08,
        "half_life_days": 0,
        "selection": "cluster",
        "max_chars": 4000,
    },
    grammar=MEMORY_GRAMMAR,
    dedupe="refresh",
    format_line=memory_line,
    header="The following memories may be relevant to this conversation:",
)

EPISODIC = LayerDefinition(
    name="episodic",
    block_tag="episodic-memories",
    priority=45,
    recall_keywords=(
        "que paso", "que ha pasado", "que ocurrió", "que ocurrio", "cuando", "ayer", "hace un", "hace una",
        "hace poco", "la otra vez", "ultima vez", "última vez", "reciente", "recent", "semana pasada",
        "mes pasado", "la vez pasada", "last week", "yesterday", "previous", "earlier", "the other day",
        "historial", "historia", "registro", "log", "evento", "timeline",
    ),
    defaults={"recall_limit": 3, "min_score": 0.45, "half_life_days": 14, "max_chars": 1200, "min_query_chars": 5},
    builder=episode_builder,
)

PROCEDURAL = LayerDefinition(
    name="procedural",
    block_tag="procedural-memories",
    priority=45,
    recall_keywords=(
        "como", "cómo", "how", "procedimiento", "pasos", "paso a paso", "instrucciones", "guia", "guía",
        "tutorial", "checklist", "check list", "comandos", "comando", "runbook", "playbook", "workflow",
        "orquest", "arregl", "resolv", "fix", "solved", "solucion", "solución", "diagnostic", "diagnostico",
        "diagnóstico", "setup", "instal", "configur", "verificar", "verificacion", "verificación",
    ),
    defaults={
        "recall_limit": 3,
        "min_score": 0.4,
        "half_life_days": 60,
        "max_chars": 1400,
        "max_line_chars": 420,
        "min_query_chars": 5,
        "min_steps": 2,
        "max_steps": 8,
    },
    builder=procedure_builder,
    track_patterns=True,
    format_line=procedural_line,
)

GOAL = LayerDefinition(
    name="goal",
    block_tag="goal-intent",
    priority=44,
    recall_keywords=("goal", "objetivo", "meta", "intent", "plan", "task", "prioridad", "priority"),
    defaults={"recall_limit": 4, "min_score": 0.5, "half_life_days": 30, "max_chars": 1200},
    grammar=GOAL_GRAMMAR,
    summarize=goal_summary,
    record_kind=lambda draft: draft.fields.get("status") or "active",
    dedupe="refresh",
    sort_key=active_first,
    format_line=goal_line,
)

ENTITY = LayerDefinition(
    name="entity",
    block_tag="entity-memories",
    priority=44,
    recall_keywords=(
        "cliente", "client", "perfil", "profile", "entity", "staff", "equipo", "team", "service", "svc",
        "vendor", "proveedor", "partner", "project", "producto", "product", "account", "cuenta",
    ),
    defaults={"recall_limit": 4, "min_score": 0.6, "half_life_days": 30, "max_chars": 1200},
    grammar=ENTITY_GRAMMAR,
    summarize=entity_summary,
    dedupe="refresh",
    use_index=True,
    format_line=entity_line,
)

GRAPH = LayerDefinition(
    name="graph",
    block_tag="causal-graph",
    priority=43,
    recall_keywords=(
        "quien", "quién", "who", "causa", "causal", "relacion", "relación", "relation", "dependency",
        "dependencia", "impacto", "impact", "responsable", "hizo", "did", "root cause", "why",
    ),
    defaults={"recall_limit": 4, "min_score": 0.4, "half_life_days": 30, "max_chars": 1200},
    grammar=GRAPH_GRAMMAR,
    builder=graph_tool_edges,
    summarize=edge_summary,
    dedupe="refresh",
)

TIMELINE = LayerDefinition(
    name="timeline",
    block_tag="timeline",
    priority=42,
    recall_keywords=(
        "timeline", "historial", "cuando", "fecha", "ultima vez", "última vez", "event", "evento",
        "incident", "incidente",
    ),
    defaults={
        "recall_limit": 4,
        "min_score": 0.45,
        "half_life_days": 45,
        "max_chars": 1200,
        "max_line_chars": 360,
    },
    grammar=TIMELINE_GRAMMAR,
    summarize=timeline_summary,
    decay_field="occurred_at",
    format_line=timeline_line,
)

META = LayerDefinition(
    name="meta",
    block_tag="meta-memory",
    priority=41,
    recall_keywords=("meta memory", "meta-memory", "memory stats", "estado de memoria", "memoria", "stats", "estado del sistema"),
    defaults={"max_chars": 1200, "capture_enabled": False},
    vector_backed=False,
)

BLACKBOARD = LayerDefinition(
    name="blackboard",
    block_tag="collab-blackboard",
    priority=60,
    recall_keywords=(
        "bb:", "blackboard", "pizarra", "tablero", "tareas", "todo", "decision", "decisión", "plan", "roadmap",
    ),
    defaults={"always_recall": True, "min_query_chars": 2, "recall_limit": 20, "capture_mode": "explicit"},
    vector_backed=False,
    side_layer=blackboard_layer,
)

SENTIMENT = LayerDefinition(
    name="sentiment",
    block_tag="sentiment-memory",
    priority=42,
    recall_keywords=(
        "sentiment", "emocional", "estado de animo", "estado de ánimo", "mood", "feeling", "como me siento",
        "cómo me siento",
    ),
    defaults={"min_query_chars": 3, "window_size": 20, "min_matches": 1},
    vector_backed=False,
    side_layer=sentiment_layer,
)

TOOL_SKILL = LayerDefinition(
    name="tool-skill",
    block_tag="tool-skill-memories",
    priority=40,
    defaults={
        "min_query_chars": 3,
        "recall_limit": 3,
        "max_chars": 900,
        "min_total": 2,
        "min_success_rate": 0.6,
        "max_examples": 3,
    },
    vector_backed=False,
    side_layer=tool_skill_layer,
    keyword_gate=False,
)

BUILTIN_LAYERS: tuple[LayerDefinition, ...] = (
    MEMORIES,
    EPISODIC,
    PROCEDURAL,
    GOAL,
    ENTITY,
    GRAPH,
    TIMELINE,
    META,
    BLACKBOARD,
    SENTIMENT,
    TOOL_SKILL,
)


def injected_block_tags(layers: tuple[LayerDefinition, ...] = BUILTIN_LAYERS) -> tuple[str, ...]:
    return tuple(dict.fromkeys((*INJECTED_BLOCK_TAGS, *(layer.block_tag for layer in layers))))
