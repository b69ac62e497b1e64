"""Tests for grammar-driven extraction of draft records."""

from datetime import datetime, timezone

import pytest

from layered_memory.layers import ENTITY_GRAMMAR, GOAL_GRAMMAR, GRAPH_GRAMMAR, MEMORY_GRAMMAR, TIMELINE_GRAMMAR
from layered_memory.models.record import DraftRecord, semantic_key
from layered_memory.utils.extraction import dedupe_drafts, extract, strip_injected

# =============================================================================
# Goal grammar
# =============================================================================


class TestGoalExtraction:
    def test_tag_and_status_line(self):
        drafts = extract("goal: ship v2\nstatus: done", GOAL_GRAMMAR)
        assert len(drafts) == 1
        assert drafts[0].kind == "goal"
        assert drafts[0].name == "ship v2"
        assert drafts[0].fields == {"status": "done"}
        assert drafts[0].confidence == "explicit"

    def test_priority_is_normalized(self):
        drafts = extract("objective: fix login\npriority: URGENT", GOAL_GRAMMAR)
        assert drafts[0].fields["priority"] == "high"

    def test_other_lines_become_details(self):
        drafts = extract("goal: migrate db\nneeds a maintenance window", GOAL_GRAMMAR)
        assert drafts[0].details == ["needs a maintenance window"]

    def test_blank_line_closes_draft(self):
        drafts = extract("goal: migrate db\n\nunrelated chatter", GOAL_GRAMMAR)
        assert drafts[0].details == []

    def test_new_tag_opens_new_draft(self):
        drafts = extract("goal: first thing\ntask: second thing", GOAL_GRAMMAR)
        assert [d.name for d in drafts] == ["first thing", "second thing"]

    def test_duplicates_within_text_dropped(self):
        drafts = extract("goal: ship v2\n\ngoal: Ship V2", GOAL_GRAMMAR)
        assert len(drafts) == 1

    def test_fallback_when_no_explicit_tag(self):
        drafts = extract("ok so we need to ship the docs", GOAL_GRAMMAR)
        assert len(drafts) == 1
        assert drafts[0].name == "ship the docs"
        assert drafts[0].confidence == "pattern"
        assert drafts[0].fields == {"status": "active"}

    def test_explicit_mode_forbids_fallback(self):
        assert extract("we need to ship the docs", GOAL_GRAMMAR, capture_mode="explicit") == []

    def test_pattern_mode_skips_explicit_phase(self):
        drafts = extract("goal: ship v2\nwe need to fix the tests", GOAL_GRAMMAR, capture_mode="pattern")
        assert [d.name for d in drafts] == ["fix the tests"]

    def test_fallback_limited_to_one(self):
        drafts = extract("we need to fix a\nwe need to fix b", GOAL_GRAMMAR)
        assert len(drafts) == 1

    def test_empty_text(self):
        assert extract("", GOAL_GRAMMAR) == []
        assert extract(None, GOAL_GRAMMAR) == []


# =============================================================================
# Injected blocks
# =============================================================================


class TestStripInjected:
    def test_removes_known_blocks(self):
        text = "<goal-intent>\n1. old goal\n</goal-intent>\nhello"
        assert strip_injected(text).strip() == "hello"

    def test_injected_goals_are_not_recaptured(self):
        text = "<goal-intent>\ngoal: old goal\n</goal-intent>\ngoal: new goal"
        assert [d.name for d in extract(text, GOAL_GRAMMAR)] == ["new goal"]

    def test_custom_tags(self):
        assert strip_injected("<x>secret</x>keep", ["x"]) == "keep"


# =============================================================================
# Entity grammar
# =============================================================================


class TestEntityExtraction:
    def test_typed_tag(self):
        drafts = extract("client: Acme Corp\nbilling contact is Maria", ENTITY_GRAMMAR)
        assert drafts[0].kind == "client"
        assert drafts[0].name == "Acme Corp"
        assert drafts[0].details == ["billing contact is Maria"]

    def test_spanish_tag_maps_to_type(self):
        assert extract("proveedor: Hetzner", ENTITY_GRAMMAR)[0].kind == "vendor"

    def test_inline_fallback(self):
        drafts = extract("Talked with client Acme", ENTITY_GRAMMAR)
        assert drafts[0].kind == "client"
        assert drafts[0].name == "Acme"
        assert drafts[0].confidence == "pattern"
        assert drafts[0].details == ["Talked with client Acme"]

    def test_too_short_text_ignored(self):
        assert extract("hi", ENTITY_GRAMMAR) == []


# =============================================================================
# Graph grammar
# =============================================================================


class TestGraphExtraction:
    def test_pipe_triple(self):
        draft = extract("rel: api | depends_on | postgres", GRAPH_GRAMMAR)[0]
        assert draft.kind == "depends_on"
        assert draft.fields == {"subject": "api", "relation": "depends_on", "object": "postgres"}

    def test_two_part_arrow_defaults_relation(self):
        draft = extract("relation: api -> cache", GRAPH_GRAMMAR)[0]
        assert draft.fields["relation"] == "related_to"
        assert draft.name == "api -> cache"

    def test_untagged_arrow_line(self):
        draft = extract("bad deploy --caused--> outage", GRAPH_GRAMMAR)[0]
        assert draft.fields == {"subject": "bad deploy", "relation": "caused", "object": "outage"}

    def test_hyphenated_relation(self):
        draft = extract("api --depends-on--> db", GRAPH_GRAMMAR)[0]
        assert draft.fields["relation"] == "depends-on"

    def test_unparseable_value_dropped(self):
        assert extract("graph: just words", GRAPH_GRAMMAR) == []

    def test_each_tag_line_is_its_own_draft(self):
        drafts = extract("rel: a | uses | b\nrel: b | uses | c", GRAPH_GRAMMAR)
        assert len(drafts) == 2


# =============================================================================
# Timeline grammar
# =============================================================================


class TestTimelineExtraction:
    def test_occurred_at_from_iso_date(self):
        draft = extract("incident: db failover 2026-03-01 14:00", TIMELINE_GRAMMAR)[0]
        expected = datetime(2026, 3, 1, 14, 0, tzinfo=timezone.utc).timestamp()
        assert draft.kind == "event"
        assert draft.occurred_at == expected

    def test_no_date(self):
        draft = extract("event: team offsite", TIMELINE_GRAMMAR)[0]
        assert draft.occurred_at is None

    def test_continuation_lines_ignored(self):
        draft = extract("deploy: v2 shipped\nmore context", TIMELINE_GRAMMAR)[0]
        assert draft.details == []


# =============================================================================
# Memories grammar
# =============================================================================


class TestMemoryExtraction:
    def test_decision_tag(self):
        draft = extract("decision: use qdrant for vectors", MEMORY_GRAMMAR)[0]
        assert draft.kind == "decision"

    def test_preference_fallback(self):
        draft = extract("I prefer tabs over spaces", MEMORY_GRAMMAR)[0]
        assert draft.kind == "preference"
        assert draft.name == "tabs over spaces"


# =============================================================================
# Dedupe
# =============================================================================


class TestDedupeDrafts:
    def test_shared_seen_set(self):
        seen: set[str] = set()
        first = dedupe_drafts([DraftRecord(kind="goal", name="A")], seen)
        second = dedupe_drafts([DraftRecord(kind="goal", name="a")], seen)
        assert len(first) == 1
        assert second == []

    def test_nameless_drafts_dropped(self):
        assert dedupe_drafts([DraftRecord(kind="goal", name="")]) == []

    @pytest.mark.parametrize(
        ("kind", "name", "key"),
        [("Goal", " Ship V2 ", "goal::ship v2"), ("", "x", "::x")],
    )
    def test_semantic_key(self, kind, name, key):
        assert semantic_key(kind, name) == key
