"""Tests for turn transcript digestion and the episode/procedure builders."""

import pytest

from layered_memory.utils.turn_context import (
    TurnEnd,
    build_episode,
    build_procedure,
    build_tool_edges,
    collect_context,
    extract_text_content,
    pattern_part,
    summarize_args,
    tool_steps,
)

NOW = 1_800_000_000.0


def _messages(exit_code: int = 0) -> list[dict]:
    return [
        {"role": "user", "content": "please restart nginx"},
        {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "Restarting now."},
                {"type": "toolCall", "id": "c1", "name": "exec", "arguments": {"command": "systemctl restart nginx"}},
                {"type": "toolCall", "id": "c2", "name": "read", "arguments": {"path": "/var/log/nginx/error.log"}},
            ],
        },
        {"role": "toolResult", "toolName": "exec", "toolCallId": "c1", "details": {"exitCode": exit_code}},
        {"role": "toolResult", "toolName": "read", "toolCallId": "c2", "content": [{"type": "text", "text": "ok"}]},
        {"role": "assistant", "content": "nginx is back up"},
    ]


@pytest.fixture
def turn():
    return TurnEnd(context=collect_context(_messages()), success=True, duration_ms=1200, agent_id="ops")


# =============================================================================
# collect_context
# =============================================================================


class TestCollectContext:
    def test_texts_by_role(self, turn):
        ctx = turn.context
        assert ctx.user_texts == ["please restart nginx"]
        assert ctx.assistant_texts == ["Restarting now.", "nginx is back up"]
        assert ctx.texts(["user"]) == ["please restart nginx"]

    def test_tool_calls_and_results(self, turn):
        ctx = turn.context
        assert set(ctx.tool_calls) == {"c1", "c2"}
        assert ctx.tool_names == ["exec", "read"]
        assert [r.succeeded for r in ctx.tool_results] == [True, True]
        assert ctx.tool_results[1].text == "ok"

    def test_tool_call_and_error_counts(self):
        ctx = collect_context(_messages(exit_code=1))
        assert ctx.tool_call_count == 2
        assert ctx.tool_errors == 1

    def test_nonzero_exit_code_is_failure(self):
        ctx = collect_context(_messages(exit_code=1))
        assert ctx.tool_results[0].succeeded is False

    def test_ignores_junk(self):
        ctx = collect_context([None, "text", {"role": "system", "content": "x"}])
        assert ctx.user_texts == [] and ctx.tool_names == []

    def test_empty(self):
        assert collect_context(None).last_user_text == ""


def test_extract_text_content_block_list():
    blocks = [{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]
    assert extract_text_content(blocks) == "a\nb"


# =============================================================================
# Step summaries
# =============================================================================


class TestSummarizeArgs:
    def test_shell_command_redacted(self):
        summary = summarize_args("exec", {"command": "curl -H 'Authorization: Bearer abc' x"})
        assert "abc" not in summary
        assert summary.startswith("curl")

    def test_path(self):
        assert summarize_args("read", {"path": "/etc/hosts"}) == "/etc/hosts"

    def test_path_list(self):
        assert summarize_args("read", {"paths": ["a", "b"]}) == "a, b"

    def test_non_mapping(self):
        assert summarize_args("read", None) == ""

    def test_pattern_part(self):
        assert pattern_part("exec", "systemctl restart nginx") == "exec:systemctl"
        assert pattern_part("read", "/etc/hosts") == "read"
        assert pattern_part("", "") == "unknown"


# =============================================================================
# Builders
# =============================================================================


class TestBuildEpisode:
    def test_summary_lines(self, turn):
        draft = build_episode(turn, now=NOW)
        assert draft.kind == "episodic"
        assert draft.occurred_at == NOW
        assert "Agent: ops" in draft.text
        assert "User asked: please restart nginx" in draft.text
        assert "Actions: exec, read" in draft.text
        assert "Outcome: nginx is back up" in draft.text
        assert draft.text.endswith("Success: yes")
        assert draft.metadata["duration_ms"] == 1200

    def test_empty_turn(self):
        assert build_episode(TurnEnd(context=collect_context([]))) is None


class TestBuildProcedure:
    def test_pattern_key_and_steps(self, turn):
        draft = build_procedure(turn)
        assert draft.name == "exec:systemctl -> read"
        assert draft.metadata["pattern_key"] == "exec:systemctl -> read"
        assert draft.metadata["steps"] == ["exec: systemctl restart nginx", "read: /var/log/nginx/error.log"]
        assert "Procedure pattern: exec:systemctl -> read" in draft.text

    def test_too_few_successful_steps(self):
        turn = TurnEnd(context=collect_context(_messages(exit_code=2)))
        assert build_procedure(turn, min_steps=2) is None

    def test_max_steps(self, turn):
        draft = build_procedure(turn, min_steps=1, max_steps=1)
        assert draft.metadata["tool_count"] == 1


def test_build_tool_edges(turn):
    edges = build_tool_edges(turn)
    assert [e.fields["relation"] for e in edges] == ["used", "used"]
    assert edges[0].fields["subject"] == "ops"
    assert edges[0].fields["object"] == "exec: systemctl restart nginx"


def test_tool_steps_include_failures():
    steps = tool_steps(collect_context(_messages(exit_code=1)))
    assert [(s.pattern, s.succeeded) for s in steps] == [("exec:systemctl", False), ("read", True)]


def test_episode_redacts_before_cutting():
    secret = "sk-" + "A" * 40
    turn = TurnEnd(context=collect_context([{"role": "user", "content": "x" * 590 + " " + secret}]))
    draft = build_episode(turn, now=NOW)
    assert "sk-" not in draft.text
    assert "sk-" not in draft.metadata["user_text"]
