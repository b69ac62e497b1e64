"""Tests for credential redaction and truncation."""

import pytest

from layered_memory.utils.redaction import REDACTED, redact_payload, redact_sensitive, truncate


class TestRedactSensitive:
    @pytest.mark.parametrize(
        "text",
        [
            "token: abcdef123456",
            "api_key=s3cr3t",
            "API-KEY: s3cr3t",
            "Bearer eyJhbGciOi",
            "authorization=Basic",
            "sk-abcdefghijklmnopqrstuvwx",
        ],
    )
    def test_masks_whole_match(self, text):
        assert redact_sensitive(text) == REDACTED

    def test_surrounding_text_kept(self):
        assert redact_sensitive("use token=abc123 here") == "use [redacted] here"

    def test_short_sk_prefix_untouched(self):
        assert redact_sensitive("sk-short") == "sk-short"

    def test_disabled(self):
        assert redact_sensitive("token: abcdef123456", enabled=False) == "token: abcdef123456"

    def test_empty(self):
        assert redact_sensitive("") == ""


class TestTruncate:
    def test_short_text_unchanged(self):
        assert truncate("hello", 10) == "hello"

    def test_long_text_cut_with_ellipsis(self):
        assert truncate("abcdefghij", 4) == "abcd..."

    def test_trailing_space_stripped_before_ellipsis(self):
        assert truncate("abc defgh", 4) == "abc..."

    def test_empty(self):
        assert truncate("", 5) == ""


class TestRedactPayload:
    def test_nested_strings(self):
        payload = {"steps": ["exec: curl -H token=abc123"], "meta": {"note": "api_key=s3cr3t"}, "n": 3}
        assert redact_payload(payload) == {
            "steps": ["exec: curl -H [redacted]"],
            "meta": {"note": REDACTED},
            "n": 3,
        }

    def test_disabled(self):
        payload = {"note": "token=abc"}
        assert redact_payload(payload, enabled=False) is payload
