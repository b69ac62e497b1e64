"""Masking of credential-shaped substrings before anything is embedded or stored."""

import re
from typing import Any

REDACTED = "[redacted]"

REDACTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"sk-[A-Za-z0-9]{20,}", re.IGNORECASE),
    re.compile(r"api[_-]?key\s*[:=]\s*\S+", re.IGNORECASE),
    re.compile(r"token\s*[:=]\s*\S+", re.IGNORECASE),
    re.compile(r"bearer\s+\S+", re.IGNORECASE),
    re.compile(r"authorization\s*[:=]\s*\S+", re.IGNORECASE),
)


def redact_sensitive(text: str, enabled: bool = True) -> str:
    """Replace every credential-shaped match with ``[redacted]``, in pattern order."""
    if not enabled or not text:
        return text
    for pattern in REDACTION_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def truncate(text: str, max_chars: int) -> str:
    """Trim *text* to *max_chars*, marking the cut with an ellipsis."""
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].strip() + "..."


def redact_payload(value: Any, enabled: bool = True) -> Any:
    """Redact every string nested inside dicts, lists and tuples of *value*."""
    if not enabled:
        return value
    if isinstance(value, str):
        return redact_sensitive(value)
    if isinstance(value, dict):
        return {k: redact_payload(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_payload(v) for v in value]
    return value
