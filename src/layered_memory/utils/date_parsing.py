"""Date parsing utilities for timeline capture."""

import re
from datetime import datetime, timezone

from dateutil import parser as dateutil_parser

_ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})(?:[ T](\d{2}):(\d{2})(?::(\d{2}))?)?")


def parse_occurred_at(text: str | None) -> float | None:
    """
    Find the moment an event happened from its description.

    An embedded ``YYYY-MM-DD[ HH:MM[:SS]]`` date is read as UTC.  Otherwise
    the whole text is handed to dateutil, which succeeds only for text that
    is itself a date ("March 3 2026 14:00").

    Returns:
        Unix timestamp, or None when the text carries no date.
    """
    if not text:
        return None

    iso = _ISO_DATE.search(text)
    if iso:
        year, month, day = int(iso.group(1)), int(iso.group(2)), int(iso.group(3))
        hour, minute, second = (int(g or 0) for g in iso.group(4, 5, 6))
        try:
            return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc).timestamp()
        except ValueError:
            pass

    try:
        dt = dateutil_parser.parse(text.strip())
    except (ValueError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()
