"""
Time Utilities Module
=====================

Utility functions for working with timestamps.
All timestamps are in milliseconds since the Unix epoch.
"""

import time
from datetime import datetime, timezone
from typing import Optional


def now_ms() -> int:
    """
    Get current timestamp in milliseconds.

    Only used for ingest timestamps and observability. Decisions are made
    on exchange time carried by the events.

    Returns:
        Current Unix timestamp in milliseconds.
    """
    return int(time.time() * 1000)


def parse_iso_ms(value: Optional[str]) -> Optional[int]:
    """
    Parse an ISO8601 timestamp (e.g. "2024-01-27T12:00:00.123456Z") to ms.

    Args:
        value: ISO8601 string, "Z" suffix allowed.

    Returns:
        Milliseconds since epoch, or None if the value cannot be parsed.

    Example:
        >>> parse_iso_ms("1970-01-01T00:00:01.500Z")
        1500
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))
