"""
UTC timestamp helpers.

Timestamps are stored as ISO-8601 strings with a fixed microsecond precision
and +00:00 offset, so string order equals chronological order in queries.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def iso_now() -> str:
    return to_iso(utc_now())


def parse_iso(value) -> Optional[datetime]:
    """Parse a stored timestamp (string or datetime). Returns None if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except (ValueError, AttributeError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
