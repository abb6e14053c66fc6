"""Datetime utilities with consistent UTC timezone handling.

Every timestamp that flows through sync metadata, conflicts and the queue
is timezone-aware. These helpers keep that true at the edges where values
arrive as strings or naive datetimes.
"""

import re
from datetime import date, datetime, timezone
from typing import Any, Optional

DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
ISO_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}")


def now_utc() -> datetime:
    """Return current datetime in UTC timezone."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.

    Args:
        dt: Datetime to check/convert, or None

    Returns:
        Timezone-aware datetime, or None if input was None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # Naive datetime - assume UTC
        return dt.replace(tzinfo=timezone.utc)

    return dt


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) as an aware datetime.

    A trailing ``Z`` is accepted. Date-only strings parse to midnight UTC.
    Anything unparseable yields None.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return ensure_aware(value)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        return ensure_aware(datetime.fromisoformat(text))
    except ValueError:
        return None


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO string with timezone info."""
    if dt is None:
        return None

    return ensure_aware(dt).isoformat()


def is_iso_datetime(value: Any) -> bool:
    """Check whether a value looks like an ISO datetime string with a time part."""
    return isinstance(value, str) and bool(ISO_DATETIME_RE.match(value))


def date_part(value: Any) -> Optional[str]:
    """Return the ``YYYY-MM-DD`` prefix of a date or datetime string."""
    if not isinstance(value, str) or len(value) < 10:
        return None
    prefix = value[:10]
    return prefix if DATE_ONLY_RE.match(prefix) else None


def clock_time(value: Any) -> Optional[str]:
    """Return the ``HH:MM`` wall-clock part of an ISO datetime string."""
    if not is_iso_datetime(value):
        return None
    return value[11:16]
