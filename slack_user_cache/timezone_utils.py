"""
Timezone helpers.

All timestamps in the cache are timezone-aware UTC datetimes.
"""

from datetime import datetime, timezone

from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_utc_time_string(value: str) -> datetime:
    """
    Parse a timestamp string into an aware UTC datetime.

    Accepts ISO 8601 as well as RFC 1123 HTTP dates
    (e.g. ``Wed, 21 Oct 2015 07:28:00 GMT``). Naive values are assumed UTC.

    Raises:
        ValueError: If the string is not a recognizable timestamp
    """
    parsed = date_parser.parse(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
