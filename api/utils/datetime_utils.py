"""
Datetime utilities for Threadline API services.
"""
from datetime import datetime, timezone
from typing import Optional


def make_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware (UTC if naive).

    Args:
        dt: A datetime object that may or may not have timezone info

    Returns:
        The same datetime with UTC timezone if it was naive,
        or the original timezone-aware datetime, or None if input was None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_datetime(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp or a YYYY-MM-DD date.

    Args:
        value: String to parse ("Z" suffix accepted)
        end_of_day: For date-only input, return 23:59:59.999999 instead of
            midnight so the day is included in inclusive ranges

    Returns:
        Timezone-aware datetime (UTC if no offset given), or None for empty input

    Raises:
        ValueError: If the value is neither format
    """
    if not value:
        return None

    value = value.strip()
    if len(value) == 10:
        day = datetime.strptime(value, "%Y-%m-%d")
        if end_of_day:
            day = day.replace(hour=23, minute=59, second=59, microsecond=999999)
        return day.replace(tzinfo=timezone.utc)

    return make_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))
