"""
Calendar date utilities.

Date keys are ISO strings (``YYYY-MM-DD``). Lexicographic order on these keys
is chronological order, and the rest of the package sorts them as plain
strings.
"""

import re
from datetime import date, datetime, timedelta

import pytz
from dateutil import parser

from body_tracker.utils.exceptions import ValidationError

DATE_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

EPOCH = date(1970, 1, 1)


def is_date_key(value: str) -> bool:
    """Return True if value is a valid ``YYYY-MM-DD`` calendar date."""
    if not isinstance(value, str) or not DATE_KEY_PATTERN.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_date_key(value: str) -> date:
    """
    Parse a date key into a date.

    Args:
        value: ISO date string.

    Returns:
        Parsed date.

    Raises:
        ValidationError: If the value is not a ``YYYY-MM-DD`` date.
    """
    if not is_date_key(value):
        raise ValidationError(f"Invalid date key: {value!r}")
    return parser.isoparse(value).date()


def to_date_key(value: date | datetime) -> str:
    """Format a date (or datetime) as a date key."""
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def today(timezone_str: str = "UTC") -> date:
    """
    Get the current calendar date in a timezone.

    Args:
        timezone_str: Timezone string (e.g., "Europe/Madrid").

    Returns:
        Today's date in that timezone.
    """
    return datetime.now(pytz.timezone(timezone_str)).date()


def days_since_epoch(value: str | date) -> int:
    """Number of whole days between 1970-01-01 and the given date."""
    if isinstance(value, str):
        value = parse_date_key(value)
    return (value - EPOCH).days


def week_bucket(value: str | date) -> int:
    """Week index counted from the epoch (days since epoch // 7)."""
    return days_since_epoch(value) // 7


def shift_days(value: date, days: int) -> date:
    return value + timedelta(days=days)


def midnight_utc(value: date, timezone_str: str = "UTC") -> datetime:
    """
    Start of a calendar day in a timezone, converted to UTC.

    Args:
        value: Calendar date.
        timezone_str: Timezone the day is expressed in.

    Returns:
        Timezone-aware UTC datetime.
    """
    tz = pytz.timezone(timezone_str)
    local_midnight = tz.localize(datetime(value.year, value.month, value.day))
    return local_midnight.astimezone(pytz.utc)
