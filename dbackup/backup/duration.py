"""
Retention duration parsing.

Durations are written as an integer followed by a unit, e.g. ``30s``, ``15min``,
``12h``, ``7d``, ``2w``, ``6mon`` or ``1y``. Months are 30 days and years are
365 days.
"""

import re
from datetime import timedelta


class DurationError(ValueError):
    """Raised when a duration string cannot be parsed."""
    pass


_UNIT_SECONDS = {
    's': 1, 'sec': 1, 'second': 1, 'seconds': 1,
    'm': 60, 'min': 60, 'minute': 60, 'minutes': 60,
    'h': 3600, 'hour': 3600, 'hours': 3600,
    'd': 86400, 'day': 86400, 'days': 86400,
    'w': 604800, 'week': 604800, 'weeks': 604800,
    'mon': 2592000, 'month': 2592000, 'months': 2592000,
    'y': 31536000, 'year': 31536000, 'years': 31536000,
}

_DURATION_RE = re.compile(r'^(\d+)\s*([a-z]+)$')


def parse_duration(value: str) -> timedelta:
    """
    Parse a compact duration string into a timedelta.

    Args:
        value: Duration string such as '7d' or '2 weeks'

    Returns:
        Strictly positive timedelta

    Raises:
        DurationError: If the string is empty, has no unit, uses an unknown
            unit, does not describe a positive interval or is too large
    """
    if not isinstance(value, str):
        raise DurationError(f"Duration must be a string, got {type(value).__name__}")

    text = value.strip().lower()
    if not text:
        raise DurationError("Duration string cannot be empty")

    match = _DURATION_RE.match(text)
    if not match:
        raise DurationError(
            f"Invalid duration format: '{value}'. Expected format like '1d', '2w', '30m', '3600s'"
        )

    amount, unit = int(match.group(1)), match.group(2)

    if unit not in _UNIT_SECONDS:
        raise DurationError(
            f"Unknown time unit '{unit}'. Supported: s, m, h, d, w, mon, y (e.g., '1d', '2w', '30m')"
        )

    if amount <= 0:
        raise DurationError(f"Duration must be positive: '{value}'")

    try:
        return timedelta(seconds=amount * _UNIT_SECONDS[unit])
    except OverflowError:
        raise DurationError(f"Duration is too large: '{value}'")


def format_duration(delta: timedelta) -> str:
    """Render a timedelta with the largest unit that divides it exactly."""
    seconds = int(delta.total_seconds())
    for unit, size in (('y', 31536000), ('mon', 2592000), ('w', 604800),
                       ('d', 86400), ('h', 3600), ('m', 60)):
        if seconds and seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"
