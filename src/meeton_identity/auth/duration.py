"""Compact duration strings such as "15m" or "7d".

Expiry policies are configured as `<integer><unit>` with unit one of
`s`, `m`, `h` or `d`. Bad input never raises; the two helpers fall back to
different defaults, and callers rely on that:

- `parse_duration` (access-token lifetime) falls back to 15 minutes.
- `apply_duration` (refresh-token row expiry) falls back to 7 days.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta

UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
}

DEFAULT_ACCESS_SECONDS = 15 * 60
DEFAULT_REFRESH_DELTA = timedelta(days=7)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")


def _split(duration: str) -> tuple[int, str] | None:
    match = _DURATION_PATTERN.match(duration or "")
    if match is None:
        return None
    return int(match.group(1)), match.group(2)


def parse_duration(duration: str) -> int:
    """Convert a duration string to seconds.

    Args:
        duration: Duration such as "900s", "15m", "1h" or "7d"

    Returns:
        Number of seconds, or 900 when the string can't be parsed
    """
    parts = _split(duration)
    if parts is None:
        return DEFAULT_ACCESS_SECONDS

    value, unit = parts
    return value * UNIT_SECONDS[unit]


def apply_duration(base: datetime, duration: str) -> datetime:
    """Add a duration string to a timestamp.

    Days and hours are added as calendar deltas; seconds and minutes as a
    plain number of seconds.

    Args:
        base: Timestamp to start from
        duration: Duration such as "12h" or "7d"

    Returns:
        The shifted timestamp, or base + 7 days when the string can't be parsed
    """
    parts = _split(duration)
    if parts is None:
        return base + DEFAULT_REFRESH_DELTA

    value, unit = parts
    if unit == "d":
        return base + timedelta(days=value)
    if unit == "h":
        return base + timedelta(hours=value)
    return base + timedelta(seconds=value * UNIT_SECONDS[unit])
