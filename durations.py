"""
Duration helpers for temporary roles.

Parses compact duration strings such as ``1h30m`` or ``2w`` and formats
time spans for embeds.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

_DURATION_PATTERN = re.compile(r"(\d+)\s*(w|d|h|m)", re.I)

_UNIT_SECONDS = {
    "w": 7 * 24 * 60 * 60,
    "d": 24 * 60 * 60,
    "h": 60 * 60,
    "m": 60,
}


def parse_duration(duration_str: Optional[str]) -> Optional[timedelta]:
    """
    Parse a duration string into a timedelta.

    Args:
        duration_str: Text like ``30m``, ``2h``, ``1d12h`` or ``1w``.

    Returns:
        The parsed duration, or None if nothing valid was found.
    """
    if not isinstance(duration_str, str) or not duration_str.strip():
        return None

    total = 0
    for value, unit in _DURATION_PATTERN.findall(duration_str):
        total += int(value) * _UNIT_SECONDS[unit.lower()]

    return timedelta(seconds=total) if total > 0 else None


def validate_duration(
    duration_str: str,
    min_duration: timedelta = timedelta(minutes=1),
    max_duration: timedelta = timedelta(days=365),
) -> tuple[bool, str]:
    """
    Check a duration string against the allowed bounds.

    Returns:
        Tuple of (is_valid, error_message).
    """
    duration = parse_duration(duration_str)
    if duration is None:
        return False, f"Invalid duration format: **{duration_str}**. Use formats like 30m, 2h, 1d, 1w."
    if duration > max_duration:
        return False, f"Duration cannot exceed {format_timedelta(max_duration)}."
    if duration < min_duration:
        return False, f"Duration must be at least {format_timedelta(min_duration)}."
    return True, ""


def format_timedelta(delta: timedelta) -> str:
    """Format a span as ``2d 3h 15m``, ``3h 15m``, ``15m 30s`` or ``30s``."""
    seconds = max(int(delta.total_seconds()), 0)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)

    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_remaining_time(expires_at: datetime, now: Optional[datetime] = None) -> str:
    """Describe how long until ``expires_at``."""
    now = now or datetime.now(timezone.utc)
    diff = expires_at - now
    if diff.total_seconds() <= 0:
        return "Expired"

    minutes = int(diff.total_seconds()) // 60
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    return " ".join(parts) or "Less than a minute"


def discord_timestamp(moment: datetime, style: str = "R") -> str:
    """Render a Discord ``<t:...>`` timestamp tag."""
    return f"<t:{int(moment.timestamp())}:{style}>"
