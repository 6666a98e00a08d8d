"""General utility functions and helpers."""

import random
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string such as ``"850ms"``, ``"12.4s"`` or ``"3m 5s"``
    """
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, remainder = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {remainder}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def jittered_delay(base_seconds: float, spread: float = 0.20) -> float:
    """Return ``base_seconds`` randomly spread by +/- ``spread`` (never negative)."""
    if base_seconds <= 0:
        return 0.0
    jitter = base_seconds * random.uniform(-spread, spread)
    return max(0.0, base_seconds + jitter)
