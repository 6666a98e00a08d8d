"""
Timezone package for CalendarSync.

Resolves feed timezone labels (IANA or Windows names) and turns wall-clock
values into absolute instants without going through a locale-sensitive
date parser.

Example usage:
    >>> from calendarsync.timezone import TimezoneService
    >>> from datetime import datetime
    >>>
    >>> service = TimezoneService()
    >>> instant = service.localize(datetime(2024, 3, 1, 10, 0), "Europe/Berlin")
    >>> service.format_instant(instant)
    '2024-03-01T09:00:00.000Z'
"""

from .service import WINDOWS_TIMEZONE_MAP, TimezoneError, TimezoneService, ensure_utc

__all__ = [
    "WINDOWS_TIMEZONE_MAP",
    "TimezoneError",
    "TimezoneService",
    "ensure_utc",
]
