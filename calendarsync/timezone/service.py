"""Core timezone service for CalendarSync.

Provides centralized timezone handling with zoneinfo + pytz fallback strategy.
Feed timezone labels are resolved here, and wall-clock date/time components are
turned into absolute UTC instants here, so no other module has to guess offsets.
"""

import logging
from datetime import date, datetime, time, timezone as dt_timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytz
from dateutil.parser import isoparse

logger = logging.getLogger(__name__)

UTC = dt_timezone.utc

# Windows/Outlook timezone labels seen in exported feeds
WINDOWS_TIMEZONE_MAP = {
    "US Mountain Standard Time": "America/Denver",
    "US Eastern Standard Time": "America/New_York",
    "US Pacific Standard Time": "America/Los_Angeles",
    "US Central Standard Time": "America/Chicago",
    "Mountain Standard Time": "America/Denver",
    "Eastern Standard Time": "America/New_York",
    "Pacific Standard Time": "America/Los_Angeles",
    "Central Standard Time": "America/Chicago",
    "Alaskan Standard Time": "America/Anchorage",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "Atlantic Standard Time": "America/Halifax",
    "GMT Standard Time": "Europe/London",
    "Greenwich Standard Time": "Atlantic/Reykjavik",
    "W. Europe Standard Time": "Europe/Berlin",
    "Central European Standard Time": "Europe/Berlin",
    "Central Europe Standard Time": "Europe/Budapest",
    "Romance Standard Time": "Europe/Paris",
    "E. Europe Standard Time": "Europe/Chisinau",
    "FLE Standard Time": "Europe/Kiev",
    "Russian Standard Time": "Europe/Moscow",
    "India Standard Time": "Asia/Kolkata",
    "China Standard Time": "Asia/Shanghai",
    "Tokyo Standard Time": "Asia/Tokyo",
    "AUS Eastern Standard Time": "Australia/Sydney",
    "New Zealand Standard Time": "Pacific/Auckland",
    "UTC": "UTC",
    "Coordinated Universal Time": "UTC",
}


class TimezoneError(Exception):
    """Raised when timezone operations fail."""


def ensure_utc(dt: datetime) -> datetime:
    """Return ``dt`` as an aware UTC datetime; naive values are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class TimezoneService:
    """Centralized timezone service for CalendarSync.

    Uses zoneinfo for IANA names and falls back to pytz for names the local
    tz database does not carry. Resolved zones are cached per label.
    """

    def __init__(self, default_timezone: str = "UTC") -> None:
        self.default_timezone = default_timezone
        self._cache: dict[str, Any] = {}

    def resolve(self, label: Optional[str]) -> Any:
        """Resolve a timezone label to a tzinfo object.

        Args:
            label: IANA name, Windows timezone name, or ``None`` for the default zone.

        Returns:
            A tzinfo instance.

        Raises:
            TimezoneError: If the label cannot be resolved.
        """
        name = (label or self.default_timezone).strip().strip('"')
        if name in self._cache:
            return self._cache[name]

        iana_name = WINDOWS_TIMEZONE_MAP.get(name, name)
        if iana_name.upper() in ("UTC", "Z", "GMT", "ETC/UTC"):
            tz: Any = UTC
        else:
            tz = self._load_zone(iana_name)

        self._cache[name] = tz
        logger.debug(f"Resolved timezone label {name!r} to {tz}")
        return tz

    def _load_zone(self, iana_name: str) -> Any:
        try:
            return ZoneInfo(iana_name)
        except (ZoneInfoNotFoundError, ValueError):
            pass

        try:
            return pytz.timezone(iana_name)
        except pytz.UnknownTimeZoneError as e:
            raise TimezoneError(f"Unknown timezone: {iana_name}") from e

    def is_known(self, label: Optional[str]) -> bool:
        """Check whether ``label`` resolves to a timezone."""
        try:
            self.resolve(label)
        except TimezoneError:
            return False
        return True

    def localize(self, wall_clock: datetime, label: Optional[str] = None) -> datetime:
        """Interpret naive wall-clock components in ``label`` and return a UTC instant.

        Aware datetimes are already absolute and are only converted to UTC.

        Raises:
            TimezoneError: If the label cannot be resolved.
        """
        if wall_clock.tzinfo is not None:
            return wall_clock.astimezone(UTC)

        tz = self.resolve(label)
        if hasattr(tz, "localize"):
            local = tz.localize(wall_clock)
        else:
            local = wall_clock.replace(tzinfo=tz)
        return local.astimezone(UTC)

    def localize_date(self, day: date, label: Optional[str] = None) -> datetime:
        """Return local midnight of ``day`` in ``label`` as a UTC instant."""
        return self.localize(datetime.combine(day, time.min), label)

    @staticmethod
    def format_instant(dt: datetime) -> str:
        """Format an instant as UTC ISO-8601 with millisecond precision and ``Z`` suffix."""
        utc_dt = ensure_utc(dt)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond // 1000:03d}Z"

    @staticmethod
    def parse_instant(value: str) -> datetime:
        """Parse an RFC 3339 timestamp (as returned by the target store) into UTC.

        Raises:
            TimezoneError: If the value is not a valid timestamp.
        """
        try:
            parsed = isoparse(value)
        except (TypeError, ValueError) as e:
            raise TimezoneError(f"Failed to parse timestamp '{value}': {e}") from e
        return ensure_utc(parsed)
