"""iCalendar feed parser with Outlook/Google export compatibility."""

import hashlib
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Optional

from icalendar import Calendar

from ..sync.identity import occurrence_id
from ..timezone import TimezoneError, TimezoneService
from .exceptions import ICSParseError
from .models import EventStatus, FeedEvent, Transparency

logger = logging.getLogger(__name__)

_CALENDAR_BLOCK_RE = re.compile(r"BEGIN:VCALENDAR.*?END:VCALENDAR", re.DOTALL | re.IGNORECASE)

DEFAULT_TIMED_DURATION = timedelta(hours=1)
DEFAULT_ALL_DAY_DURATION = timedelta(days=1)


class ICSParser:
    """Turns raw feed text into normalized :class:`FeedEvent` records.

    The parser performs no I/O and never raises for bad input: a malformed feed
    yields an empty list, a malformed calendar block or event is skipped with a
    warning and the rest of the feed is still returned.

    Timezone precedence for wall-clock values is the feed-level declaration
    (``X-WR-TIMEZONE``, else the first ``VTIMEZONE``), then the event's own
    ``TZID``, then the configured default. Values written in UTC (``...Z``) are
    already absolute and are kept as is.
    """

    def __init__(self, settings: Any = None, timezone_service: Optional[TimezoneService] = None):
        """Initialize ICS parser.

        Args:
            settings: Application settings (``default_timezone`` is read if present)
            timezone_service: Timezone service; created from settings when omitted
        """
        self.settings = settings
        default_tz = getattr(settings, "default_timezone", "UTC") if settings else "UTC"
        self.timezone_service = timezone_service or TimezoneService(default_tz)

    def parse(self, feed_text: Optional[str]) -> list[FeedEvent]:
        """Parse feed text into events.

        Args:
            feed_text: Raw iCalendar text, possibly holding several VCALENDAR blocks

        Returns:
            Parsed events in feed order; empty when nothing could be parsed
        """
        if not feed_text or not feed_text.strip():
            return []

        events: list[FeedEvent] = []
        for index, block in enumerate(self.split_calendars(feed_text)):
            try:
                events.extend(self._parse_calendar_block(block))
            except ICSParseError as e:
                logger.warning(f"Skipping unparseable calendar block {index}: {e.message}")

        logger.debug(f"Parsed {len(events)} events from feed")
        return events

    @staticmethod
    def split_calendars(feed_text: str) -> list[str]:
        """Split concatenated exports into individual VCALENDAR blocks.

        A bare list of VEVENTs without a calendar wrapper is wrapped in one.
        """
        blocks = _CALENDAR_BLOCK_RE.findall(feed_text)
        if blocks:
            return blocks
        if "BEGIN:VEVENT" in feed_text.upper():
            return [f"BEGIN:VCALENDAR\r\nVERSION:2.0\r\n{feed_text.strip()}\r\nEND:VCALENDAR\r\n"]
        return []

    def _parse_calendar_block(self, block: str) -> list[FeedEvent]:
        try:
            calendar = Calendar.from_ical(block)
        except (ValueError, KeyError, IndexError) as e:
            raise ICSParseError(f"Invalid calendar data: {e}") from e

        calendar_tz = self._calendar_timezone(calendar)
        events: list[FeedEvent] = []

        for component in calendar.walk("VEVENT"):
            try:
                events.append(self._parse_event_component(component, calendar_tz))
            except (ICSParseError, ValueError, TypeError, AttributeError) as e:
                uid = component.get("UID", "<no uid>")
                logger.warning(f"Skipping malformed event {uid}: {e}")

        return events

    def _calendar_timezone(self, calendar: Calendar) -> Optional[str]:
        """Feed-level timezone label: X-WR-TIMEZONE wins over VTIMEZONE."""
        wr_timezone = calendar.get("X-WR-TIMEZONE")
        if wr_timezone:
            return str(wr_timezone).strip()

        for vtimezone in calendar.walk("VTIMEZONE"):
            tzid = vtimezone.get("TZID")
            if tzid:
                return str(tzid).strip()
        return None

    def _parse_event_component(self, component: Any, calendar_tz: Optional[str]) -> FeedEvent:
        dtstart = component.get("DTSTART")
        if dtstart is None:
            raise ICSParseError("VEVENT has no DTSTART")

        event_tz = dtstart.params.get("TZID")
        label = self._select_timezone(calendar_tz, event_tz)
        is_all_day = isinstance(dtstart.dt, date) and not isinstance(dtstart.dt, datetime)

        start = self._to_instant(dtstart, label)
        end = self._parse_end(component, start, label, is_all_day)

        uid = component.get("UID")
        summary = str(component.get("SUMMARY", "") or "").strip()
        series_id = str(uid).strip() if uid else self._fallback_uid(summary, dtstart)

        recurrence_id = None
        if component.get("RECURRENCE-ID") is not None:
            recurrence_id = self._to_instant(component.get("RECURRENCE-ID"), label)

        if self._is_utc_value(dtstart) and label is None:
            label = "UTC"

        return FeedEvent(
            id=occurrence_id(series_id, recurrence_id) if recurrence_id else series_id,
            series_id=series_id,
            occurrence_start=recurrence_id,
            title=summary or "No Title",
            description=str(component.get("DESCRIPTION", "") or ""),
            location=str(component.get("LOCATION", "") or ""),
            start=start,
            end=end,
            is_all_day=is_all_day,
            recurrence_rule=None if recurrence_id else self._parse_rrule(component),
            exdates=self._parse_exdates(component, start, label),
            recurrence_id=recurrence_id,
            status=self._parse_status(component.get("STATUS")),
            transparency=self._parse_transparency(component),
            source_timezone=label,
        )

    def _select_timezone(self, calendar_tz: Optional[str], event_tz: Optional[str]) -> Optional[str]:
        """First resolvable label among feed-level and event-level declarations."""
        for candidate in (calendar_tz, event_tz):
            if candidate and self.timezone_service.is_known(candidate):
                return str(candidate)
            if candidate:
                logger.warning(f"Unknown timezone {candidate!r}, falling back")
        return None

    @staticmethod
    def _is_utc_value(prop: Any) -> bool:
        return prop.to_ical().decode("utf-8", errors="replace").upper().endswith("Z")

    def _to_instant(self, prop: Any, label: Optional[str]) -> datetime:
        """Convert a DTSTART-like property to a UTC instant.

        Wall-clock components are taken verbatim from the property and localized
        in ``label``; the offset icalendar may have attached from the TZID is
        discarded so the feed-level zone wins.
        """
        value = prop.dt
        try:
            if not isinstance(value, datetime):
                return self.timezone_service.localize_date(value, label)
            if self._is_utc_value(prop):
                return self.timezone_service.localize(value, "UTC")
            return self.timezone_service.localize(value.replace(tzinfo=None), label)
        except TimezoneError as e:
            raise ICSParseError(str(e)) from e

    def _parse_end(
        self, component: Any, start: datetime, label: Optional[str], is_all_day: bool
    ) -> datetime:
        dtend = component.get("DTEND")
        if dtend is not None:
            end = self._to_instant(dtend, label)
        elif component.get("DURATION") is not None:
            end = start + component.get("DURATION").dt
        else:
            end = start + (DEFAULT_ALL_DAY_DURATION if is_all_day else DEFAULT_TIMED_DURATION)

        if end < start:
            logger.debug(f"Event end {end} before start {start}, clamping")
            end = start
        return end

    @staticmethod
    def _parse_rrule(component: Any) -> Optional[str]:
        rrule = component.get("RRULE")
        if rrule is None:
            return None
        if isinstance(rrule, list):
            # Multiple RRULE properties are deprecated; the first one wins
            rrule = rrule[0]
        return rrule.to_ical().decode("utf-8")

    def _parse_exdates(self, component: Any, start: datetime, label: Optional[str]) -> list[datetime]:
        exdate_props = component.get("EXDATE")
        if exdate_props is None:
            return []
        if not isinstance(exdate_props, list):
            exdate_props = [exdate_props]

        exdates: list[datetime] = []
        for prop in exdate_props:
            is_utc = prop.to_ical().decode("utf-8", errors="replace").upper().endswith("Z")
            for item in prop.dts:
                value = item.dt
                if isinstance(value, datetime):
                    if is_utc or (value.tzinfo is not None and label is None):
                        exdates.append(self.timezone_service.localize(value, "UTC"))
                    else:
                        exdates.append(
                            self.timezone_service.localize(value.replace(tzinfo=None), label)
                        )
                else:
                    # Date-only EXDATE excludes the occurrence starting that day
                    local_start = start.astimezone(self.timezone_service.resolve(label))
                    wall = datetime.combine(value, local_start.time().replace(tzinfo=None))
                    exdates.append(self.timezone_service.localize(wall, label))
        return exdates

    @staticmethod
    def _parse_status(status_prop: Any) -> EventStatus:
        if not status_prop:
            return EventStatus.CONFIRMED
        try:
            return EventStatus(str(status_prop).upper())
        except ValueError:
            return EventStatus.CONFIRMED

    @staticmethod
    def _parse_transparency(component: Any) -> Transparency:
        """Busy/free from Outlook's busy status when present, else from TRANSP."""
        busy_status = component.get("X-MICROSOFT-CDO-BUSYSTATUS")
        if busy_status:
            if str(busy_status).strip().upper() == "FREE":
                return Transparency.TRANSPARENT
            return Transparency.OPAQUE

        transp = component.get("TRANSP")
        if transp and str(transp).strip().upper() == "TRANSPARENT":
            return Transparency.TRANSPARENT
        return Transparency.OPAQUE

    @staticmethod
    def _fallback_uid(summary: str, dtstart: Any) -> str:
        """Deterministic id for events exported without a UID."""
        raw_start = dtstart.to_ical().decode("utf-8", errors="replace")
        digest = hashlib.sha1(f"{summary}|{raw_start}".encode("utf-8")).hexdigest()[:16]
        return f"generated-{digest}"
