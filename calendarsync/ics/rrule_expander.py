"""RRULE expansion logic for the CalendarSync feed pipeline."""

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Optional

from dateutil.rrule import rruleset, rrulestr

from ..sync.identity import occurrence_id
from ..timezone import TimezoneError, TimezoneService, ensure_utc
from .exceptions import RRuleExpansionError
from .models import FeedEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_OCCURRENCES = 1000


class RRuleExpander:
    """Client-side RRULE expansion.

    Occurrences are generated in the event's source timezone so a weekly 09:00
    meeting stays at 09:00 local time across DST changes, then converted back to
    UTC instants. Each occurrence gets a derived id (``<seriesId>-<epochMillis>``)
    and no recurrence rule.
    """

    def __init__(self, settings: Any = None, timezone_service: Optional[TimezoneService] = None):
        """Initialize RRuleExpander with settings.

        Args:
            settings: Application settings (``rrule_max_occurrences``, ``default_timezone``)
            timezone_service: Timezone service; created from settings when omitted
        """
        self.settings = settings
        self.max_occurrences = getattr(settings, "rrule_max_occurrences", DEFAULT_MAX_OCCURRENCES)
        default_tz = getattr(settings, "default_timezone", "UTC") if settings else "UTC"
        self.timezone_service = timezone_service or TimezoneService(default_tz)

    def expand(
        self,
        event: FeedEvent,
        window_start: datetime,
        window_end: datetime,
        excluded: Iterable[datetime] = (),
    ) -> list[FeedEvent]:
        """Expand one event into occurrences starting within ``[window_start, window_end]``.

        Events without a recurrence rule are returned unchanged. A rule that cannot
        be parsed degrades to the single event with its rule dropped.

        Args:
            event: Parsed event
            window_start: Inclusive window start
            window_end: Inclusive window end
            excluded: Extra instants to skip (slots replaced by RECURRENCE-ID overrides)
        """
        if not event.recurrence_rule:
            return [event]

        try:
            occurrences = self.occurrences(event, window_start, window_end, excluded)
        except RRuleExpansionError as e:
            logger.warning(f"Could not expand recurrence for {event.series_id!r}: {e.message}")
            return [event.model_copy(update={"recurrence_rule": None})]

        return self.generate_event_instances(event, occurrences)

    def expand_all(
        self, events: Iterable[FeedEvent], window_start: datetime, window_end: datetime
    ) -> list[FeedEvent]:
        """Expand a parsed feed for one window.

        RECURRENCE-ID overrides replace the generated occurrence for their slot.
        Single events and overrides are kept only when they overlap the window, so
        every returned event is one the existing-event index can see.
        """
        events = list(events)
        window_start = ensure_utc(window_start)
        window_end = ensure_utc(window_end)

        overridden: dict[str, set[datetime]] = defaultdict(set)
        for event in events:
            if event.is_override and event.occurrence_start is not None:
                overridden[event.series_id].add(event.occurrence_start)

        expanded: list[FeedEvent] = []
        for event in events:
            if event.is_recurring:
                expanded.extend(
                    self.expand(event, window_start, window_end, overridden.get(event.series_id, ()))
                )
            elif self._overlaps(event, window_start, window_end):
                expanded.extend(self.expand(event, window_start, window_end))

        logger.debug(f"Expanded {len(events)} feed events into {len(expanded)} occurrences")
        return expanded

    @staticmethod
    def _overlaps(event: FeedEvent, window_start: datetime, window_end: datetime) -> bool:
        return event.start <= window_end and max(event.end, event.start) >= window_start

    def occurrences(
        self,
        event: FeedEvent,
        window_start: datetime,
        window_end: datetime,
        excluded: Iterable[datetime] = (),
    ) -> list[datetime]:
        """Occurrence start instants (UTC) of ``event`` within the window.

        Raises:
            RRuleExpansionError: If the rule cannot be parsed or evaluated.
        """
        tz = self._source_tz(event)
        dtstart = self._to_local(event.start, tz)
        rule_text = event.recurrence_rule or ""
        if not rule_text.upper().startswith("RRULE:"):
            rule_text = f"RRULE:{rule_text}"

        skip = [ensure_utc(dt) for dt in (*event.exdates, *excluded)]

        try:
            rule_set = self._build_ruleset(rule_text, dtstart)
            naive = False
        except (ValueError, TypeError):
            # UNTIL given as floating local time cannot be combined with an aware DTSTART
            try:
                rule_set = self._build_ruleset(rule_text, dtstart.replace(tzinfo=None))
                naive = True
            except (ValueError, TypeError) as e:
                raise RRuleExpansionError(f"Invalid RRULE {event.recurrence_rule!r}: {e}") from e

        for ex in skip:
            local_ex = self._to_local(ex, tz)
            rule_set.exdate(local_ex.replace(tzinfo=None) if naive else local_ex)

        start = self._to_local(ensure_utc(window_start), tz)
        end = self._to_local(ensure_utc(window_end), tz)
        if naive:
            start, end = start.replace(tzinfo=None), end.replace(tzinfo=None)

        try:
            raw_occurrences = rule_set.between(start, end, inc=True)
        except (ValueError, TypeError, OverflowError) as e:
            raise RRuleExpansionError(f"Failed to evaluate RRULE: {e}") from e

        occurrences = [self._to_utc(occ, tz) for occ in raw_occurrences]

        if len(occurrences) > self.max_occurrences:
            logger.warning(
                f"Limiting RRULE expansion of {event.series_id!r} to {self.max_occurrences} occurrences"
            )
            occurrences = occurrences[: self.max_occurrences]

        logger.debug(
            "RRULE expansion: uid=%s rule=%s occurrences=%d",
            event.series_id,
            event.recurrence_rule,
            len(occurrences),
        )
        return occurrences

    @staticmethod
    def _build_ruleset(rule_text: str, dtstart: datetime) -> rruleset:
        parsed = rrulestr(rule_text, dtstart=dtstart, forceset=True)
        if not isinstance(parsed, rruleset):
            rule_set = rruleset()
            rule_set.rrule(parsed)
            return rule_set
        return parsed

    def _source_tz(self, event: FeedEvent) -> Any:
        try:
            return self.timezone_service.resolve(event.source_timezone)
        except TimezoneError:
            logger.warning(f"Unknown timezone {event.source_timezone!r}, expanding in UTC")
            return self.timezone_service.resolve("UTC")

    @staticmethod
    def _to_local(instant: datetime, tz: Any) -> datetime:
        local = instant.astimezone(tz)
        if hasattr(tz, "normalize"):
            local = tz.normalize(local)
        return local

    @staticmethod
    def _to_utc(occurrence: datetime, tz: Any) -> datetime:
        """Re-anchor a generated occurrence's wall clock in ``tz`` and convert to UTC."""
        wall = occurrence.replace(tzinfo=None)
        if hasattr(tz, "localize"):
            return ensure_utc(tz.localize(wall))
        return ensure_utc(wall.replace(tzinfo=tz))

    def generate_event_instances(
        self, event: FeedEvent, occurrences: list[datetime]
    ) -> list[FeedEvent]:
        """Create one :class:`FeedEvent` per occurrence instant."""
        duration = event.duration
        return [
            event.model_copy(
                update={
                    "id": occurrence_id(event.series_id, occurrence),
                    "occurrence_start": occurrence,
                    "start": occurrence,
                    "end": occurrence + duration,
                    "recurrence_rule": None,
                    "exdates": [],
                }
            )
            for occurrence in occurrences
        ]
