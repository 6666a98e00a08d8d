"""Unit tests for RRULE expansion."""

from datetime import datetime, timedelta, timezone

import pytest

from calendarsync.ics.models import FeedEvent, Transparency
from calendarsync.ics.parser import ICSParser
from calendarsync.ics.rrule_expander import RRuleExpander
from calendarsync.sync.identity import identity_key
from tests.fixtures.ics_samples import EVT_1, MIXED_FEED, WEEKLY_FEED, calendar

pytestmark = pytest.mark.unit

WINDOW_START = datetime(2024, 3, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 4, 1, tzinfo=timezone.utc)


def weekly_event(**overrides: object) -> FeedEvent:
    values: dict = {
        "id": "series-1",
        "series_id": "series-1",
        "title": "Weekly sync",
        "start": datetime(2024, 3, 4, 14, 0, tzinfo=timezone.utc),
        "end": datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc),
        "recurrence_rule": "FREQ=WEEKLY;COUNT=3",
        "source_timezone": "America/New_York",
    }
    values.update(overrides)
    return FeedEvent(**values)


@pytest.fixture
def expander() -> RRuleExpander:
    return RRuleExpander()


class TestRRuleExpansion:
    """Test expansion of recurring definitions."""

    @pytest.mark.critical_path
    def test_weekly_series_expands_to_distinct_occurrences(self, expander: RRuleExpander) -> None:
        """Test three weekly occurrences with distinct ids and no rule."""
        occurrences = expander.expand(weekly_event(), WINDOW_START, WINDOW_END)

        assert len(occurrences) == 3
        assert len({o.id for o in occurrences}) == 3
        assert all(o.recurrence_rule is None for o in occurrences)
        assert all(o.series_id == "series-1" for o in occurrences)
        assert all(o.id.startswith("series-1-") for o in occurrences)

    def test_occurrences_keep_local_time_across_dst(self, expander: RRuleExpander) -> None:
        """Test that 09:00 New York stays 09:00 after the DST switch."""
        occurrences = expander.expand(weekly_event(), WINDOW_START, WINDOW_END)

        assert [o.start for o in occurrences] == [
            datetime(2024, 3, 4, 14, 0, tzinfo=timezone.utc),
            datetime(2024, 3, 11, 13, 0, tzinfo=timezone.utc),
            datetime(2024, 3, 18, 13, 0, tzinfo=timezone.utc),
        ]

    def test_occurrence_end_keeps_duration(self, expander: RRuleExpander) -> None:
        """Test that each occurrence ends start + original duration."""
        occurrences = expander.expand(weekly_event(), WINDOW_START, WINDOW_END)
        assert all(o.end - o.start == timedelta(hours=1) for o in occurrences)

    def test_occurrence_start_is_recorded(self, expander: RRuleExpander) -> None:
        """Test that series and occurrence instant are separate fields."""
        occurrences = expander.expand(weekly_event(), WINDOW_START, WINDOW_END)
        assert all(o.occurrence_start == o.start for o in occurrences)

    def test_occurrences_keep_transparency(self, expander: RRuleExpander) -> None:
        """Test that a free series expands to free occurrences."""
        event = weekly_event(transparency=Transparency.TRANSPARENT)
        occurrences = expander.expand(event, WINDOW_START, WINDOW_END)
        assert occurrences
        assert all(o.busy_status == "free" for o in occurrences)

    def test_window_bounds_are_inclusive(self, expander: RRuleExpander) -> None:
        """Test an occurrence exactly on the window end."""
        end = datetime(2024, 3, 11, 13, 0, tzinfo=timezone.utc)
        occurrences = expander.expand(weekly_event(), WINDOW_START, end)
        assert len(occurrences) == 2

    def test_non_recurring_event_unchanged(self, expander: RRuleExpander) -> None:
        """Test that events without a rule are returned as is."""
        event = weekly_event(recurrence_rule=None)
        assert expander.expand(event, WINDOW_START, WINDOW_END) == [event]

    def test_invalid_rule_degrades_to_single_event(self, expander: RRuleExpander) -> None:
        """Test that an unparseable rule yields the base event without its rule."""
        event = weekly_event(recurrence_rule="FREQ=SOMETIMES;BYDAY=XX")
        result = expander.expand(event, WINDOW_START, WINDOW_END)

        assert len(result) == 1
        assert result[0].id == "series-1"
        assert result[0].recurrence_rule is None

    def test_exdate_removes_occurrence(self, expander: RRuleExpander) -> None:
        """Test EXDATE exclusion."""
        event = weekly_event(exdates=[datetime(2024, 3, 11, 13, 0, tzinfo=timezone.utc)])
        occurrences = expander.expand(event, WINDOW_START, WINDOW_END)
        assert [o.start.day for o in occurrences] == [4, 18]

    def test_max_occurrences_cap(self) -> None:
        """Test the configured occurrence cap."""

        class Settings:
            rrule_max_occurrences = 5
            default_timezone = "UTC"

        event = weekly_event(recurrence_rule="FREQ=DAILY")
        occurrences = RRuleExpander(Settings()).expand(event, WINDOW_START, WINDOW_END)
        assert len(occurrences) == 5


class TestExpandAll:
    """Test feed-level expansion."""

    @pytest.mark.critical_path
    def test_expansion_is_idempotent(self, expander: RRuleExpander) -> None:
        """Test that parsing and expanding twice yields identical identity keys."""

        def keys() -> set[str]:
            events = expander.expand_all(ICSParser().parse(MIXED_FEED), WINDOW_START, WINDOW_END)
            return {identity_key(e.id, e.start) for e in events}

        first = keys()
        assert first == keys()
        assert len(first) == 5

    def test_override_replaces_generated_slot(self, expander: RRuleExpander) -> None:
        """Test that a RECURRENCE-ID override replaces its occurrence."""
        override = """
BEGIN:VEVENT
UID:series-1
RECURRENCE-ID:20240311T130000Z
DTSTART:20240311T150000Z
DTEND:20240311T160000Z
SUMMARY:Moved
END:VEVENT
"""
        feed = WEEKLY_FEED.replace(
            "END:VCALENDAR", override.strip().replace("\n", "\r\n") + "\r\nEND:VCALENDAR"
        )
        events = expander.expand_all(ICSParser().parse(feed), WINDOW_START, WINDOW_END)

        assert len(events) == 3
        moved = [e for e in events if e.title == "Moved"]
        assert len(moved) == 1
        assert moved[0].id == "series-1-1710162000000"
        assert moved[0].start == datetime(2024, 3, 11, 15, 0, tzinfo=timezone.utc)

    def test_single_events_outside_window_dropped(self, expander: RRuleExpander) -> None:
        """Test that single events outside the window are not returned."""
        events = ICSParser().parse(calendar(EVT_1))
        later = expander.expand_all(
            events,
            datetime(2024, 5, 1, tzinfo=timezone.utc),
            datetime(2024, 6, 1, tzinfo=timezone.utc),
        )
        assert later == []
