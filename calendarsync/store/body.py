"""Build target store event bodies from feed events."""

from typing import Any, Optional

from ..ics.models import EventStatus, FeedEvent, PrivacyLevel
from ..sync.identity import append_marker
from ..timezone import TimezoneService

BUSY_FREE_STATUS_LABEL = "Busy/Free Status:"


def _busy_free_description(event: FeedEvent, privacy_level: PrivacyLevel) -> str:
    details = event.description if privacy_level == PrivacyLevel.FULL_DETAILS else ""
    return f"{details}\n\n{BUSY_FREE_STATUS_LABEL} {event.busy_status}".strip()


def build_event_body(
    event: FeedEvent,
    target_timezone: Optional[str] = None,
    privacy_level: Optional[PrivacyLevel] = None,
) -> dict[str, Any]:
    """Build a Google-shaped event resource for ``event``.

    Start and end are always written as ``dateTime`` instants (all-day events
    included) so the existing-event index can key them on the next run. The
    description carries the ``Original UID`` marker.

    ``privacy_level`` turns the body into a busy/free projection. Every level
    adds a ``Busy/Free Status`` line ahead of the marker:

    * ``busy_only``: title becomes ``Busy`` or ``Free``, description and location dropped
    * ``show_free_busy``: source title kept, description and location dropped
    * ``full_details``: source title, description and location kept
    """
    start: dict[str, Any] = {"dateTime": TimezoneService.format_instant(event.start)}
    end: dict[str, Any] = {"dateTime": TimezoneService.format_instant(event.end)}
    if target_timezone:
        start["timeZone"] = target_timezone
        end["timeZone"] = target_timezone

    summary = event.title
    description = event.description
    location = event.location
    if privacy_level is not None:
        description = _busy_free_description(event, privacy_level)
        if privacy_level == PrivacyLevel.BUSY_ONLY:
            summary = event.busy_status.capitalize()
        if privacy_level != PrivacyLevel.FULL_DETAILS:
            location = ""

    return {
        "summary": summary,
        "description": append_marker(description, event.id),
        "location": location,
        "start": start,
        "end": end,
        "status": "cancelled" if event.status == EventStatus.CANCELLED else "confirmed",
        "transparency": event.transparency.value.lower(),
    }
