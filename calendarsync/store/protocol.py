"""Protocol definition for target calendar stores."""

from datetime import datetime
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class CalendarStore(Protocol):
    """Protocol for a writable calendar the sync engine reconciles into.

    Events are plain dictionaries shaped like Google Calendar API event
    resources (``id``, ``summary``, ``description``, ``start``/``end`` with
    ``dateTime`` or ``date``, ``created``, ``attendees``, ...). Implementations
    must return descriptions verbatim so the ``Original UID`` marker survives a
    round trip.

    Every method may raise :class:`~calendarsync.store.exceptions.StoreError`.
    """

    async def list_events(
        self, calendar_id: str, time_min: datetime, time_max: datetime
    ) -> list[dict[str, Any]]:
        """List single (expanded) events overlapping ``[time_min, time_max]``."""
        ...

    async def create_event(self, calendar_id: str, body: dict[str, Any]) -> str:
        """Create an event and return its external id."""
        ...

    async def update_event(self, calendar_id: str, event_id: str, body: dict[str, Any]) -> None:
        """Replace an existing event."""
        ...

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event."""
        ...
