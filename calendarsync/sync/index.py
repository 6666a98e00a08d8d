"""Existing-event index builder."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

from ..store.exceptions import StoreError
from ..store.protocol import CalendarStore
from ..timezone import TimezoneError, TimezoneService
from .exceptions import IndexBuildError
from .identity import extract_source_uid, identity_key, split_occurrence_id
from .models import ExistingEventIndex, ExistingEventRecord

logger = logging.getLogger(__name__)


def record_from_event(event: dict[str, Any]) -> Optional[ExistingEventRecord]:
    """Build an index record from a raw target event.

    Returns ``None`` for events that are not dedup candidates: no id, no
    ``Original UID`` marker, or no ``start.dateTime``.
    """
    external_id = event.get("id")
    start_value = (event.get("start") or {}).get("dateTime")
    source_id = extract_source_uid(event.get("description"))
    if not external_id or not start_value or not source_id:
        return None

    try:
        start = TimezoneService.parse_instant(start_value)
    except TimezoneError:
        logger.debug(f"Ignoring event {external_id} with unparseable start {start_value!r}")
        return None

    series_id, _ = split_occurrence_id(source_id)
    return ExistingEventRecord(
        external_id=str(external_id),
        source_id=source_id,
        series_id=series_id,
        start=start,
        key=identity_key(source_id, start),
    )


class IndexBuilder:
    """Scans a target calendar window and builds an :class:`ExistingEventIndex`."""

    def __init__(self, store: CalendarStore, timeout: Optional[float] = None):
        self.store = store
        self.timeout = timeout

    async def build(
        self, calendar_id: str, window_start: datetime, window_end: datetime
    ) -> ExistingEventIndex:
        """Build a fresh index for the window.

        Raises:
            IndexBuildError: If the target events cannot be listed.
        """
        try:
            raw_events = await asyncio.wait_for(
                self.store.list_events(calendar_id, window_start, window_end), self.timeout
            )
        except asyncio.TimeoutError as e:
            raise IndexBuildError(
                f"Listing events in {calendar_id} timed out after {self.timeout}s"
            ) from e
        except StoreError as e:
            raise IndexBuildError(f"Failed to list events in {calendar_id}: {e.message}") from e

        records = []
        for raw in raw_events:
            record = record_from_event(raw)
            if record is not None:
                records.append(record)

        index = ExistingEventIndex(calendar_id, window_start, window_end, records)
        logger.info(
            f"Indexed {len(index)} synced events out of {len(raw_events)} in {calendar_id}"
        )
        if index.duplicate_count:
            logger.warning(
                f"{index.duplicate_count} target events share an identity key; "
                "run the duplicate cleanup to remove them"
            )
        return index
