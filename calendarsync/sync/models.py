"""Data models for reconciliation runs."""

import uuid
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from ..confidence import SyncConfidence
from ..utils.helpers import utc_now


class SyncState(str, Enum):
    """Lifecycle of one reconciliation run."""

    IDLE = "idle"
    FETCHING_SOURCE = "fetching_source"
    BUILDING_INDEX = "building_index"
    RECONCILING = "reconciling"
    APPLYING = "applying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncState.COMPLETED, SyncState.FAILED)


class SyncAction(str, Enum):
    """What the resolver decided to do with one event."""

    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


class ExistingEventRecord(BaseModel):
    """A target event that carries the source-UID marker."""

    external_id: str
    source_id: str
    series_id: str
    start: datetime
    key: str

    model_config = ConfigDict(frozen=True)


class ExistingEventIndex:
    """Immutable identity-key snapshot of the target calendar for one run.

    Lookup by key is O(1); series lookup returns every record whose source id
    is, or derives from, the given series id.
    """

    def __init__(
        self,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
        records: list[ExistingEventRecord],
    ):
        self.calendar_id = calendar_id
        self.window_start = window_start
        self.window_end = window_end

        by_key: dict[str, ExistingEventRecord] = {}
        by_series: dict[str, list[ExistingEventRecord]] = {}
        for record in records:
            # First record wins; later ones with the same key are target-side duplicates
            by_key.setdefault(record.key, record)
            by_series.setdefault(record.series_id, []).append(record)
            if record.source_id != record.series_id:
                by_series.setdefault(record.source_id, []).append(record)

        self._by_key: Mapping[str, ExistingEventRecord] = MappingProxyType(by_key)
        self._by_series: Mapping[str, tuple[ExistingEventRecord, ...]] = MappingProxyType(
            {series: tuple(items) for series, items in by_series.items()}
        )
        self.duplicate_count = len(records) - len(by_key)

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def get(self, key: str) -> Optional[str]:
        """External id for ``key``, if present."""
        record = self._by_key.get(key)
        return record.external_id if record else None

    def record(self, key: str) -> Optional[ExistingEventRecord]:
        return self._by_key.get(key)

    def series(self, series_id: str) -> tuple[ExistingEventRecord, ...]:
        """Records whose source id is ``series_id`` or one of its occurrence ids."""
        return self._by_series.get(series_id, ())

    @property
    def keys(self) -> Mapping[str, str]:
        """Read-only ``key -> external id`` view."""
        return MappingProxyType({key: rec.external_id for key, rec in self._by_key.items()})


class Resolution(BaseModel):
    """Resolver decision for one event."""

    action: SyncAction
    reason: str
    confidence: SyncConfidence
    existing_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PlannedAction(BaseModel):
    """One entry of a run's reconciliation plan."""

    position: int
    key: str
    event_id: str
    title: str
    resolution: Resolution


class SyncErrorEntry(BaseModel):
    """A failure recorded in a run result."""

    message: str
    key: Optional[str] = None
    action: Optional[SyncAction] = None
    error_type: Optional[str] = None
    status_code: Optional[int] = None


class SyncRunResult(BaseModel):
    """Outcome of one reconciliation run; appended to the run log."""

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sync_id: str
    calendar_id: str
    state: SyncState = SyncState.IDLE

    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_skipped: int = 0
    duplicates_resolved: int = 0

    errors: list[SyncErrorEntry] = Field(default_factory=list)
    success: bool = False
    duration_ms: int = 0

    @field_serializer("started_at", "finished_at", "window_start", "window_end")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime as ISO string."""
        return value.isoformat() if value else None

    @property
    def error_messages(self) -> list[str]:
        return [entry.message for entry in self.errors]
