"""Data models for duplicate cleanup, backup and restore."""

import hashlib
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from ..confidence import CleanupConfidence
from ..timezone import TimezoneError, TimezoneService
from ..utils.helpers import utc_now


class MatchType(str, Enum):
    """Matcher that produced a duplicate group, in precedence order."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    PATTERN = "pattern"


class CleanupMode(str, Enum):
    PREVIEW = "preview"
    APPLY = "apply"


class OperationKind(str, Enum):
    CLEANUP = "cleanup"
    RESTORE = "restore"


class OperationStatus(str, Enum):
    """Lifecycle of a cleanup/restore operation."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != OperationStatus.RUNNING


def _compile_check(pattern: str) -> str:
    try:
        re.compile(pattern)
    except re.error as e:
        raise ValueError(f"invalid regular expression {pattern!r}: {e}") from e
    return pattern


def _parse_google_time(value: Optional[dict[str, Any]]) -> Optional[datetime]:
    if not value:
        return None
    raw = value.get("dateTime") or value.get("date")
    if not raw:
        return None
    try:
        return TimezoneService.parse_instant(raw)
    except TimezoneError:
        return None


def _parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return TimezoneService.parse_instant(raw)
    except TimezoneError:
        return None


class StoredEvent(BaseModel):
    """A target calendar event as seen by the cleanup analyzer."""

    id: str
    calendar_id: str
    title: str = ""
    description: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    created: Optional[datetime] = None
    attendee_count: int = 0
    raw: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_raw(cls, calendar_id: str, raw: dict[str, Any]) -> "StoredEvent":
        """Build from a Google-shaped event resource."""
        return cls(
            id=str(raw.get("id", "")),
            calendar_id=calendar_id,
            title=str(raw.get("summary") or ""),
            description=str(raw.get("description") or ""),
            start=_parse_google_time(raw.get("start")),
            end=_parse_google_time(raw.get("end")),
            created=_parse_timestamp(raw.get("created")),
            attendee_count=len(raw.get("attendees") or []),
            raw=raw,
        )

    @property
    def has_attendees(self) -> bool:
        return self.attendee_count > 0


class DuplicateGroup(BaseModel):
    """One primary event to keep plus the duplicates judged to be the same event."""

    group_id: str
    calendar_id: str
    match_type: MatchType
    confidence: CleanupConfidence
    primary: StoredEvent
    duplicates: list[StoredEvent]
    reason: str = ""

    @staticmethod
    def make_id(calendar_id: str, event_ids: list[str]) -> str:
        """Deterministic group id from the member events."""
        digest = hashlib.sha1(f"{calendar_id}|{'|'.join(sorted(event_ids))}".encode("utf-8"))
        return digest.hexdigest()[:12]

    @property
    def members(self) -> list[StoredEvent]:
        return [self.primary, *self.duplicates]


class CleanupFilters(BaseModel):
    """Narrow which groups an analysis reports."""

    date_start: Optional[datetime] = None
    date_end: Optional[datetime] = None
    title_patterns: list[str] = Field(
        default_factory=list, description="Case-insensitive substrings; any must match"
    )
    description_patterns: list[str] = Field(
        default_factory=list, description="Case-insensitive substrings; any must match"
    )
    include_pattern: Optional[str] = Field(
        default=None, description="Regex over title/description that must match"
    )
    exclude_pattern: Optional[str] = Field(
        default=None, description="Regex over title/description that must not match"
    )
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None

    @field_validator("include_pattern", "exclude_pattern")
    @classmethod
    def _check_pattern(cls, value: Optional[str]) -> Optional[str]:
        return _compile_check(value) if value else value


class CleanupOptions(BaseModel):
    """Execution options; ``None`` falls back to the configured cleanup settings."""

    mode: CleanupMode = CleanupMode.PREVIEW
    group_ids: Optional[list[str]] = None
    max_deletions: Optional[int] = None
    skip_with_attendees: Optional[bool] = None
    create_backup: Optional[bool] = None
    preserve_newest: Optional[bool] = None
    skip_patterns: list[str] = Field(
        default_factory=list, description="Regexes; matching groups are never touched"
    )
    filters: Optional[CleanupFilters] = None

    @field_validator("skip_patterns")
    @classmethod
    def _check_skip_patterns(cls, value: list[str]) -> list[str]:
        return [_compile_check(pattern) for pattern in value]


class AnalysisReport(BaseModel):
    """Summary of one analysis."""

    total_events: int
    groups: list[DuplicateGroup]
    exact_groups: int = 0
    fuzzy_groups: int = 0
    pattern_groups: int = 0
    deletable_duplicates: int = 0


class CleanupOperation(BaseModel):
    """Tracked lifecycle record of one cleanup or restore run."""

    operation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: OperationKind = OperationKind.CLEANUP
    mode: CleanupMode = CleanupMode.PREVIEW
    status: OperationStatus = OperationStatus.RUNNING
    calendar_ids: list[str] = Field(default_factory=list)
    backup_id: Optional[str] = None
    source_operation_id: Optional[str] = None
    deleted_count: int = 0
    restored_count: int = 0
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @field_serializer("created_at", "updated_at", "completed_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime as ISO string."""
        return value.isoformat() if value else None


class BackupEntry(BaseModel):
    """One event captured before deletion."""

    entry_id: Optional[int] = None
    backup_id: str
    calendar_id: str
    event_id: str
    event: dict[str, Any]
    restored_event_id: Optional[str] = None
    restored_at: Optional[datetime] = None

    @property
    def is_restored(self) -> bool:
        return self.restored_event_id is not None


class CleanupResult(BaseModel):
    """Outcome of a cleanup execution."""

    operation_id: str
    mode: CleanupMode
    status: OperationStatus
    groups_processed: int = 0
    deleted_count: int = 0
    would_delete: int = 0
    skipped_count: int = 0
    deleted_event_ids: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    backup_id: Optional[str] = None
    duration_ms: int = 0


class RestoreResult(BaseModel):
    """Outcome of a restore."""

    operation_id: str
    source_operation_id: str
    status: OperationStatus
    restored_count: int = 0
    already_restored: int = 0
    failed_count: int = 0
    restored_event_ids: dict[str, str] = Field(
        default_factory=dict, description="Backed-up event id -> recreated event id"
    )
    errors: list[str] = Field(default_factory=list)
