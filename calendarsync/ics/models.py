"""Data models for ICS feed processing."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from ..timezone import ensure_utc


class EventStatus(str, Enum):
    """VEVENT STATUS values."""

    CONFIRMED = "CONFIRMED"
    TENTATIVE = "TENTATIVE"
    CANCELLED = "CANCELLED"



class Transparency(str, Enum):
    """VEVENT TRANSP values; transparent events do not block time."""

    OPAQUE = "OPAQUE"
    TRANSPARENT = "TRANSPARENT"


class PrivacyLevel(str, Enum):
    """How much of a source event a busy/free sync copies to the target."""

    BUSY_ONLY = "busy_only"
    SHOW_FREE_BUSY = "show_free_busy"
    FULL_DETAILS = "full_details"


class FeedEvent(BaseModel):
    """A normalized event read from a source feed.

    ``start`` and ``end`` are always timezone-aware UTC instants. A definition
    straight out of the parser may carry a ``recurrence_rule``; expanded
    occurrences never do. ``series_id`` is the source UID the event belongs to and
    ``occurrence_start`` the original slot of an expanded occurrence, so series
    consumers never need to split ``id``.
    """

    id: str = Field(..., description="Unique id; derived per occurrence after expansion")
    series_id: str = Field(..., description="Source UID of the series/definition")
    occurrence_start: Optional[datetime] = Field(
        default=None, description="Original slot of an expanded or overriding occurrence"
    )

    title: str = Field(default="No Title")
    description: str = Field(default="")
    location: str = Field(default="")

    start: datetime
    end: datetime
    is_all_day: bool = False

    recurrence_rule: Optional[str] = Field(default=None, description="RRULE value, unexpanded")
    exdates: list[datetime] = Field(default_factory=list, description="Excluded instants")
    recurrence_id: Optional[datetime] = Field(
        default=None, description="RECURRENCE-ID of an overriding instance"
    )

    status: EventStatus = EventStatus.CONFIRMED
    transparency: Transparency = Transparency.OPAQUE
    source_timezone: Optional[str] = Field(
        default=None, description="Timezone label declared by the feed"
    )

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    @field_validator("start", "end", "occurrence_start", "recurrence_id")
    @classmethod
    def _normalize_instant(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)

    @field_validator("exdates")
    @classmethod
    def _normalize_exdates(cls, value: list[datetime]) -> list[datetime]:
        return [ensure_utc(dt) for dt in value]

    @field_serializer("start", "end", "occurrence_start", "recurrence_id")
    def serialize_instant(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize instants as ISO strings."""
        return value.isoformat() if value else None

    @property
    def duration(self) -> timedelta:
        """Event duration (never negative)."""
        return max(self.end - self.start, timedelta(0))

    @property
    def is_recurring(self) -> bool:
        """Check if the event is an unexpanded recurring definition."""
        return bool(self.recurrence_rule)

    @property
    def is_override(self) -> bool:
        """Check if the event overrides one occurrence of a series."""
        return self.recurrence_id is not None

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED

    @property
    def busy_status(self) -> str:
        """``"free"`` for transparent events, ``"busy"`` otherwise."""
        return "free" if self.transparency == Transparency.TRANSPARENT else "busy"


class ICSResponse(BaseModel):
    """Response from a feed fetch operation."""

    success: bool
    content: Optional[str] = None
    status_code: Optional[int] = None
    headers: dict[str, str] = Field(default_factory=dict)
    error_message: Optional[str] = None
    fetch_time: datetime = Field(default_factory=datetime.now)

    etag: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def content_length(self) -> Optional[int]:
        """Get content length if available."""
        if self.content:
            return len(self.content.encode("utf-8"))
        return None
