"""Identity keys and the source-UID description marker.

Everything in this module is pure: the same inputs always produce the same
output, independent of call order, locale or the host timezone.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..timezone import TimezoneService, ensure_utc

SOURCE_UID_MARKER = "Original UID:"
# First line after the marker only; trailing lines in the description are ignored
SOURCE_UID_PATTERN = r"Original UID:[ \t]*([^\r\n]+)"

_SOURCE_UID_RE = re.compile(SOURCE_UID_PATTERN)
_MARKER_LINE_RE = re.compile(r"[ \t]*Original UID:[^\r\n]*(\r?\n)?")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_OCCURRENCE_SUFFIX_RE = re.compile(r"^(?P<series>.+)-(?P<millis>-?\d{10,})$")


def identity_key(source_id: str, start: datetime) -> str:
    """Build the identity key ``"<id>:<UTC ISO-8601 start with milliseconds>"``.

    Naive datetimes are taken to be UTC.

    >>> identity_key("evt-1", datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc))
    'evt-1:2024-03-01T10:00:00.000Z'
    """
    return f"{source_id}:{TimezoneService.format_instant(start)}"


def epoch_millis(instant: datetime) -> int:
    """Milliseconds since the Unix epoch, computed without float rounding."""
    return (ensure_utc(instant) - _EPOCH) // timedelta(milliseconds=1)


def occurrence_id(series_id: str, instant: datetime) -> str:
    """Derived id of one occurrence of a recurring series."""
    return f"{series_id}-{epoch_millis(instant)}"


def split_occurrence_id(event_id: str) -> tuple[str, Optional[datetime]]:
    """Split a derived occurrence id back into ``(series_id, occurrence_instant)``.

    Ids that do not carry an epoch-millisecond suffix, or whose suffix would
    not be produced by :func:`occurrence_id` (leading zeros), are returned whole
    with ``None`` as the instant. A plain UID that happens to end in
    ``-<epoch ms>`` still splits; callers match such ids on the whole source id
    first.
    """
    match = _OCCURRENCE_SUFFIX_RE.match(event_id)
    if not match:
        return event_id, None
    series_id = match.group("series")
    try:
        instant = _EPOCH + timedelta(milliseconds=int(match.group("millis")))
    except OverflowError:
        return event_id, None
    if occurrence_id(series_id, instant) != event_id:
        return event_id, None
    return series_id, instant


def is_occurrence_id(event_id: str, series_id: str) -> bool:
    """Check whether ``event_id`` is a derived occurrence id of ``series_id``."""
    split_series, instant = split_occurrence_id(event_id)
    return instant is not None and split_series == series_id


def extract_source_uid(description: Optional[str]) -> Optional[str]:
    """Extract the source UID embedded in a target event description.

    Returns ``None`` when there is no marker or the marker is empty.
    """
    if not description:
        return None
    match = _SOURCE_UID_RE.search(description)
    if not match:
        return None
    source_uid = match.group(1).strip()
    return source_uid or None


def strip_marker(description: Optional[str]) -> str:
    """Remove any marker line from ``description``."""
    if not description:
        return ""
    return _MARKER_LINE_RE.sub("", description).strip()


def append_marker(description: Optional[str], source_id: str) -> str:
    """Return ``description`` with exactly one trailing ``Original UID`` marker."""
    body = strip_marker(description)
    return f"{body}\n\n{SOURCE_UID_MARKER} {source_id}".strip()
