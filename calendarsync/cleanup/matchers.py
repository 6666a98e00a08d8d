"""Duplicate matchers used by the cleanup analyzer.

Matchers run in precedence order (exact, fuzzy, pattern) and an event claimed
by one group is never offered to a later matcher, so every event belongs to at
most one group.
"""

import logging
import math
import re
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from difflib import SequenceMatcher
from typing import Optional

from ..config.settings import CleanupPatternRule, CleanupSettings
from ..confidence import CleanupConfidence
from .models import DuplicateGroup, MatchType, StoredEvent

logger = logging.getLogger(__name__)

EXACT_CONFIDENCE = 100
FUZZY_CONFIDENCE_CAP = 99
PATTERN_CONFIDENCE = 95

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_MISSING_CREATED = datetime.max.replace(tzinfo=timezone.utc)


def normalize_title(title: Optional[str]) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    if not title:
        return ""
    cleaned = _NON_WORD.sub(" ", title.lower())
    return _WHITESPACE.sub(" ", cleaned).strip()


def title_similarity(first: Optional[str], second: Optional[str]) -> float:
    """Similarity ratio (0-1) of two normalized titles."""
    return SequenceMatcher(None, normalize_title(first), normalize_title(second)).ratio()


def choose_primary(
    events: Iterable[StoredEvent], preserve_newest: bool = False
) -> tuple[StoredEvent, list[StoredEvent]]:
    """Pick the event to keep.

    The oldest-created event is kept by default, the newest with
    ``preserve_newest``. Events without a creation time are never preferred and
    ties fall back to the event id.
    """
    members = list(events)
    if preserve_newest:
        ordered = sorted(
            members,
            key=lambda e: (e.created is None, -(e.created.timestamp() if e.created else 0), e.id),
        )
    else:
        ordered = sorted(members, key=lambda e: (e.created or _MISSING_CREATED, e.id))
    return ordered[0], ordered[1:]


class DuplicateMatcher:
    """Groups target events that represent the same logical occurrence."""

    def __init__(self, settings: Optional[CleanupSettings] = None):
        self.settings = settings or CleanupSettings()
        self._patterns = [(rule, re.compile(rule.regex)) for rule in self.settings.patterns]

    def find_groups(
        self,
        calendar_id: str,
        events: list[StoredEvent],
        preserve_newest: Optional[bool] = None,
    ) -> list[DuplicateGroup]:
        """Run all matchers over one calendar's events."""
        if preserve_newest is None:
            preserve_newest = self.settings.preserve_newest

        claimed: set[str] = set()
        groups: list[DuplicateGroup] = []
        for finder in (self._exact_groups, self._fuzzy_groups, self._pattern_groups):
            available = [event for event in events if event.id not in claimed]
            for match_type, confidence, members, reason in finder(available):
                primary, duplicates = choose_primary(members, preserve_newest)
                groups.append(
                    DuplicateGroup(
                        group_id=DuplicateGroup.make_id(calendar_id, [m.id for m in members]),
                        calendar_id=calendar_id,
                        match_type=match_type,
                        confidence=CleanupConfidence(percent=confidence),
                        primary=primary,
                        duplicates=duplicates,
                        reason=reason,
                    )
                )
                claimed.update(member.id for member in members)

        logger.debug(f"Found {len(groups)} duplicate groups among {len(events)} events in {calendar_id}")
        return groups

    def _exact_groups(self, events: list[StoredEvent]):
        buckets: dict[tuple[str, datetime], list[StoredEvent]] = {}
        for event in events:
            if event.start is None:
                continue
            buckets.setdefault((normalize_title(event.title), event.start), []).append(event)

        for (title, start), members in buckets.items():
            if len(members) > 1:
                yield (
                    MatchType.EXACT,
                    EXACT_CONFIDENCE,
                    members,
                    f"same title {title!r} at {start.isoformat()}",
                )

    def _fuzzy_groups(self, events: list[StoredEvent]):
        threshold = self.settings.fuzzy_similarity_threshold
        tolerance = timedelta(minutes=self.settings.fuzzy_time_tolerance_minutes)
        timed = sorted((e for e in events if e.start is not None), key=lambda e: (e.start, e.id))
        used: set[str] = set()

        for i, anchor in enumerate(timed):
            if anchor.id in used:
                continue
            cluster = [anchor]
            lowest = 1.0
            for candidate in timed[i + 1 :]:
                if candidate.start - anchor.start > tolerance:
                    break
                if candidate.id in used:
                    continue
                scores = [title_similarity(member.title, candidate.title) for member in cluster]
                if min(scores) >= threshold:
                    cluster.append(candidate)
                    lowest = min(lowest, *scores)

            if len(cluster) > 1:
                used.update(member.id for member in cluster)
                yield (
                    MatchType.FUZZY,
                    min(FUZZY_CONFIDENCE_CAP, math.floor(lowest * 100)),
                    cluster,
                    f"similar titles ({lowest:.2f}) within {tolerance}",
                )

    def _pattern_groups(self, events: list[StoredEvent]):
        used: set[str] = set()
        for rule, regex in self._patterns:
            buckets: dict[str, list[StoredEvent]] = {}
            for event in events:
                if event.id in used:
                    continue
                value = self._pattern_value(rule, regex, event)
                if value:
                    buckets.setdefault(value, []).append(event)

            for value, members in buckets.items():
                if len(members) > 1:
                    used.update(member.id for member in members)
                    yield (
                        MatchType.PATTERN,
                        PATTERN_CONFIDENCE,
                        members,
                        f"pattern {rule.name!r} matched {value!r}",
                    )

    @staticmethod
    def _pattern_value(
        rule: CleanupPatternRule, regex: "re.Pattern[str]", event: StoredEvent
    ) -> Optional[str]:
        for field_name in rule.fields:
            text = event.title if field_name in ("title", "summary") else event.description
            match = regex.search(text or "")
            if match:
                value = match.group(1) if regex.groups else match.group(0)
                return value.strip() if value else None
        return None
