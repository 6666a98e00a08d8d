"""Duplicate/conflict resolver for the sync path."""

import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from typing import Optional

from ..confidence import SyncConfidence
from ..ics.models import FeedEvent
from .identity import identity_key, is_occurrence_id
from .models import ExistingEventIndex, ExistingEventRecord, Resolution, SyncAction

logger = logging.getLogger(__name__)

EXACT_MATCH_SCORE = 1.0
DRIFT_MATCH_SCORE = 0.85
NEW_EVENT_SCORE = 1.0
DEGRADED_SCORE = 0.0


@dataclass
class ResolutionContext:
    """Run-scoped state shared by consecutive ``resolve`` calls.

    ``run_keys`` holds every identity key of the run so a drift match never
    steals a target event that another event of the run matches exactly.
    ``run_ids`` holds every source id of the run; a target event written for
    another live event is never a drift candidate. ``claimed_ids`` collects
    external ids already assigned to an event.
    """

    run_keys: Collection[str] = field(default_factory=frozenset)
    run_ids: Collection[str] = field(default_factory=frozenset)
    claimed_ids: set[str] = field(default_factory=set)


class DuplicateResolver:
    """Decides create/update for one event against the run's index snapshot.

    Confidence here is informational only; it is logged and recorded but never
    changes the action.
    """

    def resolve(
        self,
        event: FeedEvent,
        index: ExistingEventIndex,
        context: Optional[ResolutionContext] = None,
    ) -> Resolution:
        """Resolve one event.

        * exact key in the index -> ``update`` (1.0)
        * same series at another instant -> ``update`` (0.85, recurrence-instance drift)
        * nothing related -> ``create`` (1.0)
        * lookup failure -> ``create`` (0.0) with the error in the reason
        """
        context = context or ResolutionContext()
        key = identity_key(event.id, event.start)

        try:
            existing_id = index.get(key)
            if existing_id is not None:
                return Resolution(
                    action=SyncAction.UPDATE,
                    reason="exact identity match",
                    confidence=SyncConfidence(score=EXACT_MATCH_SCORE),
                    existing_id=existing_id,
                )

            candidate = self._drift_candidate(event, key, index, context)
        except Exception as e:
            logger.exception(f"Index lookup failed for {key}, creating instead")
            return Resolution(
                action=SyncAction.CREATE,
                reason=f"index lookup failed: {e}",
                confidence=SyncConfidence(score=DEGRADED_SCORE),
            )

        if candidate is not None:
            return Resolution(
                action=SyncAction.UPDATE,
                reason=(
                    "probable recurrence-instance drift: series "
                    f"{event.series_id!r} already synced at {candidate.start.isoformat()}"
                ),
                confidence=SyncConfidence(score=DRIFT_MATCH_SCORE),
                existing_id=candidate.external_id,
            )

        return Resolution(
            action=SyncAction.CREATE,
            reason="no related event in target calendar",
            confidence=SyncConfidence(score=NEW_EVENT_SCORE),
        )

    @staticmethod
    def _drift_candidate(
        event: FeedEvent,
        key: str,
        index: ExistingEventIndex,
        context: ResolutionContext,
    ) -> Optional[ExistingEventRecord]:
        """Nearest unclaimed record of the same event or series at a different instant.

        A record is related when it was written for this very source id, or when
        both the event and the record carry derived occurrence ids of the same
        series.
        """
        is_occurrence = is_occurrence_id(event.id, event.series_id)
        candidates = [
            record
            for record in index.series(event.series_id)
            if (
                record.source_id == event.id
                or (
                    is_occurrence
                    and record.source_id not in context.run_ids
                    and is_occurrence_id(record.source_id, event.series_id)
                )
            )
            and record.key != key
            and record.key not in context.run_keys
            and record.external_id not in context.claimed_ids
        ]
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda record: (abs((record.start - event.start).total_seconds()), record.external_id),
        )
