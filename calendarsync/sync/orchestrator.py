"""Reconciliation run: fetch, expand, index, resolve, apply, record."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from ..confidence import SyncConfidence
from ..ics.exceptions import ICSFetchError
from ..ics.fetcher import ICSFetcher
from ..ics.models import FeedEvent
from ..ics.parser import ICSParser
from ..ics.rrule_expander import RRuleExpander
from ..runlog.exceptions import RunLogError
from ..store.body import build_event_body
from ..store.exceptions import StoreError, StoreTimeoutError
from ..store.protocol import CalendarStore
from ..utils.helpers import format_duration, utc_now
from .exceptions import ApplyError, IndexBuildError, SyncAbortedError, SyncError
from .identity import identity_key
from .index import IndexBuilder
from .models import (
    ExistingEventIndex,
    PlannedAction,
    Resolution,
    SyncAction,
    SyncErrorEntry,
    SyncRunResult,
    SyncState,
)
from .resolver import DuplicateResolver, ResolutionContext
from .scheduling import Scheduler

if TYPE_CHECKING:
    from ..config.settings import SyncSettings
    from ..runlog.database import RunLogDatabase

logger = logging.getLogger(__name__)

SOURCE_DUPLICATE_REASON = "duplicate occurrence in source feed"


class SyncOrchestrator:
    """Runs one source feed into one target calendar.

    The existing-event index is built once per run and every event of the run
    is resolved against that snapshot, so an identity key is created at most
    once per run. Apply failures are recorded per event and never stop the
    remaining events. Failures before the index exists abort the run before
    any mutation.
    """

    def __init__(
        self,
        settings: "SyncSettings",
        fetcher: ICSFetcher,
        store: CalendarStore,
        run_log: Optional["RunLogDatabase"] = None,
        parser: Optional[ICSParser] = None,
        expander: Optional[RRuleExpander] = None,
        resolver: Optional[DuplicateResolver] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize orchestrator.

        Args:
            settings: Application settings
            fetcher: Source feed collaborator
            store: Target calendar store collaborator
            run_log: Run log; results are only kept in memory when omitted
            parser: Feed parser (built from settings when omitted)
            expander: Recurrence expander (built from settings when omitted)
            resolver: Duplicate resolver
            clock: Source of the current UTC time
        """
        self.settings = settings
        self.fetcher = fetcher
        self.store = store
        self.run_log = run_log
        self.parser = parser or ICSParser(settings)
        self.expander = expander or RRuleExpander(settings)
        self.resolver = resolver or DuplicateResolver()
        self.clock = clock
        self.index_builder = IndexBuilder(store, timeout=settings.store_call_timeout)

        self.state = SyncState.IDLE
        self.last_result: Optional[SyncRunResult] = None

    def window(self, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
        """Sync window ``[now - past days, now + future days]``."""
        now = now or self.clock()
        return (
            now - timedelta(days=self.settings.sync_days_past),
            now + timedelta(days=self.settings.sync_days_future),
        )

    def _transition(self, result: SyncRunResult, state: SyncState) -> None:
        logger.debug(f"Sync {result.run_id}: {result.state.value} -> {state.value}")
        result.state = state
        self.state = state

    async def run(
        self, feed_url: Optional[str] = None, calendar_id: Optional[str] = None
    ) -> SyncRunResult:
        """Execute one reconciliation run.

        Args:
            feed_url: Feed to read (defaults to ``settings.feed_url``)
            calendar_id: Target calendar (defaults to ``settings.target_calendar_id``)

        Returns:
            The recorded run result; ``success`` is ``False`` if any event failed

        Raises:
            SyncError: If no feed URL is configured.
            SyncAbortedError: If the feed cannot be fetched or the index cannot be
                built. The failed run is recorded before raising.
        """
        feed_url = feed_url or self.settings.feed_url
        if not feed_url:
            raise SyncError("No feed URL configured")
        calendar_id = calendar_id or self.settings.target_calendar_id

        started_at = self.clock()
        window_start, window_end = self.window(started_at)
        result = SyncRunResult(
            sync_id=self.settings.sync_id,
            calendar_id=calendar_id,
            started_at=started_at,
            window_start=window_start,
            window_end=window_end,
        )
        self.last_result = result
        logger.info(
            f"Sync {result.run_id} started: {feed_url} -> {calendar_id} "
            f"({window_start.date()} to {window_end.date()})"
        )
        if self.settings.privacy_level is not None:
            logger.info(f"Busy/free mode: {self.settings.privacy_level.value}")

        try:
            self._transition(result, SyncState.FETCHING_SOURCE)
            feed_text = await self.fetcher.fetch_text(feed_url)
            events = self.expander.expand_all(self.parser.parse(feed_text), window_start, window_end)
            result.events_processed = len(events)
            logger.info(f"Sync {result.run_id}: {len(events)} source events in window")

            self._transition(result, SyncState.BUILDING_INDEX)
            index = await self.index_builder.build(calendar_id, window_start, window_end)
        except (ICSFetchError, IndexBuildError) as e:
            logger.error(f"Sync {result.run_id} aborted before reconciling: {e.message}")
            result.errors.append(
                SyncErrorEntry(
                    message=e.message,
                    error_type=type(e).__name__,
                    status_code=getattr(e, "status_code", None),
                )
            )
            await self._finish(result, SyncState.FAILED)
            raise SyncAbortedError(e.message, result) from e
        except Exception as e:
            logger.exception(f"Sync {result.run_id} failed unexpectedly")
            result.errors.append(SyncErrorEntry(message=str(e), error_type=type(e).__name__))
            await self._finish(result, SyncState.FAILED)
            raise

        try:
            self._transition(result, SyncState.RECONCILING)
            plan = self.plan(events, index)

            self._transition(result, SyncState.APPLYING)
            await self._apply(plan, events, calendar_id, index, result)
        except Exception as e:
            logger.exception(f"Sync {result.run_id} failed unexpectedly")
            result.errors.append(SyncErrorEntry(message=str(e), error_type=type(e).__name__))
            await self._finish(result, SyncState.FAILED)
            raise

        await self._finish(result, SyncState.COMPLETED)
        return result

    def plan(self, events: list[FeedEvent], index: ExistingEventIndex) -> list[PlannedAction]:
        """Resolve every event against ``index``, in source order.

        A key that repeats within the run is planned as ``skip`` after its first
        occurrence.
        """
        context = ResolutionContext(
            run_keys=frozenset(identity_key(event.id, event.start) for event in events),
            run_ids=frozenset(event.id for event in events),
        )
        seen: set[str] = set()
        plan: list[PlannedAction] = []

        for position, event in enumerate(events):
            key = identity_key(event.id, event.start)
            if key in seen:
                resolution = Resolution(
                    action=SyncAction.SKIP,
                    reason=SOURCE_DUPLICATE_REASON,
                    confidence=SyncConfidence(score=1.0),
                )
            else:
                seen.add(key)
                resolution = self.resolver.resolve(event, index, context)
                if resolution.existing_id:
                    context.claimed_ids.add(resolution.existing_id)

            logger.verbose(
                f"{key}: {resolution.action.value} ({resolution.reason}, "
                f"confidence {float(resolution.confidence):.2f})"
            )
            plan.append(
                PlannedAction(
                    position=position,
                    key=key,
                    event_id=event.id,
                    title=event.title,
                    resolution=resolution,
                )
            )
        return plan

    async def _apply(
        self,
        plan: list[PlannedAction],
        events: list[FeedEvent],
        calendar_id: str,
        index: ExistingEventIndex,
        result: SyncRunResult,
    ) -> None:
        semaphore = asyncio.Semaphore(self.settings.apply_concurrency)

        async def apply_one(action: PlannedAction) -> Optional[ApplyError]:
            async with semaphore:
                try:
                    await self._apply_action(calendar_id, action, events[action.position])
                except ApplyError as e:
                    return e
                except Exception as e:
                    logger.exception(f"Unexpected error applying {action.key}")
                    return ApplyError(str(e), action.key, action.resolution.action.value, e)
                return None

        outcomes = await asyncio.gather(
            *(apply_one(action) for action in plan), return_exceptions=True
        )

        for action, outcome in zip(plan, outcomes):
            resolution = action.resolution
            error = outcome
            if isinstance(outcome, BaseException) and not isinstance(outcome, ApplyError):
                error = ApplyError(str(outcome), action.key, resolution.action.value, outcome)
            if error is not None:
                cause = error.cause
                result.errors.append(
                    SyncErrorEntry(
                        message=error.message or type(cause).__name__,
                        key=action.key,
                        action=resolution.action,
                        error_type=type(cause).__name__ if cause else None,
                        status_code=getattr(cause, "status_code", None),
                    )
                )
            elif resolution.action == SyncAction.SKIP:
                result.events_skipped += 1
                result.duplicates_resolved += 1
            elif resolution.action == SyncAction.CREATE:
                result.events_created += 1
            else:
                result.events_updated += 1
                if index.get(action.key) != resolution.existing_id:
                    result.duplicates_resolved += 1

    async def _apply_action(self, calendar_id: str, action: PlannedAction, event: FeedEvent) -> None:
        """Apply one planned action.

        Raises:
            ApplyError: If the store call fails or times out.
        """
        resolution = action.resolution
        if resolution.action == SyncAction.SKIP:
            return

        body = build_event_body(
            event, self.settings.target_timezone, self.settings.privacy_level
        )
        timeout = self.settings.store_call_timeout
        try:
            try:
                if resolution.action == SyncAction.CREATE:
                    external_id = await asyncio.wait_for(
                        self.store.create_event(calendar_id, body), timeout
                    )
                    logger.debug(f"Created {action.key} as {external_id}")
                else:
                    await asyncio.wait_for(
                        self.store.update_event(calendar_id, resolution.existing_id, body), timeout
                    )
                    logger.debug(f"Updated {resolution.existing_id} for {action.key}")
            except asyncio.TimeoutError as e:
                raise StoreTimeoutError(
                    f"{resolution.action.value} timed out after {timeout}s", calendar_id=calendar_id
                ) from e
        except StoreError as e:
            logger.warning(f"Failed to {resolution.action.value} {action.key}: {e.message}")
            raise ApplyError(e.message, action.key, resolution.action.value, e) from e

    async def _finish(self, result: SyncRunResult, state: SyncState) -> None:
        self._transition(result, state)
        result.finished_at = self.clock()
        result.duration_ms = max(
            0, int((result.finished_at - result.started_at).total_seconds() * 1000)
        )
        result.success = state == SyncState.COMPLETED and not result.errors
        self.last_result = result

        logger.info(
            f"Sync {result.run_id} {state.value} in {format_duration(result.duration_ms / 1000)}: "
            f"{result.events_processed} processed, {result.events_created} created, "
            f"{result.events_updated} updated, {result.events_skipped} skipped, "
            f"{len(result.errors)} errors"
        )

        if self.run_log is None:
            return
        try:
            await self.run_log.append_sync_run(result)
        except RunLogError:
            logger.exception(f"Failed to record sync run {result.run_id}")

    def schedule(
        self,
        scheduler: Scheduler,
        interval: float,
        feed_url: Optional[str] = None,
        calendar_id: Optional[str] = None,
    ) -> str:
        """Register recurring runs on ``scheduler`` and return its handle."""

        async def job() -> None:
            try:
                await self.run(feed_url, calendar_id)
            except SyncAbortedError as e:
                logger.warning(f"Scheduled sync aborted: {e.message}")

        return scheduler.schedule(f"sync-{self.settings.sync_id}", interval, job)
