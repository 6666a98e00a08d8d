"""Duplicate cleanup service: analyze, clean up, back up and restore target calendars."""

import asyncio
import logging
import re
from collections.abc import Awaitable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from ..config.settings import CleanupSettings
from ..runlog.exceptions import RunLogError
from ..store.exceptions import StoreError, StoreNotFoundError, StoreTimeoutError
from ..store.protocol import CalendarStore
from ..utils.helpers import utc_now
from .exceptions import BackupNotFoundError, CleanupError, OperationNotFoundError
from .matchers import DuplicateMatcher
from .models import (
    AnalysisReport,
    CleanupFilters,
    CleanupMode,
    CleanupOperation,
    CleanupOptions,
    CleanupResult,
    DuplicateGroup,
    MatchType,
    OperationKind,
    OperationStatus,
    RestoreResult,
    StoredEvent,
)

if TYPE_CHECKING:
    from ..runlog.database import RunLogDatabase

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Server-assigned fields that must not be sent when recreating an event
READ_ONLY_FIELDS = (
    "id",
    "etag",
    "iCalUID",
    "htmlLink",
    "created",
    "updated",
    "creator",
    "organizer",
    "sequence",
    "recurringEventId",
    "kind",
)


def restorable_body(event: dict[str, Any]) -> dict[str, Any]:
    """Copy of a backed-up event without server-assigned fields."""
    return {key: value for key, value in event.items() if key not in READ_ONLY_FIELDS}


def _contains_any(text: str, needles: list[str]) -> bool:
    lowered = text.lower()
    return any(needle.lower() in lowered for needle in needles)


class DuplicateCleanupService:
    """Finds and removes duplicate events already present in target calendars.

    Every cleanup and restore is tracked as a :class:`CleanupOperation` in the
    run log. Cancellation is cooperative: it is checked between events and
    never interrupts a store call in flight.
    """

    def __init__(
        self,
        store: CalendarStore,
        run_log: "RunLogDatabase",
        settings: Optional[CleanupSettings] = None,
        call_timeout: Optional[float] = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.run_log = run_log
        self.settings = settings or CleanupSettings()
        self.call_timeout = call_timeout
        self.clock = clock
        self.matcher = DuplicateMatcher(self.settings)

        self._active: set[str] = set()
        self._cancel_requested: set[str] = set()

    async def _call(self, awaitable: Awaitable[T], description: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.call_timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(f"{description} timed out after {self.call_timeout}s") from e

    # Analysis

    async def analyze(
        self, calendar_ids: Sequence[str], filters: Optional[CleanupFilters] = None
    ) -> list[DuplicateGroup]:
        """Duplicate groups across ``calendar_ids``."""
        report = await self.analyze_report(calendar_ids, filters)
        return report.groups

    async def analyze_report(
        self,
        calendar_ids: Sequence[str],
        filters: Optional[CleanupFilters] = None,
        preserve_newest: Optional[bool] = None,
    ) -> AnalysisReport:
        """Analyze calendars and summarize the groups found.

        Raises:
            StoreError: If a calendar cannot be listed.
        """
        filters = filters or CleanupFilters()
        now = self.clock()
        window_start = filters.date_start or now - timedelta(days=self.settings.analysis_days_past)
        window_end = filters.date_end or now + timedelta(days=self.settings.analysis_days_future)

        total = 0
        groups: list[DuplicateGroup] = []
        for calendar_id in calendar_ids:
            raw_events = await self._call(
                self.store.list_events(calendar_id, window_start, window_end),
                f"Listing events in {calendar_id}",
            )
            events = [
                StoredEvent.from_raw(calendar_id, raw) for raw in raw_events if raw.get("id")
            ]
            events = self._filter_events(events, filters)
            total += len(events)
            groups.extend(self.matcher.find_groups(calendar_id, events, preserve_newest))

        report = AnalysisReport(
            total_events=total,
            groups=groups,
            exact_groups=sum(1 for g in groups if g.match_type == MatchType.EXACT),
            fuzzy_groups=sum(1 for g in groups if g.match_type == MatchType.FUZZY),
            pattern_groups=sum(1 for g in groups if g.match_type == MatchType.PATTERN),
            deletable_duplicates=sum(len(g.duplicates) for g in groups),
        )
        logger.info(
            f"Analyzed {total} events in {len(calendar_ids)} calendars: "
            f"{len(groups)} duplicate groups ({report.exact_groups} exact, "
            f"{report.fuzzy_groups} fuzzy, {report.pattern_groups} pattern)"
        )
        return report

    @staticmethod
    def _filter_events(events: list[StoredEvent], filters: CleanupFilters) -> list[StoredEvent]:
        include = re.compile(filters.include_pattern) if filters.include_pattern else None
        exclude = re.compile(filters.exclude_pattern) if filters.exclude_pattern else None

        selected = []
        for event in events:
            if filters.date_start and event.start and event.start < filters.date_start:
                continue
            if filters.date_end and event.start and event.start > filters.date_end:
                continue
            if filters.created_after and (not event.created or event.created < filters.created_after):
                continue
            if filters.created_before and (
                not event.created or event.created > filters.created_before
            ):
                continue
            if filters.title_patterns and not _contains_any(event.title, filters.title_patterns):
                continue
            if filters.description_patterns and not _contains_any(
                event.description, filters.description_patterns
            ):
                continue

            text = f"{event.title}\n{event.description}"
            if include and not include.search(text):
                continue
            if exclude and exclude.search(text):
                continue
            selected.append(event)
        return selected

    # Cleanup

    async def cleanup(
        self, calendar_ids: Sequence[str], options: Optional[CleanupOptions] = None
    ) -> CleanupResult:
        """Delete (or preview deleting) duplicates in ``calendar_ids``.

        Raises:
            CleanupError: If analysis or the pre-deletion backup fails. The
                operation is recorded as failed first, as it is for any other
                exception, which propagates unchanged.
        """
        options = options or CleanupOptions()
        started = self.clock()
        operation = CleanupOperation(
            kind=OperationKind.CLEANUP, mode=options.mode, calendar_ids=list(calendar_ids)
        )
        await self.run_log.save_operation(operation)
        self._active.add(operation.operation_id)
        logger.info(
            f"Cleanup {operation.operation_id} started ({options.mode.value}) "
            f"for {', '.join(calendar_ids)}"
        )

        result = CleanupResult(
            operation_id=operation.operation_id, mode=options.mode, status=OperationStatus.RUNNING
        )

        try:
            return await self._run_cleanup(operation, calendar_ids, options, result, started)
        except CleanupError:
            raise
        except Exception as e:
            logger.exception(f"Cleanup {operation.operation_id} failed unexpectedly")
            await self._finish(operation, OperationStatus.FAILED, f"Cleanup failed: {e}")
            raise

    async def _run_cleanup(
        self,
        operation: CleanupOperation,
        calendar_ids: Sequence[str],
        options: CleanupOptions,
        result: CleanupResult,
        started: datetime,
    ) -> CleanupResult:
        try:
            report = await self.analyze_report(
                calendar_ids, options.filters, options.preserve_newest
            )
        except StoreError as e:
            await self._finish(operation, OperationStatus.FAILED, f"Analysis failed: {e.message}")
            raise CleanupError(f"Analysis failed: {e.message}", operation.operation_id) from e

        targets = self._select_targets(report.groups, options, result)

        if options.mode == CleanupMode.PREVIEW:
            result.would_delete = len(targets)
            result.status = await self._finish(operation, OperationStatus.COMPLETED)
            result.duration_ms = self._elapsed_ms(started)
            logger.info(f"Cleanup preview {operation.operation_id}: would delete {len(targets)}")
            return result

        create_backup = (
            self.settings.create_backup if options.create_backup is None else options.create_backup
        )
        if create_backup and targets:
            try:
                backup_id = await self.run_log.create_backup(
                    operation.operation_id, [(event.calendar_id, event.raw) for event in targets]
                )
            except RunLogError as e:
                await self._finish(operation, OperationStatus.FAILED, f"Backup failed: {e.message}")
                raise CleanupError(
                    f"Backup failed, nothing deleted: {e.message}", operation.operation_id
                ) from e
            operation.backup_id = backup_id
            result.backup_id = backup_id
            await self.run_log.save_operation(operation)

        status = OperationStatus.COMPLETED
        for event in targets:
            if operation.operation_id in self._cancel_requested:
                status = OperationStatus.CANCELLED
                result.warnings.append(
                    f"Cancelled after {result.deleted_count} of {len(targets)} deletions"
                )
                break
            try:
                await self._call(
                    self.store.delete_event(event.calendar_id, event.id),
                    f"Deleting {event.id}",
                )
            except StoreNotFoundError:
                result.warnings.append(f"Event {event.id} was already gone")
                continue
            except StoreError as e:
                logger.warning(f"Failed to delete {event.id} from {event.calendar_id}: {e.message}")
                result.errors.append(f"{event.calendar_id}/{event.id}: {e.message}")
                continue

            result.deleted_count += 1
            result.deleted_event_ids.append(event.id)
            operation.deleted_count = result.deleted_count

        error_message = f"{len(result.errors)} deletions failed" if result.errors else None
        result.status = await self._finish(operation, status, error_message)
        result.duration_ms = self._elapsed_ms(started)
        logger.info(
            f"Cleanup {operation.operation_id} {result.status.value}: "
            f"deleted {result.deleted_count}, skipped {result.skipped_count}, "
            f"{len(result.errors)} errors"
        )
        return result

    def _select_targets(
        self, groups: list[DuplicateGroup], options: CleanupOptions, result: CleanupResult
    ) -> list[StoredEvent]:
        """Apply group selection, skip rules and the deletion cap; return events to delete."""
        if options.group_ids is not None:
            wanted = set(options.group_ids)
            groups = [group for group in groups if group.group_id in wanted]
            missing = wanted - {group.group_id for group in groups}
            if missing:
                result.warnings.append(f"Unknown group ids ignored: {', '.join(sorted(missing))}")

        skip_patterns = [re.compile(pattern) for pattern in options.skip_patterns]
        skip_attendees = (
            self.settings.skip_with_attendees
            if options.skip_with_attendees is None
            else options.skip_with_attendees
        )
        cap = self.settings.max_deletions if options.max_deletions is None else options.max_deletions

        candidates: list[tuple[DuplicateGroup, list[StoredEvent]]] = []
        for group in groups:
            if skip_patterns and any(
                pattern.search(f"{member.title}\n{member.description}")
                for pattern in skip_patterns
                for member in group.members
            ):
                result.skipped_count += len(group.duplicates)
                result.warnings.append(f"Group {group.group_id} skipped by pattern")
                continue

            deletable = []
            for duplicate in group.duplicates:
                if skip_attendees and duplicate.has_attendees:
                    result.skipped_count += 1
                    result.warnings.append(f"Event {duplicate.id} has attendees; not deleted")
                else:
                    deletable.append(duplicate)
            if deletable:
                candidates.append((group, deletable))

        # Highest confidence first; groups are never split across the cap
        candidates.sort(key=lambda item: item[0].confidence, reverse=True)
        targets: list[StoredEvent] = []
        left_out = 0
        for group, deletable in candidates:
            if len(targets) + len(deletable) > cap:
                left_out += 1
                result.skipped_count += len(deletable)
                continue
            targets.extend(deletable)
            result.groups_processed += 1

        if left_out:
            result.warnings.append(f"{left_out} groups left out by max_deletions={cap}")
        return targets

    # Restore

    async def restore(self, operation_id: str) -> RestoreResult:
        """Recreate the events backed up by a cleanup operation.

        Each backup entry is claimed in the run log before it is recreated, so
        repeated or overlapping restores never create an event twice. Entries
        restored or claimed elsewhere count as ``already_restored``.

        Raises:
            OperationNotFoundError: Unknown operation id.
            BackupNotFoundError: The operation has no backup.
            CleanupError: If the restored marker cannot be recorded. Any other
                exception also fails the operation before propagating.
        """
        source = await self.run_log.get_operation(operation_id)
        if source is None:
            raise OperationNotFoundError(f"Operation {operation_id} not found", operation_id)
        if not source.backup_id:
            raise BackupNotFoundError(f"Operation {operation_id} has no backup", operation_id)

        operation = CleanupOperation(
            kind=OperationKind.RESTORE,
            mode=CleanupMode.APPLY,
            calendar_ids=source.calendar_ids,
            backup_id=source.backup_id,
            source_operation_id=operation_id,
        )
        await self.run_log.save_operation(operation)
        self._active.add(operation.operation_id)

        result = RestoreResult(
            operation_id=operation.operation_id,
            source_operation_id=operation_id,
            status=OperationStatus.RUNNING,
        )

        try:
            return await self._run_restore(operation, source.backup_id, result)
        except CleanupError:
            raise
        except Exception as e:
            logger.exception(f"Restore {operation.operation_id} failed unexpectedly")
            await self._finish(operation, OperationStatus.FAILED, f"Restore failed: {e}")
            raise

    async def _run_restore(
        self, operation: CleanupOperation, backup_id: str, result: RestoreResult
    ) -> RestoreResult:
        entries = await self.run_log.get_backup_entries(backup_id)
        status = OperationStatus.COMPLETED

        for entry in entries:
            if operation.operation_id in self._cancel_requested:
                status = OperationStatus.CANCELLED
                break
            if entry.is_restored:
                result.already_restored += 1
                continue
            # Another restore holds or finished this entry
            if not await self.run_log.claim_entry(entry.entry_id, operation.operation_id):
                result.already_restored += 1
                continue

            try:
                new_id = await self._call(
                    self.store.create_event(entry.calendar_id, restorable_body(entry.event)),
                    f"Restoring {entry.event_id}",
                )
            except StoreError as e:
                await self.run_log.release_claim(entry.entry_id, operation.operation_id)
                logger.warning(f"Failed to restore {entry.event_id}: {e.message}")
                result.failed_count += 1
                result.errors.append(f"{entry.calendar_id}/{entry.event_id}: {e.message}")
                continue
            except Exception:
                await self.run_log.release_claim(entry.entry_id, operation.operation_id)
                raise

            try:
                recorded = await self.run_log.mark_restored(
                    entry.entry_id, new_id, operation.operation_id
                )
            except RunLogError as e:
                message = f"Restored {entry.event_id} as {new_id} but could not record it: {e.message}"
                await self._finish(operation, OperationStatus.FAILED, message)
                raise CleanupError(message, operation.operation_id) from e
            if not recorded:
                message = (
                    f"Restored {entry.event_id} as {new_id} but the backup entry "
                    f"was not claimed by {operation.operation_id}"
                )
                await self._finish(operation, OperationStatus.FAILED, message)
                raise CleanupError(message, operation.operation_id)

            result.restored_count += 1
            result.restored_event_ids[entry.event_id] = new_id
            operation.restored_count = result.restored_count

        if status == OperationStatus.COMPLETED and result.failed_count and not result.restored_count:
            status = OperationStatus.FAILED
        error_message = f"{result.failed_count} restores failed" if result.failed_count else None
        result.status = await self._finish(operation, status, error_message)
        logger.info(
            f"Restore {operation.operation_id} of {result.source_operation_id} {result.status.value}: "
            f"{result.restored_count} restored, {result.already_restored} already restored, "
            f"{result.failed_count} failed"
        )
        return result

    # Operations

    async def cancel(self, operation_id: str) -> bool:
        """Request cancellation; returns ``False`` if the operation already finished.

        Raises:
            OperationNotFoundError: Unknown operation id.
        """
        operation = await self.run_log.get_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError(f"Operation {operation_id} not found", operation_id)
        if operation.status.is_terminal:
            return False

        if operation_id in self._active:
            self._cancel_requested.add(operation_id)
            logger.info(f"Cancellation requested for {operation_id}")
        else:
            # Left running by an earlier process; nothing will observe the flag
            await self._finish(operation, OperationStatus.CANCELLED)
            logger.info(f"Marked orphaned operation {operation_id} cancelled")
        return True

    async def get_operation(self, operation_id: str) -> CleanupOperation:
        operation = await self.run_log.get_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError(f"Operation {operation_id} not found", operation_id)
        return operation

    async def list_operations(self, limit: int = 50) -> list[CleanupOperation]:
        return await self.run_log.list_operations(limit)

    async def _finish(
        self,
        operation: CleanupOperation,
        status: OperationStatus,
        error_message: Optional[str] = None,
    ) -> OperationStatus:
        operation.status = status
        operation.error_message = error_message
        operation.completed_at = self.clock()
        self._active.discard(operation.operation_id)
        self._cancel_requested.discard(operation.operation_id)
        await self.run_log.save_operation(operation)
        return status

    def _elapsed_ms(self, started: datetime) -> int:
        return max(0, int((self.clock() - started).total_seconds() * 1000))
