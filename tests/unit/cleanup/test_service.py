"""Unit tests for the duplicate cleanup service."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from calendarsync.cleanup import (
    BackupNotFoundError,
    CleanupError,
    CleanupFilters,
    CleanupMode,
    CleanupOperation,
    CleanupOptions,
    DuplicateCleanupService,
    OperationKind,
    OperationNotFoundError,
    OperationStatus,
)
from calendarsync.cleanup.service import restorable_body
from calendarsync.runlog import RunLogDatabase, RunLogError
from calendarsync.store.exceptions import StoreNotFoundError, StorePermissionError, StoreTransientError
from tests.fixtures.memory_store import InMemoryCalendarStore

pytestmark = pytest.mark.unit


def raw_event(title: str, start: str = "2024-03-04T09:00:00Z", **extra: Any) -> dict[str, Any]:
    event = {
        "summary": title,
        "description": "",
        "start": {"dateTime": start},
        "end": {"dateTime": start},
    }
    event.update(extra)
    return event


@pytest.fixture
def service(memory_store: InMemoryCalendarStore, run_log: RunLogDatabase, clock: Any) -> DuplicateCleanupService:
    return DuplicateCleanupService(memory_store, run_log, clock=clock)


@pytest.fixture
def seeded_store(memory_store: InMemoryCalendarStore) -> InMemoryCalendarStore:
    """One exact duplicate pair plus an unrelated event."""
    memory_store.add_event("cal", raw_event("Standup"))
    memory_store.add_event("cal", raw_event("Standup"))
    memory_store.add_event("cal", raw_event("Lunch", "2024-03-04T12:00:00Z"))
    return memory_store


def apply_options(**values: Any) -> CleanupOptions:
    return CleanupOptions(mode=CleanupMode.APPLY, **values)


class TestAnalysis:
    """Test analysis and reporting."""

    @pytest.mark.asyncio
    @pytest.mark.critical_path
    async def test_analyze_reports_exact_group(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test that the older event is kept as primary."""
        (group,) = await service.analyze(["cal"])

        assert group.primary.id == "evt1"
        assert [d.id for d in group.duplicates] == ["evt2"]
        assert int(group.confidence) == 100

    @pytest.mark.asyncio
    async def test_analyze_report_counts(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test report totals."""
        report = await service.analyze_report(["cal"])

        assert report.total_events == 3
        assert report.exact_groups == 1
        assert report.deletable_duplicates == 1

    @pytest.mark.asyncio
    async def test_filters_narrow_events(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test that filtered-out events are not analyzed."""
        report = await service.analyze_report(["cal"], CleanupFilters(title_patterns=["lunch"]))

        assert report.total_events == 1
        assert report.groups == []

    @pytest.mark.asyncio
    async def test_exclude_pattern(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test regex exclusion."""
        groups = await service.analyze(["cal"], CleanupFilters(exclude_pattern="(?i)standup"))
        assert groups == []


class TestCleanup:
    """Test preview and apply executions."""

    @pytest.mark.asyncio
    @pytest.mark.critical_path
    async def test_preview_deletes_nothing(
        self,
        service: DuplicateCleanupService,
        seeded_store: InMemoryCalendarStore,
        run_log: RunLogDatabase,
    ) -> None:
        """Test that preview only reports."""
        result = await service.cleanup(["cal"])

        assert result.mode == CleanupMode.PREVIEW
        assert result.would_delete == 1
        assert result.deleted_count == 0
        assert seeded_store.count_calls("delete") == 0
        operation = await run_log.get_operation(result.operation_id)
        assert operation is not None
        assert operation.status == OperationStatus.COMPLETED

    @pytest.mark.asyncio
    @pytest.mark.critical_path
    async def test_apply_backs_up_then_deletes(
        self,
        service: DuplicateCleanupService,
        seeded_store: InMemoryCalendarStore,
        run_log: RunLogDatabase,
    ) -> None:
        """Test that duplicates are backed up and removed, primaries kept."""
        result = await service.cleanup(["cal"], apply_options())

        assert result.status == OperationStatus.COMPLETED
        assert result.deleted_event_ids == ["evt2"]
        assert {e["id"] for e in seeded_store.events("cal")} == {"evt1", "evt3"}
        assert result.backup_id is not None
        entries = await run_log.get_backup_entries(result.backup_id)
        assert [e.event_id for e in entries] == ["evt2"]

    @pytest.mark.asyncio
    async def test_apply_without_backup(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test that backups can be disabled per call."""
        result = await service.cleanup(["cal"], apply_options(create_backup=False))

        assert result.deleted_count == 1
        assert result.backup_id is None

    @pytest.mark.asyncio
    async def test_max_deletions_keeps_groups_whole(
        self, service: DuplicateCleanupService, memory_store: InMemoryCalendarStore
    ) -> None:
        """Test that a group that does not fit under the cap is left out entirely."""
        for _ in range(3):
            memory_store.add_event("cal", raw_event("Triple"))
        for _ in range(2):
            memory_store.add_event("cal", raw_event("Pair", "2024-03-05T09:00:00Z"))

        result = await service.cleanup(["cal"], apply_options(max_deletions=1))

        assert result.deleted_count == 1
        assert result.skipped_count == 2
        assert result.groups_processed == 1
        assert any("max_deletions=1" in w for w in result.warnings)
        remaining_titles = sorted(e["summary"] for e in memory_store.events("cal"))
        assert remaining_titles == ["Pair", "Triple", "Triple", "Triple"]

    @pytest.mark.asyncio
    async def test_duplicates_with_attendees_are_kept(
        self, service: DuplicateCleanupService, memory_store: InMemoryCalendarStore
    ) -> None:
        """Test the attendee safety rule."""
        memory_store.add_event("cal", raw_event("Sync"))
        memory_store.add_event("cal", raw_event("Sync", attendees=[{"email": "a@example.com"}]))

        result = await service.cleanup(["cal"], apply_options())

        assert result.deleted_count == 0
        assert result.skipped_count == 1

        result = await service.cleanup(["cal"], apply_options(skip_with_attendees=False))
        assert result.deleted_count == 1

    @pytest.mark.asyncio
    async def test_skip_patterns_protect_groups(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test that a group with a matching member is never touched."""
        result = await service.cleanup(["cal"], apply_options(skip_patterns=["Standup"]))

        assert result.deleted_count == 0
        assert result.skipped_count == 1

    @pytest.mark.asyncio
    async def test_group_selection(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test cleaning only selected groups and reporting unknown ids."""
        (group,) = await service.analyze(["cal"])

        skipped = await service.cleanup(["cal"], apply_options(group_ids=["nope"]))
        assert skipped.deleted_count == 0
        assert any("nope" in w for w in skipped.warnings)

        selected = await service.cleanup(["cal"], apply_options(group_ids=[group.group_id]))
        assert selected.deleted_count == 1

    @pytest.mark.asyncio
    async def test_delete_failures_are_recorded(
        self, service: DuplicateCleanupService, memory_store: InMemoryCalendarStore
    ) -> None:
        """Test per-event delete errors and already-deleted events."""
        for _ in range(3):
            memory_store.add_event("cal", raw_event("Standup"))
        memory_store.delete_failures = {
            "evt2": StoreTransientError("backend error", 503, "cal"),
            "evt3": StoreNotFoundError("gone", 404, "cal"),
        }

        result = await service.cleanup(["cal"], apply_options())

        assert result.deleted_count == 0
        assert len(result.errors) == 1
        assert "evt2" in result.errors[0]
        assert any("evt3" in w for w in result.warnings)
        assert result.status == OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_analysis_failure_marks_operation_failed(
        self,
        service: DuplicateCleanupService,
        memory_store: InMemoryCalendarStore,
        run_log: RunLogDatabase,
    ) -> None:
        """Test that listing errors fail the operation."""
        memory_store.list_error = StorePermissionError("forbidden", 403, "cal")

        with pytest.raises(CleanupError) as exc_info:
            await service.cleanup(["cal"], apply_options())

        operation = await run_log.get_operation(exc_info.value.operation_id)
        assert operation is not None
        assert operation.status == OperationStatus.FAILED

    @pytest.mark.asyncio
    async def test_backup_failure_deletes_nothing(
        self,
        service: DuplicateCleanupService,
        seeded_store: InMemoryCalendarStore,
        run_log: RunLogDatabase,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that no event is deleted without a backup."""
        monkeypatch.setattr(run_log, "create_backup", AsyncMock(side_effect=RunLogError("disk full")))

        with pytest.raises(CleanupError):
            await service.cleanup(["cal"], apply_options())

        assert seeded_store.count_calls("delete") == 0

    @pytest.mark.asyncio
    @pytest.mark.critical_path
    async def test_unexpected_error_marks_operation_failed(
        self,
        service: DuplicateCleanupService,
        seeded_store: InMemoryCalendarStore,
        run_log: RunLogDatabase,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a failure outside the store still ends the operation."""
        monkeypatch.setattr(
            run_log,
            "save_operation",
            AsyncMock(side_effect=[None, RunLogError("database is locked"), None]),
        )

        with pytest.raises(RunLogError):
            await service.cleanup(["cal"], apply_options())

        failed = run_log.save_operation.await_args_list[-1].args[0]
        assert failed.status == OperationStatus.FAILED
        assert "database is locked" in failed.error_message
        assert service._active == set()

    @pytest.mark.asyncio
    async def test_listing_crash_marks_operation_failed(
        self,
        service: DuplicateCleanupService,
        memory_store: InMemoryCalendarStore,
        run_log: RunLogDatabase,
    ) -> None:
        """Test that a non-store exception during analysis fails the operation."""
        memory_store.list_error = RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            await service.cleanup(["cal"], apply_options())

        (operation,) = await run_log.list_operations()
        assert operation.status == OperationStatus.FAILED
        assert operation.completed_at is not None
        assert service._active == set()


class TestCleanupOptionValidation:
    """Test that regex options are checked when built."""

    @pytest.mark.parametrize(
        "build",
        [
            lambda: CleanupOptions(skip_patterns=["("]),
            lambda: CleanupFilters(include_pattern="[unclosed"),
            lambda: CleanupFilters(exclude_pattern="*start"),
        ],
    )
    def test_invalid_regex_is_rejected(self, build: Any) -> None:
        """Test invalid regular expressions."""
        with pytest.raises(ValidationError):
            build()

    def test_valid_regex_is_kept(self) -> None:
        """Test that valid expressions pass through unchanged."""
        options = CleanupOptions(
            skip_patterns=[r"\bOOO\b"], filters=CleanupFilters(include_pattern="Standup")
        )
        assert options.skip_patterns == [r"\bOOO\b"]
        assert options.filters is not None
        assert options.filters.include_pattern == "Standup"


class TestRestore:
    """Test restoring backed-up events."""

    @pytest.mark.asyncio
    @pytest.mark.critical_path
    async def test_restore_recreates_deleted_events_once(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test restore and that a second restore creates nothing."""
        cleanup = await service.cleanup(["cal"], apply_options())

        first = await service.restore(cleanup.operation_id)
        second = await service.restore(cleanup.operation_id)

        assert first.status == OperationStatus.COMPLETED
        assert first.restored_count == 1
        assert "evt2" in first.restored_event_ids
        assert second.restored_count == 0
        assert second.already_restored == 1
        assert seeded_store.count_calls("create") == 1
        assert len(seeded_store.events("cal")) == 3

    @pytest.mark.asyncio
    async def test_restore_unknown_operation(self, service: DuplicateCleanupService) -> None:
        """Test unknown operation ids."""
        with pytest.raises(OperationNotFoundError):
            await service.restore("missing")

    @pytest.mark.asyncio
    async def test_restore_without_backup(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test that preview operations cannot be restored."""
        preview = await service.cleanup(["cal"])
        with pytest.raises(BackupNotFoundError):
            await service.restore(preview.operation_id)

    @pytest.mark.asyncio
    async def test_restore_failure_is_counted(
        self,
        service: DuplicateCleanupService,
        seeded_store: InMemoryCalendarStore,
    ) -> None:
        """Test that failed recreations fail the restore when nothing was restored."""
        cleanup = await service.cleanup(["cal"], apply_options())
        seeded_store.write_failures = {1: StoreTransientError("backend error", 503, "cal")}

        result = await service.restore(cleanup.operation_id)

        assert result.failed_count == 1
        assert result.status == OperationStatus.FAILED

    @pytest.mark.asyncio
    @pytest.mark.critical_path
    async def test_overlapping_restores_recreate_once(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test that two concurrent restores of one backup recreate each event once."""
        cleanup = await service.cleanup(["cal"], apply_options())

        first, second = await asyncio.gather(
            service.restore(cleanup.operation_id), service.restore(cleanup.operation_id)
        )

        assert first.restored_count + second.restored_count == 1
        assert first.already_restored + second.already_restored == 1
        assert seeded_store.count_calls("create") == 1
        assert len(seeded_store.events("cal")) == 3

    @pytest.mark.asyncio
    async def test_failed_entry_can_be_restored_later(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test that a failed recreation does not keep the entry reserved."""
        cleanup = await service.cleanup(["cal"], apply_options())
        seeded_store.write_failures = {1: StoreTransientError("backend error", 503, "cal")}

        failed = await service.restore(cleanup.operation_id)
        retried = await service.restore(cleanup.operation_id)

        assert failed.failed_count == 1
        assert retried.restored_count == 1
        assert len(seeded_store.events("cal")) == 3

    @pytest.mark.asyncio
    async def test_backup_read_failure_marks_restore_failed(
        self,
        service: DuplicateCleanupService,
        seeded_store: InMemoryCalendarStore,
        run_log: RunLogDatabase,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that an unreadable backup ends the restore as failed."""
        cleanup = await service.cleanup(["cal"], apply_options())
        monkeypatch.setattr(
            run_log, "get_backup_entries", AsyncMock(side_effect=RunLogError("disk I/O error"))
        )

        with pytest.raises(RunLogError):
            await service.restore(cleanup.operation_id)

        restore_op = next(
            op for op in await run_log.list_operations() if op.kind == OperationKind.RESTORE
        )
        assert restore_op.status == OperationStatus.FAILED
        assert "disk I/O error" in restore_op.error_message
        assert service._active == set()

    def test_restorable_body_drops_server_fields(self) -> None:
        """Test that read-only fields are not resent."""
        body = restorable_body({"id": "x", "etag": "1", "summary": "Standup", "created": "now"})
        assert body == {"summary": "Standup"}


class TestOperations:
    """Test operation tracking and cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_unknown_operation(self, service: DuplicateCleanupService) -> None:
        """Test unknown ids."""
        with pytest.raises(OperationNotFoundError):
            await service.cancel("missing")

    @pytest.mark.asyncio
    async def test_cancel_finished_operation(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test that terminal operations cannot be cancelled."""
        result = await service.cleanup(["cal"])
        assert await service.cancel(result.operation_id) is False

    @pytest.mark.asyncio
    async def test_cancel_orphaned_operation(
        self, service: DuplicateCleanupService, run_log: RunLogDatabase
    ) -> None:
        """Test that a running operation left by another process is marked cancelled."""
        orphan = CleanupOperation(mode=CleanupMode.APPLY, calendar_ids=["cal"])
        await run_log.save_operation(orphan)

        assert await service.cancel(orphan.operation_id) is True
        operation = await service.get_operation(orphan.operation_id)
        assert operation.status == OperationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_stops_between_deletions(
        self, run_log: RunLogDatabase, clock: Any
    ) -> None:
        """Test cooperative cancellation during apply."""

        class CancellingStore(InMemoryCalendarStore):
            service: Optional[DuplicateCleanupService] = None

            async def delete_event(self, calendar_id: str, event_id: str) -> None:
                await super().delete_event(calendar_id, event_id)
                if self.count_calls("delete") == 1 and self.service is not None:
                    (running,) = await run_log.list_operations()
                    await self.service.cancel(running.operation_id)

        store = CancellingStore()
        for _ in range(4):
            store.add_event("cal", raw_event("Standup"))
        service = DuplicateCleanupService(store, run_log, clock=clock)
        store.service = service

        result = await service.cleanup(["cal"], apply_options())

        assert result.status == OperationStatus.CANCELLED
        assert result.deleted_count == 1
        assert len(store.events("cal")) == 3

    @pytest.mark.asyncio
    async def test_get_and_list_operations(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore
    ) -> None:
        """Test operation lookup."""
        result = await service.cleanup(["cal"])

        operation = await service.get_operation(result.operation_id)
        assert operation.calendar_ids == ["cal"]
        assert [op.operation_id for op in await service.list_operations()] == [result.operation_id]
        with pytest.raises(OperationNotFoundError):
            await service.get_operation("missing")

    @pytest.mark.asyncio
    async def test_operation_timestamps(
        self, service: DuplicateCleanupService, seeded_store: InMemoryCalendarStore, fixed_now: datetime
    ) -> None:
        """Test that completion time comes from the injected clock."""
        result = await service.cleanup(["cal"])
        operation = await service.get_operation(result.operation_id)
        assert operation.completed_at == fixed_now
        assert operation.completed_at.tzinfo == timezone.utc
