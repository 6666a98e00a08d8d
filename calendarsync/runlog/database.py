"""SQLite run/operation log for sync runs, cleanup operations and backups."""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import aiosqlite

from ..cleanup.models import BackupEntry, CleanupOperation
from ..sync.models import SyncRunResult
from ..utils.helpers import utc_now
from .exceptions import RunLogError

logger = logging.getLogger(__name__)


class RunLogDatabase:
    """Append-only log of sync runs plus cleanup operation and backup storage.

    ``sync_runs`` rows are only ever inserted. ``cleanup_operations`` rows are
    updated through an operation's lifecycle. Backup entries carry a
    ``restore_claim`` taken atomically before an entry is recreated and a
    ``restored_event_id`` marker written after, so a restore never recreates an
    entry twice.
    """

    def __init__(self, database_path: Union[Path, str]):
        """Initialize run log.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path)
        self._initialized = False
        self._initialization_lock: Optional[asyncio.Lock] = None

        logger.debug(f"Run log initialized (lazy): {self.database_path}")

    async def initialize(self) -> None:
        """Create the schema if needed.

        Raises:
            RunLogError: If the database cannot be created.
        """
        if self._initialized:
            return

        if self._initialization_lock is None:
            self._initialization_lock = asyncio.Lock()

        async with self._initialization_lock:
            if self._initialized:
                return
            try:
                self.database_path.parent.mkdir(parents=True, exist_ok=True)
                async with aiosqlite.connect(str(self.database_path)) as db:
                    await db.execute("PRAGMA journal_mode=WAL")
                    await db.execute("PRAGMA foreign_keys=ON")
                    await self._create_schema(db)
                    await db.commit()
            except (aiosqlite.Error, OSError) as e:
                raise RunLogError(f"Failed to initialize run log: {e}") from e
            self._initialized = True
            logger.info(f"Run log ready: {self.database_path}")

    @staticmethod
    async def _create_schema(db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_runs (
                run_id TEXT PRIMARY KEY,
                sync_id TEXT NOT NULL,
                calendar_id TEXT NOT NULL,
                state TEXT NOT NULL,
                success INTEGER NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                events_processed INTEGER NOT NULL DEFAULT 0,
                events_created INTEGER NOT NULL DEFAULT 0,
                events_updated INTEGER NOT NULL DEFAULT 0,
                events_skipped INTEGER NOT NULL DEFAULT 0,
                duplicates_resolved INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                result_json TEXT NOT NULL,
                logged_at TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_sync_runs_sync_id
            ON sync_runs(sync_id, started_at)
            """
        )
        # Append-only: reject rewrites of recorded runs
        await db.execute(
            """
            CREATE TRIGGER IF NOT EXISTS sync_runs_no_update
            BEFORE UPDATE ON sync_runs
            BEGIN
                SELECT RAISE(ABORT, 'sync_runs is append-only');
            END
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS cleanup_operations (
                operation_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                mode TEXT NOT NULL,
                status TEXT NOT NULL,
                calendar_ids TEXT NOT NULL,
                backup_id TEXT,
                source_operation_id TEXT,
                deleted_count INTEGER NOT NULL DEFAULT 0,
                restored_count INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS cleanup_backups (
                backup_id TEXT PRIMARY KEY,
                operation_id TEXT NOT NULL,
                event_count INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS backup_entries (
                entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
                backup_id TEXT NOT NULL REFERENCES cleanup_backups(backup_id),
                calendar_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                event_json TEXT NOT NULL,
                restored_event_id TEXT,
                restored_at TEXT,
                restore_claim TEXT
            )
            """
        )
        await db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_backup_entries_backup
            ON backup_entries(backup_id)
            """
        )

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(str(self.database_path))

    # Sync runs

    async def append_sync_run(self, result: SyncRunResult) -> None:
        """Append one run result.

        Raises:
            RunLogError: If the row cannot be written (including a reused run id).
        """
        await self.initialize()
        try:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT INTO sync_runs (
                        run_id, sync_id, calendar_id, state, success, started_at, finished_at,
                        events_processed, events_created, events_updated, events_skipped,
                        duplicates_resolved, error_count, duration_ms, result_json, logged_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        result.run_id,
                        result.sync_id,
                        result.calendar_id,
                        result.state.value,
                        int(result.success),
                        result.started_at.isoformat(),
                        result.finished_at.isoformat() if result.finished_at else None,
                        result.events_processed,
                        result.events_created,
                        result.events_updated,
                        result.events_skipped,
                        result.duplicates_resolved,
                        len(result.errors),
                        result.duration_ms,
                        result.model_dump_json(),
                        utc_now().isoformat(),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise RunLogError(f"Failed to append sync run {result.run_id}: {e}") from e

        logger.debug(f"Logged sync run {result.run_id} ({result.state.value})")

    async def latest_sync_run(self, sync_id: str) -> Optional[SyncRunResult]:
        """Most recent run for ``sync_id``."""
        runs = await self.list_sync_runs(sync_id, limit=1)
        return runs[0] if runs else None

    async def list_sync_runs(
        self, sync_id: Optional[str] = None, limit: int = 20
    ) -> list[SyncRunResult]:
        """Recent runs, newest first."""
        await self.initialize()
        query = "SELECT result_json FROM sync_runs"
        params: tuple[Any, ...] = ()
        if sync_id is not None:
            query += " WHERE sync_id = ?"
            params = (sync_id,)
        query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
        params = (*params, limit)

        try:
            async with self._connect() as db:
                async with db.execute(query, params) as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise RunLogError(f"Failed to read sync runs: {e}") from e

        return [SyncRunResult.model_validate_json(row[0]) for row in rows]

    # Cleanup operations

    async def save_operation(self, operation: CleanupOperation) -> None:
        """Insert or update an operation record."""
        await self.initialize()
        operation.updated_at = utc_now()
        try:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT INTO cleanup_operations (
                        operation_id, kind, mode, status, calendar_ids, backup_id,
                        source_operation_id, deleted_count, restored_count, error_message,
                        created_at, updated_at, completed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(operation_id) DO UPDATE SET
                        status = excluded.status,
                        backup_id = excluded.backup_id,
                        deleted_count = excluded.deleted_count,
                        restored_count = excluded.restored_count,
                        error_message = excluded.error_message,
                        updated_at = excluded.updated_at,
                        completed_at = excluded.completed_at
                    """,
                    (
                        operation.operation_id,
                        operation.kind.value,
                        operation.mode.value,
                        operation.status.value,
                        json.dumps(operation.calendar_ids),
                        operation.backup_id,
                        operation.source_operation_id,
                        operation.deleted_count,
                        operation.restored_count,
                        operation.error_message,
                        operation.created_at.isoformat(),
                        operation.updated_at.isoformat(),
                        operation.completed_at.isoformat() if operation.completed_at else None,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise RunLogError(f"Failed to save operation {operation.operation_id}: {e}") from e

    @staticmethod
    def _operation_from_row(row: aiosqlite.Row) -> CleanupOperation:
        return CleanupOperation(
            operation_id=row["operation_id"],
            kind=row["kind"],
            mode=row["mode"],
            status=row["status"],
            calendar_ids=json.loads(row["calendar_ids"]),
            backup_id=row["backup_id"],
            source_operation_id=row["source_operation_id"],
            deleted_count=row["deleted_count"],
            restored_count=row["restored_count"],
            error_message=row["error_message"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            completed_at=(
                datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
            ),
        )

    async def get_operation(self, operation_id: str) -> Optional[CleanupOperation]:
        await self.initialize()
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(
                    "SELECT * FROM cleanup_operations WHERE operation_id = ?", (operation_id,)
                ) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise RunLogError(f"Failed to read operation {operation_id}: {e}") from e
        return self._operation_from_row(row) if row else None

    async def list_operations(self, limit: int = 50) -> list[CleanupOperation]:
        """Recent operations, newest first."""
        await self.initialize()
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(
                    "SELECT * FROM cleanup_operations ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (limit,),
                ) as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise RunLogError(f"Failed to list operations: {e}") from e
        return [self._operation_from_row(row) for row in rows]

    # Backups

    async def create_backup(
        self, operation_id: str, events: list[tuple[str, dict[str, Any]]]
    ) -> str:
        """Store a snapshot of ``(calendar_id, event)`` pairs and return the backup id."""
        await self.initialize()
        backup_id = uuid.uuid4().hex
        try:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT INTO cleanup_backups (backup_id, operation_id, event_count, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (backup_id, operation_id, len(events), utc_now().isoformat()),
                )
                await db.executemany(
                    """
                    INSERT INTO backup_entries (backup_id, calendar_id, event_id, event_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        (backup_id, calendar_id, str(event.get("id", "")), json.dumps(event))
                        for calendar_id, event in events
                    ],
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise RunLogError(f"Failed to create backup for {operation_id}: {e}") from e

        logger.info(f"Backed up {len(events)} events as {backup_id}")
        return backup_id

    async def get_backup_entries(self, backup_id: str) -> list[BackupEntry]:
        await self.initialize()
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(
                    "SELECT * FROM backup_entries WHERE backup_id = ? ORDER BY entry_id",
                    (backup_id,),
                ) as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise RunLogError(f"Failed to read backup {backup_id}: {e}") from e

        return [
            BackupEntry(
                entry_id=row["entry_id"],
                backup_id=row["backup_id"],
                calendar_id=row["calendar_id"],
                event_id=row["event_id"],
                event=json.loads(row["event_json"]),
                restored_event_id=row["restored_event_id"],
                restored_at=(
                    datetime.fromisoformat(row["restored_at"]) if row["restored_at"] else None
                ),
            )
            for row in rows
        ]

    async def claim_entry(self, entry_id: int, claim: str) -> bool:
        """Reserve an unrestored backup entry for one restore.

        Returns:
            ``True`` if this call took the claim, ``False`` if the entry is
            already restored or claimed
        """
        await self.initialize()
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    UPDATE backup_entries SET restore_claim = ?
                    WHERE entry_id = ? AND restored_event_id IS NULL AND restore_claim IS NULL
                    """,
                    (claim, entry_id),
                )
                await db.commit()
                claimed = cursor.rowcount == 1
        except aiosqlite.Error as e:
            raise RunLogError(f"Failed to claim backup entry {entry_id}: {e}") from e

        if not claimed:
            logger.debug(f"Backup entry {entry_id} already restored or claimed")
        return claimed

    async def release_claim(self, entry_id: int, claim: str) -> None:
        """Drop ``claim`` from an entry that was not restored."""
        await self.initialize()
        try:
            async with self._connect() as db:
                await db.execute(
                    """
                    UPDATE backup_entries SET restore_claim = NULL
                    WHERE entry_id = ? AND restore_claim = ? AND restored_event_id IS NULL
                    """,
                    (entry_id, claim),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise RunLogError(f"Failed to release backup entry {entry_id}: {e}") from e

    async def mark_restored(
        self, entry_id: int, restored_event_id: str, claim: Optional[str] = None
    ) -> bool:
        """Record that a backup entry was recreated.

        Already-marked entries stay unchanged. When ``claim`` is given the entry
        must be held by it.

        Returns:
            ``True`` if the marker was written
        """
        await self.initialize()
        query = """
            UPDATE backup_entries SET restored_event_id = ?, restored_at = ?
            WHERE entry_id = ? AND restored_event_id IS NULL
        """
        params: tuple[Any, ...] = (restored_event_id, utc_now().isoformat(), entry_id)
        if claim is not None:
            query += " AND restore_claim = ?"
            params += (claim,)
        try:
            async with self._connect() as db:
                cursor = await db.execute(query, params)
                await db.commit()
                marked = cursor.rowcount == 1
        except aiosqlite.Error as e:
            raise RunLogError(f"Failed to mark backup entry {entry_id} restored: {e}") from e

        if not marked:
            logger.warning(f"Backup entry {entry_id} was not marked restored as {restored_event_id}")
        return marked
