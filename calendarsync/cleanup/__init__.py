"""Duplicate cleanup, backup and restore for target calendars."""

from .models import (
    AnalysisReport,
    BackupEntry,
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
from .exceptions import BackupNotFoundError, CleanupError, OperationNotFoundError
from .matchers import DuplicateMatcher, choose_primary, normalize_title, title_similarity
from .service import DuplicateCleanupService, restorable_body

__all__ = [
    "AnalysisReport",
    "BackupEntry",
    "BackupNotFoundError",
    "CleanupError",
    "CleanupFilters",
    "CleanupMode",
    "CleanupOperation",
    "CleanupOptions",
    "CleanupResult",
    "DuplicateCleanupService",
    "DuplicateGroup",
    "DuplicateMatcher",
    "MatchType",
    "OperationKind",
    "OperationNotFoundError",
    "OperationStatus",
    "RestoreResult",
    "StoredEvent",
    "choose_primary",
    "normalize_title",
    "restorable_body",
    "title_similarity",
]
