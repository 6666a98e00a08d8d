"""Duplicate cleanup exceptions."""

from typing import Optional


class CleanupError(Exception):
    """Base exception for cleanup and restore operations."""

    def __init__(self, message: str, operation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation_id = operation_id


class OperationNotFoundError(CleanupError):
    """No operation with the requested id exists."""


class BackupNotFoundError(CleanupError):
    """The operation has no backup to restore from."""
