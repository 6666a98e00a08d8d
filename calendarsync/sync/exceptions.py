"""Sync engine exceptions."""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import SyncRunResult


class SyncError(Exception):
    """Base exception for reconciliation runs."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class IndexBuildError(SyncError):
    """Raised when the existing-event index cannot be built.

    Fatal to the run: nothing is applied without a consistent snapshot.
    """


class ApplyError(SyncError):
    """A create/update failure for one event; recorded, never fatal to the run."""

    def __init__(
        self,
        message: str,
        identity_key: str,
        action: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.identity_key = identity_key
        self.action = action
        self.cause = cause


class SyncAbortedError(SyncError):
    """Raised when a run fails before the apply phase.

    The failed run has already been recorded; ``result`` carries it.
    """

    def __init__(self, message: str, result: "SyncRunResult"):
        super().__init__(message)
        self.result = result
