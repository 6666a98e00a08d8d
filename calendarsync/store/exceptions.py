"""Target calendar store exceptions."""

from typing import Optional


class StoreError(Exception):
    """Base exception for target calendar store failures."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        calendar_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.calendar_id = calendar_id


class StoreRateLimitError(StoreError):
    """Raised when the store rejects a call for quota/rate reasons (429 or rate-limit 403)."""


class StoreTransientError(StoreError):
    """Raised for server-side failures that may succeed on a later run (5xx)."""


class StorePermissionError(StoreError):
    """Raised when credentials are missing, expired or lack access (401/403)."""


class StoreNotFoundError(StoreError):
    """Raised when the calendar or event does not exist (404/410)."""


class StoreTimeoutError(StoreError):
    """Raised when a store call exceeds its timeout."""
