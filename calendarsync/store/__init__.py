"""Target calendar store collaborators."""

from .body import build_event_body
from .exceptions import (
    StoreError,
    StoreNotFoundError,
    StorePermissionError,
    StoreRateLimitError,
    StoreTimeoutError,
    StoreTransientError,
)
from .protocol import CalendarStore

__all__ = [
    "CalendarStore",
    "StoreError",
    "StoreNotFoundError",
    "StorePermissionError",
    "StoreRateLimitError",
    "StoreTimeoutError",
    "StoreTransientError",
    "build_event_body",
]
