"""ICS-specific exceptions for error handling."""

from typing import Optional


class ICSError(Exception):
    """Base exception for ICS-related errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ICSFetchError(ICSError):
    """Exception raised when the feed cannot be fetched."""


class ICSAuthError(ICSFetchError):
    """Exception raised when the feed server rejects the request (401/403)."""


class ICSNetworkError(ICSFetchError):
    """Exception raised for network-related fetch errors."""


class ICSTimeoutError(ICSFetchError):
    """Exception raised when the feed request times out."""


class ICSParseError(ICSError):
    """Exception raised when feed content cannot be parsed.

    Handled inside the parser; callers of ``ICSParser.parse`` never see it.
    """


class RRuleExpansionError(ICSError):
    """Exception raised when a recurrence rule cannot be expanded.

    Handled inside the expander, which degrades to the unexpanded event.
    """
