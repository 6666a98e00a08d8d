"""ICS feed fetching, parsing and recurrence expansion."""

from .exceptions import (
    ICSAuthError,
    ICSError,
    ICSFetchError,
    ICSNetworkError,
    ICSParseError,
    ICSTimeoutError,
    RRuleExpansionError,
)
from .fetcher import ICSFetcher
from .models import EventStatus, FeedEvent, ICSResponse, PrivacyLevel, Transparency
from .parser import ICSParser
from .rrule_expander import RRuleExpander

__all__ = [
    "EventStatus",
    "FeedEvent",
    "ICSAuthError",
    "ICSError",
    "ICSFetchError",
    "ICSFetcher",
    "ICSNetworkError",
    "ICSParseError",
    "ICSParser",
    "ICSResponse",
    "ICSTimeoutError",
    "PrivacyLevel",
    "RRuleExpander",
    "RRuleExpansionError",
    "Transparency",
]
