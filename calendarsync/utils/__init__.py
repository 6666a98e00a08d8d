"""Utility functions and helpers for CalendarSync."""

from .helpers import format_duration, jittered_delay, utc_now
from .logging import VERBOSE, AutoColoredFormatter, get_log_level, get_logger, setup_logging

__all__ = [
    "VERBOSE",
    "AutoColoredFormatter",
    "format_duration",
    "get_log_level",
    "get_logger",
    "jittered_delay",
    "setup_logging",
    "utc_now",
]
