"""Configuration package for CalendarSync."""

from .settings import CleanupPatternRule, CleanupSettings, LoggingSettings, SyncSettings

__all__ = ["CleanupPatternRule", "CleanupSettings", "LoggingSettings", "SyncSettings"]
