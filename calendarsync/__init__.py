"""CalendarSync - idempotent reconciliation of ICS feeds into a target calendar."""

__version__ = "1.0.0"
__author__ = "CalendarSync Team"
