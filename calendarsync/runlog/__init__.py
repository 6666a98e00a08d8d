"""Persistent run log: sync run history, cleanup operations and backups."""

from .database import RunLogDatabase
from .exceptions import RunLogError

__all__ = ["RunLogDatabase", "RunLogError"]
