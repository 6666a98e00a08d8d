"""Reconciliation engine: identity keys, existing-event index, resolver and orchestrator.

Submodules are imported by their full path; ``calendarsync.sync.orchestrator``
depends on the ICS and store packages, which themselves use the identity helpers
exported here.
"""

from .identity import (
    SOURCE_UID_MARKER,
    SOURCE_UID_PATTERN,
    append_marker,
    extract_source_uid,
    identity_key,
    is_occurrence_id,
    occurrence_id,
    split_occurrence_id,
)

__all__ = [
    "SOURCE_UID_MARKER",
    "SOURCE_UID_PATTERN",
    "append_marker",
    "extract_source_uid",
    "identity_key",
    "is_occurrence_id",
    "occurrence_id",
    "split_occurrence_id",
]
