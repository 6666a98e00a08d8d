"""Confidence scores for the two places that produce them.

The sync resolver and the cleanup analyzer both attach a confidence to their
decisions, but with different meaning and scale. They are separate types in a
tagged union so a sync-path score can never be passed where a cleanup decision
weight is expected.

* :class:`SyncConfidence` is informational (0.0-1.0). Nothing gates on it.
* :class:`CleanupConfidence` is a decision weight (0-100) and is orderable, so the
  cleanup service can prioritise groups under a deletion cap.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class SyncConfidence(BaseModel):
    """Diagnostic confidence attached to a sync resolution."""

    kind: Literal["sync_diagnostic"] = "sync_diagnostic"
    score: float = Field(..., ge=0.0, le=1.0)

    model_config = ConfigDict(frozen=True)

    def __float__(self) -> float:
        return self.score


class CleanupConfidence(BaseModel):
    """Decision weight attached to a duplicate group."""

    kind: Literal["cleanup_decision"] = "cleanup_decision"
    percent: int = Field(..., ge=0, le=100)

    model_config = ConfigDict(frozen=True)

    def __int__(self) -> int:
        return self.percent

    def __lt__(self, other: "CleanupConfidence") -> bool:
        if not isinstance(other, CleanupConfidence):
            return NotImplemented
        return self.percent < other.percent

    def __le__(self, other: "CleanupConfidence") -> bool:
        if not isinstance(other, CleanupConfidence):
            return NotImplemented
        return self.percent <= other.percent

    def __gt__(self, other: "CleanupConfidence") -> bool:
        if not isinstance(other, CleanupConfidence):
            return NotImplemented
        return self.percent > other.percent

    def __ge__(self, other: "CleanupConfidence") -> bool:
        if not isinstance(other, CleanupConfidence):
            return NotImplemented
        return self.percent >= other.percent


Confidence = Annotated[Union[SyncConfidence, CleanupConfidence], Field(discriminator="kind")]
