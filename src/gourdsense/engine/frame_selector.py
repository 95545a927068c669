"""Choose which cached frame to send for remote verification."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Generic, TypeVar

from gourdsense.errors import NoFrameAvailableError
from gourdsense.ml.labels import REJECT_LABEL

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gourdsense.engine.stability import BestFrame, StabilityRecord
    from gourdsense.ml.labels import GourdLabel

FrameT = TypeVar("FrameT")

BEST_FRAME_MIN_CONFIDENCE: float = 0.50
RECENT_FRAME_MIN_CONFIDENCE: float = 0.60


class SelectionRule(StrEnum):
    BEST_STABLE = "best_stable"
    BEST_RECENT = "best_recent"
    LAST_FRAME = "last_frame"
    FRESH_CAPTURE = "fresh_capture"


@dataclass(frozen=True)
class FrameSelection(Generic[FrameT]):
    frame_ref: FrameT
    rule: SelectionRule
    rationale: str
    label: GourdLabel | None = None
    confidence: float | None = None


def select_capture_frame(
    best_frame: BestFrame[FrameT] | None,
    recent_history: Sequence[StabilityRecord[FrameT]],
    last_frame: FrameT | None,
    *,
    best_min_confidence: float = BEST_FRAME_MIN_CONFIDENCE,
    recent_min_confidence: float = RECENT_FRAME_MIN_CONFIDENCE,
) -> FrameSelection[FrameT]:
    """Pick the capture frame: best stable, then best recent, then last frame.

    Confidences are fractions. The first rule that matches wins.

    Raises:
        NoFrameAvailableError: If nothing is cached; capture a fresh frame instead.
    """
    if best_frame is not None and best_frame.confidence > best_min_confidence:
        return FrameSelection(
            frame_ref=best_frame.frame_ref,
            rule=SelectionRule.BEST_STABLE,
            rationale=f"BEST STABLE: {best_frame.label} ({best_frame.confidence * 100:.1f}%)",
            label=best_frame.label,
            confidence=best_frame.confidence,
        )

    candidates = [record for record in recent_history if record.label != REJECT_LABEL]
    if candidates:
        best_recent = max(candidates, key=lambda record: record.confidence)
        if best_recent.confidence > recent_min_confidence:
            return FrameSelection(
                frame_ref=best_recent.frame_ref,
                rule=SelectionRule.BEST_RECENT,
                rationale=f"BEST RECENT: {best_recent.label} ({best_recent.confidence * 100:.1f}%)",
                label=best_recent.label,
                confidence=best_recent.confidence,
            )

    if last_frame is not None:
        return FrameSelection(
            frame_ref=last_frame,
            rule=SelectionRule.LAST_FRAME,
            rationale="LAST FRAME (no stable prediction found)",
        )

    raise NoFrameAvailableError("No cached frame available; capture a fresh frame")
