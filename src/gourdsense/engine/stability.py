"""Stability tracking over the live scan and best-frame bookkeeping."""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass
from typing import Generic, TypeVar

from gourdsense.ml.labels import REJECT_LABEL, GourdLabel

logger = logging.getLogger(__name__)

FrameT = TypeVar("FrameT")

DOMINANT_MIN_RECORDS: int = 3


@dataclass(frozen=True)
class StabilityRecord(Generic[FrameT]):
    label: GourdLabel
    confidence: float
    frame_ref: FrameT
    sequence_index: int


@dataclass(frozen=True)
class BestFrame(Generic[FrameT]):
    frame_ref: FrameT
    label: GourdLabel
    confidence: float
    observed_stability_count: int


@dataclass(frozen=True)
class StabilityUpdate(Generic[FrameT]):
    is_stable: bool
    best_frame: BestFrame[FrameT] | None


@dataclass(frozen=True)
class StabilitySnapshot(Generic[FrameT]):
    """A consistent copy of the tracker state for frame selection."""

    best_frame: BestFrame[FrameT] | None
    history: tuple[StabilityRecord[FrameT], ...]


class StabilityTracker(Generic[FrameT]):
    """Rolling history of top-1 readings with a best stable frame.

    A reading is stable when the last ``run_length`` records share one
    non-reject label. The best frame only changes while stable.
    """

    def __init__(self, history_size: int = 7, run_length: int = 5) -> None:
        if run_length < 1 or run_length > history_size:
            raise ValueError("run_length must be between 1 and history_size")
        self._run_length = run_length
        self._history: deque[StabilityRecord[FrameT]] = deque(maxlen=history_size)
        self._best: BestFrame[FrameT] | None = None
        self._sequence = 0
        self._lock = threading.Lock()

    def update(self, frame_ref: FrameT, label: GourdLabel, confidence: float) -> StabilityUpdate[FrameT]:
        with self._lock:
            self._history.append(
                StabilityRecord(label=label, confidence=confidence, frame_ref=frame_ref, sequence_index=self._sequence)
            )
            self._sequence += 1

            is_stable = self._is_stable()
            if is_stable and self._should_replace(confidence):
                previous = self._best
                self._best = BestFrame(
                    frame_ref=frame_ref,
                    label=label,
                    confidence=confidence,
                    observed_stability_count=self._run_length,
                )
                if previous is not None and previous.label != label:
                    logger.info("Best frame changed to %s (%.1f%%)", label, confidence * 100)
                else:
                    logger.info("Best frame updated: %s (%.1f%%)", label, confidence * 100)
            return StabilityUpdate(is_stable=is_stable, best_frame=self._best)

    def snapshot(self) -> StabilitySnapshot[FrameT]:
        with self._lock:
            return StabilitySnapshot(best_frame=self._best, history=tuple(self._history))

    def dominant(self) -> StabilityRecord[FrameT] | None:
        """Majority-vote reading: the latest record of the most common label.

        Falls back to the latest record while fewer than three exist.
        """
        with self._lock:
            if not self._history:
                return None
            if len(self._history) < DOMINANT_MIN_RECORDS:
                return self._history[-1]
            counts = Counter(record.label for record in self._history)
            winner, _ = counts.most_common(1)[0]
            return next(record for record in reversed(self._history) if record.label == winner)

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._best = None
            self._sequence = 0

    @property
    def is_stable(self) -> bool:
        with self._lock:
            return self._is_stable()

    @property
    def best_frame(self) -> BestFrame[FrameT] | None:
        with self._lock:
            return self._best

    def _is_stable(self) -> bool:
        if len(self._history) < self._run_length:
            return False
        recent = list(self._history)[-self._run_length :]
        label = recent[-1].label
        return label != REJECT_LABEL and all(record.label == label for record in recent)

    def _should_replace(self, confidence: float) -> bool:
        # Same label or not, a strictly more confident stable reading wins.
        return self._best is None or confidence > self._best.confidence
