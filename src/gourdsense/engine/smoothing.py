"""Temporal smoothing of local classifier output."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from gourdsense.ml.image_classifier import RawPrediction
from gourdsense.ml.labels import REJECT_LABEL, GourdLabel

if TYPE_CHECKING:
    from collections.abc import Sequence


@dataclass(frozen=True)
class SmoothedPrediction:
    """Window-averaged distribution, sorted by probability (descending)."""

    predictions: tuple[RawPrediction, ...]
    window_size: int
    reject_synthesized: bool = False

    @property
    def top(self) -> RawPrediction:
        return self.predictions[0]


class TemporalSmoother:
    """Averages the last ``window`` distributions label by label.

    When the averaged top-1 falls below ``reject_threshold`` a reject entry
    with probability ``1 - top1`` is merged in and the distribution re-sorted.
    """

    def __init__(
        self,
        window: int = 5,
        reject_threshold: float | None = 0.70,
        reject_label: GourdLabel = REJECT_LABEL,
    ) -> None:
        if window < 1:
            raise ValueError("window must be at least 1")
        self._window: deque[tuple[RawPrediction, ...]] = deque(maxlen=window)
        self._reject_threshold = reject_threshold
        self._reject_label = reject_label

    @property
    def size(self) -> int:
        return len(self._window)

    def observe(self, raw: Sequence[RawPrediction]) -> SmoothedPrediction:
        if not raw:
            raise ValueError("Cannot smooth an empty distribution")
        self._window.append(tuple(raw))

        # First-seen order keeps sorting deterministic on ties.
        totals: dict[GourdLabel, float] = {}
        for distribution in self._window:
            for prediction in distribution:
                totals[prediction.label] = totals.get(prediction.label, 0.0) + prediction.probability

        count = len(self._window)
        averaged = [RawPrediction(label=label, probability=total / count) for label, total in totals.items()]
        averaged.sort(key=lambda p: p.probability, reverse=True)

        synthesized = False
        if self._reject_threshold is not None and averaged[0].probability < self._reject_threshold:
            averaged = self._merge_reject(averaged, 1.0 - averaged[0].probability)
            synthesized = True

        return SmoothedPrediction(predictions=tuple(averaged), window_size=count, reject_synthesized=synthesized)

    def reset(self) -> None:
        self._window.clear()

    def _merge_reject(self, ranked: list[RawPrediction], probability: float) -> list[RawPrediction]:
        others = [p for p in ranked if p.label != self._reject_label]
        existing = next((p.probability for p in ranked if p.label == self._reject_label), 0.0)
        # Appended last: on a tie the stable sort keeps the original entry ahead.
        merged = [*others, RawPrediction(label=self._reject_label, probability=max(existing, probability))]
        merged.sort(key=lambda p: p.probability, reverse=True)
        return merged
