"""Prediction data contracts shared by the local path, the remote path and arbitration."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from gourdsense.ml.labels import REJECT_LABEL, Gender, GourdLabel, Variety, label_for, normalize_label, tags_for

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gourdsense.ml.image_classifier import RawPrediction

UNCERTAIN_THRESHOLD: float = 0.5
LOW_CONFIDENCE_THRESHOLD: float = 0.65


class Source(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"
    MANUAL = "manual"


class HarvestStage(StrEnum):
    BUD = "bud"
    BLOOMING = "blooming"
    PEAK_BLOOM = "peak_bloom"
    POLLINATED = "pollinated"
    FRUITING = "fruiting"
    HARVEST = "harvest"


@dataclass(frozen=True)
class FlowerQuality:
    overall_score: float | None = None
    petal_condition: str | None = None
    size_assessment: str | None = None
    health_indicators: tuple[str, ...] = ()


@dataclass(frozen=True)
class HarvestEstimate:
    current_stage: HarvestStage | None = None
    days_to_harvest: int | None = None
    optimal_harvest_window: str | None = None
    pollination_ready: bool = False
    best_pollination_time: str | None = None


@dataclass(frozen=True)
class Observations:
    strengths: tuple[str, ...] = ()
    concerns: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class Auxiliary:
    """Metadata only the remote classifier produces."""

    reasoning: str = ""
    key_features: tuple[str, ...] = ()
    quality_metrics: dict[str, float] = field(default_factory=dict)
    flower_quality: FlowerQuality | None = None
    harvest: HarvestEstimate | None = None
    observations: Observations | None = None


@dataclass(frozen=True)
class FinalPrediction:
    """One classifier's verdict, or the user's choice between two of them.

    ``confidence`` is a percentage (0-100); ``raw_score`` is the same value
    as a fraction and is what arbitration compares.
    """

    variety: Variety | None
    gender: Gender | None
    confidence: float
    raw_score: float
    source: Source
    is_rejected: bool
    label: GourdLabel | None = None
    message: str = ""
    model_version: str | None = None
    processing_time_ms: float | None = None
    auxiliary: Auxiliary | None = None

    @property
    def is_not_flower(self) -> bool:
        return self.label is REJECT_LABEL

    def as_manual(self) -> FinalPrediction:
        """Return a copy attributed to an explicit user choice."""
        return replace(self, source=Source.MANUAL)


@dataclass(frozen=True)
class ContextHint:
    """The local verdict handed to the remote classifier as a prior."""

    label: GourdLabel
    confidence: float


@dataclass(frozen=True)
class RemotePrediction:
    """Structured output of the remote classifier (confidence is a fraction)."""

    variety: Variety | None
    gender: Gender
    confidence: float
    is_not_flower: bool
    reasoning: str = ""
    key_features: tuple[str, ...] = ()
    quality_metrics: dict[str, float] = field(default_factory=dict)
    flower_quality: FlowerQuality | None = None
    harvest: HarvestEstimate | None = None
    observations: Observations | None = None
    salvaged: bool = False
    model_version: str | None = None
    processing_time_ms: float | None = None

    @property
    def is_uncertain(self) -> bool:
        return self.confidence < UNCERTAIN_THRESHOLD

    @property
    def is_low_confidence(self) -> bool:
        return self.confidence < LOW_CONFIDENCE_THRESHOLD

    @property
    def should_reject(self) -> bool:
        return self.is_not_flower or self.is_uncertain

    @property
    def label(self) -> GourdLabel | None:
        if self.is_not_flower:
            return REJECT_LABEL
        return label_for(self.variety, self.gender)

    def message(self) -> str:
        percent = round(self.confidence * 100, 1)
        if self.is_not_flower:
            return "Not a gourd flower"
        if self.is_uncertain:
            return f"Uncertain: {self.variety or 'Unknown'} ({percent}%)"
        return f"{self.gender.value.capitalize()} {self.variety or 'Unknown'} flower ({percent}%)"

    def to_final(self) -> FinalPrediction:
        return FinalPrediction(
            variety=self.variety,
            gender=None if self.is_not_flower else self.gender,
            confidence=round(self.confidence * 100, 1),
            raw_score=self.confidence,
            source=Source.REMOTE,
            is_rejected=self.should_reject,
            label=self.label,
            message=self.message(),
            model_version=self.model_version,
            processing_time_ms=self.processing_time_ms,
            auxiliary=Auxiliary(
                reasoning=self.reasoning,
                key_features=self.key_features,
                quality_metrics=dict(self.quality_metrics),
                flower_quality=self.flower_quality,
                harvest=self.harvest,
                observations=self.observations,
            ),
        )


@dataclass(frozen=True)
class ComparisonResult:
    """Agreement verdict for one (local, remote) pair; never persisted on its own."""

    variety_match: bool
    gender_match: bool
    agree: bool
    confidence_gap: float
    confidence: float
    recommendation: Source


def _local_message(label: GourdLabel | None, probability: float, *, low_confidence: bool) -> str:
    if low_confidence:
        return "Low confidence - please try a clearer photo"
    if label is REJECT_LABEL:
        return "No flower detected - point camera at a flower"
    tags = tags_for(label)
    if tags.variety is None:
        return f"Unknown class: {label}"
    return f"{tags.gender.value.capitalize()} {tags.variety} flower ({probability * 100:.0f}%)"


def final_from_local(
    ranked: Sequence[RawPrediction],
    *,
    confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD,
    model_version: str | None = None,
    processing_time_ms: float | None = None,
) -> FinalPrediction:
    """Turn a ranked local distribution into a ``FinalPrediction`` from its top-1 entry."""
    if not ranked:
        raise ValueError("Cannot build a prediction from an empty distribution")
    top = max(ranked, key=lambda p: p.probability)
    label = normalize_label(top.label)
    tags = tags_for(label)
    low_confidence = top.probability < confidence_threshold
    return FinalPrediction(
        variety=tags.variety,
        gender=tags.gender if tags.is_flower else Gender.UNKNOWN,
        confidence=round(top.probability * 100, 1),
        raw_score=top.probability,
        source=Source.LOCAL,
        is_rejected=label is REJECT_LABEL or low_confidence,
        label=label,
        message=_local_message(label, top.probability, low_confidence=low_confidence),
        model_version=model_version,
        processing_time_ms=processing_time_ms,
    )
