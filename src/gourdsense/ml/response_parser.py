"""Parse the remote model's text output into a ``RemotePrediction``.

The output is untrusted, JSON-ish text: it may arrive wrapped in markdown
fences, surrounded by prose, or cut off mid-object. Parsing has two stages:

1. Strict: locate the outermost JSON object and validate it.
2. Salvage: pull ``variety``, ``gender`` and ``confidence`` (and
   ``reasoning`` when it survived) out with targeted patterns.

Only when both stages fail is ``ResponseParseError`` raised.
"""

from __future__ import annotations

import json
import logging
import re

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gourdsense.engine.predictions import (
    FlowerQuality,
    HarvestEstimate,
    HarvestStage,
    Observations,
    RemotePrediction,
)
from gourdsense.errors import ResponseParseError
from gourdsense.ml.labels import gender_from_text, is_reject, variety_from_code

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_VARIETY_RE = re.compile(r'"variety"\s*:\s*"([^"]+)"', re.IGNORECASE)
_GENDER_RE = re.compile(r'"gender"\s*:\s*"([^"]+)"', re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r'"confidence"\s*:\s*"?(-?\d+(?:\.\d+)?)', re.IGNORECASE)
_REASONING_RE = re.compile(r'"reasoning"\s*:\s*"((?:[^"\\]|\\.)*)"', re.IGNORECASE | re.DOTALL)


def _as_fraction(value: float) -> float:
    # Models sometimes answer in percent despite the prompt.
    if value > 1.0:
        value = value / 100.0
    return min(max(value, 0.0), 1.0)


class _Lenient(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _FlowerQualityPayload(_Lenient):
    overall_score: float | None = Field(default=None, alias="overallScore")
    petal_condition: str | None = Field(default=None, alias="petalCondition")
    size_assessment: str | None = Field(default=None, alias="sizeAssessment")
    health_indicators: list[str] = Field(default_factory=list, alias="healthIndicators")


class _HarvestPayload(_Lenient):
    current_stage: str | None = Field(default=None, alias="currentStage")
    days_to_harvest: int | None = Field(default=None, alias="daysToHarvest")
    optimal_harvest_window: str | None = Field(default=None, alias="optimalHarvestWindow")
    pollination_ready: bool = Field(default=False, alias="pollinationReady")
    best_pollination_time: str | None = Field(default=None, alias="bestPollinationTime")

    @field_validator("days_to_harvest", mode="before")
    @classmethod
    def _lenient_days(cls, value: object) -> int | None:
        try:
            return int(float(value))  # type: ignore[arg-type]
        except (TypeError, ValueError, OverflowError):
            return None


class _ObservationsPayload(_Lenient):
    strengths: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class _RemotePayload(_Lenient):
    variety: str
    gender: str
    confidence: float
    reasoning: str = ""
    key_features: list[str] = Field(default_factory=list, alias="keyFeatures")
    quality_metrics: dict[str, float] = Field(default_factory=dict, alias="qualityMetrics")
    flower_quality: _FlowerQualityPayload | None = Field(default=None, alias="flowerQuality")
    harvest: _HarvestPayload | None = Field(default=None, alias="harvestPrediction")
    observations: _ObservationsPayload | None = None

    @field_validator("confidence")
    @classmethod
    def _normalize_confidence(cls, value: float) -> float:
        return _as_fraction(value)

    @field_validator("quality_metrics", mode="before")
    @classmethod
    def _numeric_scores(cls, value: object) -> dict[str, float]:
        if not isinstance(value, dict):
            return {}
        return {
            str(name): min(max(float(score), 0.0), 100.0)
            for name, score in value.items()
            if isinstance(score, int | float) and not isinstance(score, bool)
        }


def _extract_json_block(text: str) -> str | None:
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def _harvest_stage(raw: str | None) -> HarvestStage | None:
    if raw is None:
        return None
    try:
        return HarvestStage(raw.strip().lower())
    except ValueError:
        return None


def _from_payload(payload: _RemotePayload, *, salvaged: bool = False) -> RemotePrediction:
    variety = variety_from_code(payload.variety)
    is_not_flower = variety is None and is_reject(payload.variety)
    flower_quality = None
    if payload.flower_quality is not None:
        flower_quality = FlowerQuality(
            overall_score=payload.flower_quality.overall_score,
            petal_condition=payload.flower_quality.petal_condition,
            size_assessment=payload.flower_quality.size_assessment,
            health_indicators=tuple(payload.flower_quality.health_indicators),
        )
    harvest = None
    if payload.harvest is not None:
        harvest = HarvestEstimate(
            current_stage=_harvest_stage(payload.harvest.current_stage),
            days_to_harvest=payload.harvest.days_to_harvest,
            optimal_harvest_window=payload.harvest.optimal_harvest_window,
            pollination_ready=payload.harvest.pollination_ready,
            best_pollination_time=payload.harvest.best_pollination_time,
        )
    observations = None
    if payload.observations is not None:
        observations = Observations(
            strengths=tuple(payload.observations.strengths),
            concerns=tuple(payload.observations.concerns),
            recommendations=tuple(payload.observations.recommendations),
        )
    return RemotePrediction(
        variety=variety,
        gender=gender_from_text(payload.gender),
        confidence=payload.confidence,
        is_not_flower=is_not_flower,
        reasoning=payload.reasoning,
        key_features=tuple(payload.key_features),
        quality_metrics=payload.quality_metrics,
        flower_quality=flower_quality,
        harvest=harvest,
        observations=observations,
        salvaged=salvaged,
    )


def parse_strict(text: str) -> RemotePrediction | None:
    """Stage 1: parse a complete JSON object, None if it is absent or invalid."""
    block = _extract_json_block(text)
    if block is None:
        return None
    try:
        payload = _RemotePayload.model_validate(json.loads(block))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.debug("Strict parse failed: %s", exc)
        return None
    return _from_payload(payload)


def salvage_fields(text: str) -> RemotePrediction | None:
    """Stage 2: recover the core fields from truncated or malformed text."""
    variety = _VARIETY_RE.search(text)
    gender = _GENDER_RE.search(text)
    confidence = _CONFIDENCE_RE.search(text)
    if not (variety and gender and confidence):
        return None

    reasoning = _REASONING_RE.search(text)
    reasoning_text = ""
    if reasoning:
        try:
            reasoning_text = json.loads(f'"{reasoning.group(1)}"')
        except json.JSONDecodeError:
            reasoning_text = reasoning.group(1)

    payload = _RemotePayload(
        variety=variety.group(1),
        gender=gender.group(1),
        confidence=float(confidence.group(1)),
        reasoning=reasoning_text,
    )
    return _from_payload(payload, salvaged=True)


def parse_remote_response(text: str) -> RemotePrediction:
    """Parse remote output, salvaging fields when the JSON is damaged.

    Raises:
        ResponseParseError: If neither stage recovers variety, gender and confidence.
    """
    prediction = parse_strict(text)
    if prediction is not None:
        return prediction

    salvaged = salvage_fields(text)
    if salvaged is not None:
        logger.warning("Remote response was malformed; salvaged core fields")
        return salvaged

    raise ResponseParseError(f"Unparseable remote response: {text[:200]!r}")
