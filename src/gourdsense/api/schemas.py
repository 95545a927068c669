"""Pydantic request/response schemas for the GourdSense API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from gourdsense.engine.predictions import HarvestStage, Source
from gourdsense.engine.session import AnalysisState, ValidationStatus
from gourdsense.ml.labels import Gender, Variety


class _FromDomain(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class FlowerQualityResponse(_FromDomain):
    overall_score: float | None = None
    petal_condition: str | None = None
    size_assessment: str | None = None
    health_indicators: list[str] = Field(default_factory=list)


class HarvestResponse(_FromDomain):
    current_stage: HarvestStage | None = None
    days_to_harvest: int | None = None
    optimal_harvest_window: str | None = None
    pollination_ready: bool = False
    best_pollination_time: str | None = None


class ObservationsResponse(_FromDomain):
    strengths: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class AuxiliaryResponse(_FromDomain):
    """Remote-only metadata attached to a prediction."""

    reasoning: str = ""
    key_features: list[str] = Field(default_factory=list)
    quality_metrics: dict[str, float] = Field(default_factory=dict)
    flower_quality: FlowerQualityResponse | None = None
    harvest: HarvestResponse | None = None
    observations: ObservationsResponse | None = None


class PredictionResponse(_FromDomain):
    """A single classifier verdict, or the user's choice between two."""

    variety: Variety | None
    gender: Gender | None
    confidence: float = Field(description="Confidence as a percentage (0-100)")
    raw_score: float = Field(description="Confidence as a fraction (0.0-1.0)")
    source: Source
    is_rejected: bool
    label: str | None = None
    message: str = ""
    model_version: str | None = None
    processing_time_ms: float | None = None
    auxiliary: AuxiliaryResponse | None = None


class ComparisonResponse(_FromDomain):
    """Agreement verdict between the local and remote predictions."""

    variety_match: bool
    gender_match: bool
    agree: bool
    confidence_gap: float
    confidence: float
    recommendation: Source = Field(description="'local', 'remote', or 'manual' (user must choose)")


class AnalyzeResponse(BaseModel):
    """Outcome of one analysis. ``final`` is null while awaiting a user choice."""

    state: AnalysisState
    validation_status: ValidationStatus | None
    local: PredictionResponse | None
    remote: PredictionResponse | None
    comparison: ComparisonResponse | None
    final: PredictionResponse | None


class PredictionInput(BaseModel):
    """A prediction submitted for reconciliation."""

    variety: Variety | None = None
    gender: Gender | None = None
    raw_score: float = Field(ge=0.0, le=1.0, description="Confidence as a fraction (0.0-1.0)")


class ReconcileRequest(BaseModel):
    local: PredictionInput
    remote: PredictionInput


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    local_model_ready: bool
    remote_validation: bool
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about a registered local classifier."""

    name: str
    version: str
    status: str = Field(description="Model status: 'active' or 'available'")
    labels: list[str] = Field(description="Output vocabulary in model order")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
