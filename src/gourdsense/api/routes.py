"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, UploadFile, status

from gourdsense.api.middleware import reject_oversized_upload, verify_api_key
from gourdsense.api.schemas import (
    AnalyzeResponse,
    ComparisonResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    PredictionResponse,
    ReconcileRequest,
)
from gourdsense.engine.arbitration import reconcile
from gourdsense.engine.predictions import ContextHint
from gourdsense.errors import AnalysisFailedError, ModelNotReadyError
from gourdsense.ml.labels import normalize_label
from gourdsense.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from gourdsense.config import Settings
    from gourdsense.engine.pipeline import VerificationPipeline
    from gourdsense.engine.session import AnalysisSession
    from gourdsense.ml.image_classifier import OnnxImageClassifier
    from gourdsense.ml.inference import InferencePool
    from gourdsense.ml.model_manager import OnnxModelManager
    from gourdsense.ml.preprocessing import PillowPreprocessor

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> VerificationPipeline | None:
    pipeline: VerificationPipeline | None = getattr(request.app.state, "pipeline", None)
    return pipeline


def _get_classifier(request: Request) -> OnnxImageClassifier | None:
    classifier: OnnxImageClassifier | None = getattr(request.app.state, "classifier", None)
    return classifier


def _get_model_manager(request: Request) -> OnnxModelManager | None:
    manager: OnnxModelManager | None = getattr(request.app.state, "model_manager", None)
    return manager


def _get_preprocessor(request: Request) -> PillowPreprocessor:
    preprocessor: PillowPreprocessor = request.app.state.preprocessor
    return preprocessor


def _parse_context_hint(label: str | None, confidence: float | None) -> ContextHint | None:
    if label is None:
        return None
    normalized = normalize_label(label)
    if normalized is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown context label: {label}",
        )
    return ContextHint(label=normalized, confidence=confidence if confidence is not None else 0.0)


def _analysis_response(session: AnalysisSession) -> AnalyzeResponse:
    remote = session.remote.to_final() if session.remote is not None else None
    return AnalyzeResponse(
        state=session.state,
        validation_status=session.validation_status,
        local=PredictionResponse.model_validate(session.local) if session.local is not None else None,
        remote=PredictionResponse.model_validate(remote) if remote is not None else None,
        comparison=(
            ComparisonResponse.model_validate(session.comparison) if session.comparison is not None else None
        ),
        final=PredictionResponse.model_validate(session.final) if session.final is not None else None,
    )


@router.post(
    "/analyze",
    response_model=AnalyzeResponse,
    dependencies=[Depends(reject_oversized_upload)],
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify and verify a gourd flower image",
)
async def analyze(
    request: Request,
    file: UploadFile,
    context_label: Annotated[str | None, Form()] = None,
    context_confidence: Annotated[float | None, Form(ge=0.0, le=1.0)] = None,
) -> AnalyzeResponse:
    """Run the local classifier, verify with the remote one, and reconcile.

    When the two disagree and no rule settles it, the response comes back
    in ``awaiting_user_choice`` with both predictions and no ``final``.
    """
    settings = _get_settings(request)
    pipeline = _get_pipeline(request)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Local classifier is not loaded",
        )

    contents = await file.read()
    if len(contents) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {settings.max_file_size} byte limit",
        )

    hint = _parse_context_hint(context_label, context_confidence)
    pool = _get_inference_pool(request)
    try:
        image = await pool.run(_get_preprocessor(request).decode_image, contents)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, try again later",
        ) from exc

    try:
        session = await pipeline.run(image, hint)
    except ModelNotReadyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except AnalysisFailedError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, try again later",
        ) from exc

    return _analysis_response(session)


@router.post(
    "/reconcile",
    response_model=ComparisonResponse,
    summary="Reconcile a local and a remote prediction",
)
async def reconcile_predictions(body: ReconcileRequest) -> ComparisonResponse:
    """Apply the agreement rules to a prediction pair without running any model."""
    return ComparisonResponse.model_validate(reconcile(body.local, body.remote))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    classifier = _get_classifier(request)
    pipeline = _get_pipeline(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models() if manager is not None else [],
        local_model_ready=classifier is not None and classifier.is_ready,
        remote_validation=pipeline is not None and pipeline.remote_enabled,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered local classifiers and which one is active."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            version=spec.version,
            status="active" if spec.name == settings.local_model else "available",
            labels=list(spec.labels),
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
