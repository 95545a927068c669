"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gourdsense.api.routes import router
from gourdsense.config import get_settings
from gourdsense.engine.pipeline import VerificationPipeline
from gourdsense.ml.image_classifier import OnnxImageClassifier
from gourdsense.ml.inference import InferencePool
from gourdsense.ml.model_manager import OnnxModelManager, get_spec
from gourdsense.ml.preprocessing import PillowPreprocessor
from gourdsense.ml.remote_classifier import GeminiClassifier

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting GourdSense (device=%s, max_concurrent=%s, local_model=%s, remote_validation=%s)",
        settings.device,
        settings.max_concurrent,
        settings.local_model,
        settings.enable_remote_validation,
    )

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool
    app.state.preprocessor = PillowPreprocessor(settings.max_image_pixels)

    model_manager = OnnxModelManager(settings)
    app.state.model_manager = model_manager

    spec = get_spec(settings.local_model)
    classifier = OnnxImageClassifier(model_manager, spec)
    app.state.classifier = classifier
    try:
        await inference_pool.run(classifier.load)
    except (OSError, RuntimeError) as exc:
        # Served degraded: /health reports the model as not ready, /analyze returns 503.
        logger.error("Failed to load local classifier %s: %s", spec.name, exc)

    remote = GeminiClassifier(settings) if settings.enable_remote_validation else None
    if remote is not None and not remote.is_available:
        logger.warning("Remote validation is enabled but GOURDSENSE_GEMINI_API_KEY is not set")

    app.state.pipeline = VerificationPipeline(
        classifier,
        remote,
        confidence_threshold=settings.local_confidence_threshold,
        model_version=spec.version,
        runner=inference_pool.run,
    )

    logger.info("GourdSense ready")
    yield

    logger.info("Shutting down GourdSense")
    if remote is not None:
        await remote.aclose()
    model_manager.shutdown()
    inference_pool.shutdown()
    logger.info("GourdSense shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="GourdSense",
        description="Gourd flower classification with on-device and cloud verification",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("gourdsense.main:app", host=settings.host, port=settings.port)
