"""One analysis of one image: local verdict, remote verification, arbitration."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from gourdsense.engine.arbitration import reconcile
from gourdsense.engine.predictions import ContextHint, FinalPrediction, Source, final_from_local
from gourdsense.engine.session import AnalysisSession, AnalysisState, ValidationStatus
from gourdsense.errors import AnalysisFailedError, InferenceError, RemoteClassifierError
from gourdsense.ml.preprocessing import encode_jpeg

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import numpy as np
    from numpy.typing import NDArray

    from gourdsense.ml.image_classifier import ImageClassifier
    from gourdsense.ml.remote_classifier import RemoteClassifier

logger = logging.getLogger(__name__)


class VerificationPipeline:
    """Runs the local classifier, then the remote one, then reconciles them.

    ``runner`` moves blocking inference off the event loop; it defaults to
    ``asyncio.to_thread`` and the API passes its ``InferencePool.run``.
    """

    def __init__(
        self,
        classifier: ImageClassifier,
        remote: RemoteClassifier | None = None,
        *,
        confidence_threshold: float = 0.65,
        model_version: str | None = None,
        jpeg_quality: float = 0.8,
        runner: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        self._classifier = classifier
        self._remote = remote
        self._confidence_threshold = confidence_threshold
        self._model_version = model_version
        self._jpeg_quality = jpeg_quality
        self._runner = runner or asyncio.to_thread

    @property
    def remote_enabled(self) -> bool:
        return self._remote is not None and self._remote.is_available

    async def run(self, image: NDArray[np.uint8], context_hint: ContextHint | None = None) -> AnalysisSession:
        """Analyze one frame.

        Raises:
            ModelNotReadyError: If the local model is not loaded.
            AnalysisFailedError: If the local classifier fails on this image.
        """
        session = AnalysisSession()
        session.advance(AnalysisState.LOCAL_RUNNING)

        started = time.monotonic()
        try:
            ranked = await self._runner(self._classifier.predict, image)
        except InferenceError as exc:
            raise AnalysisFailedError(f"Local classification failed: {exc}") from exc
        local = final_from_local(
            ranked,
            confidence_threshold=self._confidence_threshold,
            model_version=self._model_version,
            processing_time_ms=(time.monotonic() - started) * 1000,
        )
        session.local = local
        session.advance(AnalysisState.LOCAL_DONE)
        logger.info("Local verdict: %s (%.1f%%)", local.label, local.confidence)

        if self._remote is None or not self._remote.is_available:
            logger.info("Remote validation unavailable, using local prediction only")
            session.finalize(local, ValidationStatus.LOCAL_ONLY)
            return session

        await self._verify(session, self._remote, local, image, context_hint or self._hint_from(local))
        return session

    async def _verify(
        self,
        session: AnalysisSession,
        remote_classifier: RemoteClassifier,
        local: FinalPrediction,
        image: NDArray[np.uint8],
        hint: ContextHint | None,
    ) -> None:
        session.advance(AnalysisState.REMOTE_RUNNING)
        payload = await self._runner(encode_jpeg, image, self._jpeg_quality)
        try:
            remote = await remote_classifier.analyze(payload, hint)
        except RemoteClassifierError as exc:
            logger.warning("Remote validation failed, using local prediction only: %s", exc)
            session.finalize(local, ValidationStatus.LOCAL_ONLY)
            return

        session.remote = remote
        remote_final = remote.to_final()

        if local.is_not_flower:
            # Nothing to compare against; the remote verdict stands on its own.
            session.finalize(remote_final, ValidationStatus.REMOTE_ONLY)
            return

        comparison = reconcile(local, remote_final)
        session.comparison = comparison
        logger.info(
            "Comparison: agree=%s variety_match=%s gender_match=%s gap=%.2f recommendation=%s",
            comparison.agree,
            comparison.variety_match,
            comparison.gender_match,
            comparison.confidence_gap,
            comparison.recommendation,
        )

        if comparison.agree:
            session.advance(AnalysisState.AGREED)
            session.finalize(_pick(comparison.recommendation, local, remote_final), ValidationStatus.VALIDATED)
            return

        session.advance(AnalysisState.DISAGREED)
        if comparison.recommendation is Source.MANUAL:
            session.await_user_choice()
        else:
            session.finalize(_pick(comparison.recommendation, local, remote_final), ValidationStatus.ARBITRATED)

    @staticmethod
    def _hint_from(local: FinalPrediction) -> ContextHint | None:
        if local.label is None:
            return None
        return ContextHint(label=local.label, confidence=local.raw_score)


def _pick(source: Source, local: FinalPrediction, remote: FinalPrediction) -> FinalPrediction:
    return remote if source is Source.REMOTE else local
