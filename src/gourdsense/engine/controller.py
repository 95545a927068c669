"""Live scan controller: owns the per-session scan state and its lifecycle.

A scan session polls the camera on a fixed interval, classifies each frame,
smooths the readings and tracks the best stable frame. ``capture()`` ends
the loop and picks the frame to verify; ``analyze()`` sends it through the
verification pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from gourdsense.engine.frame_selector import FrameSelection, SelectionRule, select_capture_frame
from gourdsense.engine.scheduler import RepeatingTask
from gourdsense.engine.smoothing import SmoothedPrediction, TemporalSmoother
from gourdsense.engine.stability import StabilityRecord, StabilityTracker
from gourdsense.errors import GourdSenseError, NoFrameAvailableError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import numpy as np
    from numpy.typing import NDArray

    from gourdsense.config import Settings
    from gourdsense.engine.pipeline import VerificationPipeline
    from gourdsense.engine.predictions import ContextHint
    from gourdsense.engine.session import AnalysisSession
    from gourdsense.ml.image_classifier import ImageClassifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class CapturedFrame:
    """An opaque camera frame. Compared by identity."""

    ref: str
    image: NDArray[np.uint8]
    width: int
    height: int


class FrameSource(Protocol):
    """Protocol for the camera feeding the scan loop."""

    async def capture_frame(self, quality: float) -> CapturedFrame:
        """Capture one frame at the given JPEG quality fraction.

        Raises:
            CaptureError: If the camera could not produce a frame.
        """
        ...


class ScanController:
    """Drives one scan session from ``start()`` to ``dispose()``."""

    def __init__(
        self,
        source: FrameSource,
        classifier: ImageClassifier,
        pipeline: VerificationPipeline,
        settings: Settings,
        *,
        runner: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        self._source = source
        self._classifier = classifier
        self._pipeline = pipeline
        self._settings = settings
        self._runner = runner or asyncio.to_thread

        self._smoother = TemporalSmoother(
            window=settings.smoothing_window,
            reject_threshold=settings.reject_threshold,
        )
        self._tracker: StabilityTracker[CapturedFrame] = StabilityTracker(
            history_size=settings.stability_history,
            run_length=settings.stability_run,
        )
        self._loop = RepeatingTask(settings.scan_interval_ms / 1000, self._scheduled_tick)

        self._last_frame: CapturedFrame | None = None
        self._latest: SmoothedPrediction | None = None
        self._scanning = False
        self._disposed = False
        # Bumped on start and stop so stale in-flight ticks can tell.
        self._generation = 0
        self._tick_lock = asyncio.Lock()

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def latest(self) -> SmoothedPrediction | None:
        """The most recent smoothed reading, for display."""
        return self._latest

    @property
    def preview(self) -> StabilityRecord[CapturedFrame] | None:
        """Majority-vote reading over the recent history, for the live label.

        Steadier than ``latest`` when the top label flickers between ticks.
        """
        return self._tracker.dominant()

    @property
    def tracker(self) -> StabilityTracker[CapturedFrame]:
        return self._tracker

    def start(self) -> None:
        """Reset all scan state and begin ticking."""
        if self._disposed:
            raise RuntimeError("ScanController has been disposed")
        self._generation += 1
        self._smoother.reset()
        self._tracker.reset()
        self._last_frame = None
        self._latest = None
        self._scanning = True
        self._loop.start()
        logger.info("Scan started (interval=%dms)", self._settings.scan_interval_ms)

    async def stop(self) -> None:
        """Stop ticking. Readings still in flight are discarded."""
        if not self._scanning and not self._loop.is_running:
            return
        self._scanning = False
        self._generation += 1
        await self._loop.stop()
        logger.info("Scan stopped")

    async def tick(self) -> SmoothedPrediction | None:
        """Capture, classify, smooth and track one frame.

        Returns None when the tick failed, another tick is still in flight,
        or ``stop()`` superseded it.
        """
        if self._tick_lock.locked():
            logger.debug("Scan tick still in flight, skipping")
            return None

        async with self._tick_lock:
            generation = self._generation
            try:
                frame = await self._source.capture_frame(self._settings.scan_capture_quality)
                raw = await self._runner(self._classifier.predict, frame.image)
            except GourdSenseError as exc:
                logger.debug("Scan tick failed: %s", exc)
                return None
            except Exception:
                logger.warning("Scan tick failed unexpectedly", exc_info=True)
                return None

            if not self._scanning or generation != self._generation:
                logger.debug("Discarding reading from a stopped scan")
                return None

            self._last_frame = frame
            smoothed = self._smoother.observe(raw)
            top = smoothed.top
            self._tracker.update(frame, top.label, top.probability)
            self._latest = smoothed
            return smoothed

    async def capture(self) -> FrameSelection[CapturedFrame]:
        """End the scan and choose the frame to analyze.

        Raises:
            CaptureError: If no frame was cached and a fresh capture failed.
        """
        await self.stop()
        snapshot = self._tracker.snapshot()
        try:
            selection = select_capture_frame(
                snapshot.best_frame,
                snapshot.history,
                self._last_frame,
                best_min_confidence=self._settings.best_frame_min_confidence,
                recent_min_confidence=self._settings.recent_frame_min_confidence,
            )
        except NoFrameAvailableError:
            frame = await self._source.capture_frame(self._settings.fresh_capture_quality)
            selection = FrameSelection(
                frame_ref=frame,
                rule=SelectionRule.FRESH_CAPTURE,
                rationale="FRESH CAPTURE (no cached frame)",
            )
        logger.info("Capture frame: %s", selection.rationale)
        return selection

    async def analyze(
        self,
        selection: FrameSelection[CapturedFrame],
        context_hint: ContextHint | None = None,
    ) -> AnalysisSession | None:
        """Verify the selected frame. Returns None if disposed meanwhile."""
        if self._disposed:
            raise RuntimeError("ScanController has been disposed")
        session = await self._pipeline.run(selection.frame_ref.image, context_hint)
        if self._disposed:
            logger.info("Discarding analysis result: scan session was disposed")
            return None
        return session

    async def dispose(self) -> None:
        self._disposed = True
        await self.stop()
        self._last_frame = None
        self._latest = None

    async def _scheduled_tick(self) -> None:
        await self.tick()
