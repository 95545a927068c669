"""On-device gourd flower classifier.

The classifier is an opaque capability: given a preprocessed image it returns
a ranked probability distribution over its fixed label vocabulary.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from gourdsense.errors import InferenceError, ModelNotReadyError
from gourdsense.ml.labels import GourdLabel, normalize_label
from gourdsense.ml.preprocessing import prepare_input

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from gourdsense.ml.model_manager import ModelManager, ModelSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawPrediction:
    """A single label probability from one inference call."""

    label: GourdLabel
    probability: float


class ImageClassifier(Protocol):
    """Protocol for the local classifier."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def labels(self) -> tuple[GourdLabel, ...]:
        """Return the ordered label vocabulary."""
        ...

    @property
    def input_shape(self) -> tuple[int, int, int]:
        """Return the expected (height, width, channels) input shape."""
        ...

    def predict(self, image: NDArray[np.uint8]) -> list[RawPrediction]:
        """Classify an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            One prediction per vocabulary label, sorted by probability (descending).
        """
        ...


def rank_scores(labels: tuple[GourdLabel, ...], scores: NDArray[np.float32]) -> list[RawPrediction]:
    """Pair raw output scores with labels and sort them, highest first."""
    flat = np.asarray(scores, dtype=np.float32).reshape(-1)
    predictions = [
        RawPrediction(label=label, probability=float(flat[index]) if index < flat.size else 0.0)
        for index, label in enumerate(labels)
    ]
    predictions.sort(key=lambda p: p.probability, reverse=True)
    return predictions


class OnnxImageClassifier:
    """Runs a registry model through an ONNX Runtime session."""

    def __init__(self, manager: ModelManager, spec: ModelSpec) -> None:
        self._manager = manager
        self._spec = spec
        self._labels = self._build_vocabulary(spec)
        self._session = None
        self._input_name: str | None = None
        # Sessions are not assumed safe to share between concurrent calls.
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def labels(self) -> tuple[GourdLabel, ...]:
        return self._labels

    @property
    def input_shape(self) -> tuple[int, int, int]:
        height, width = self._spec.input_size
        return (height, width, 3)

    @property
    def is_ready(self) -> bool:
        return self._session is not None

    def load(self) -> None:
        """Create the inference session and log its vocabulary and input shape."""
        session = self._manager.get_session(self._spec.name)
        inputs = session.get_inputs()
        self._input_name = inputs[0].name
        self._session = session
        logger.info(
            "Local classifier %s ready (input=%s, labels=%s)",
            self._spec.name,
            list(inputs[0].shape),
            [label.value for label in self._labels],
        )

    def predict(self, image: NDArray[np.uint8]) -> list[RawPrediction]:
        if self._session is None or self._input_name is None:
            raise ModelNotReadyError(f"Model '{self._spec.name}' is not loaded")

        with self._lock:
            try:
                tensor = prepare_input(image, self._spec.input_size, self._spec.input_dtype)
                outputs = self._session.run(None, {self._input_name: tensor})
            except Exception as exc:
                raise InferenceError(f"Inference failed for '{self._spec.name}': {exc}") from exc
        return rank_scores(self._labels, outputs[0])

    @staticmethod
    def _build_vocabulary(spec: ModelSpec) -> tuple[GourdLabel, ...]:
        labels: list[GourdLabel] = []
        for raw in spec.labels:
            label = normalize_label(raw)
            if label is None:
                raise ValueError(f"Model '{spec.name}' has unknown label '{raw}'")
            labels.append(label)
        return tuple(labels)
