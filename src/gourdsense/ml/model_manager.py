"""Model manager: download, load and cache ONNX classifier models.

Handles downloading gourd classifier exports from HuggingFace, creating and
caching one ONNX InferenceSession per model for the life of the process.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from gourdsense.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is downloaded and return its file path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classifier export.

    ``labels`` follows the model's output order exactly.
    """

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    labels: tuple[str, ...]
    input_size: tuple[int, int]
    input_dtype: Literal["float32", "uint8"]
    version: str
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "gourd_multiclass_v3": ModelSpec(
        name="gourd_multiclass_v3",
        repo_id="gourdsense/gourd-classifiers",
        filename="gourd_classifier.onnx",
        subfolder="multiclass_v3",
        labels=(
            "ampalaya_bilog_female",
            "ampalaya_bilog_male",
            "patola_female",
            "patola_male",
            "upo_smooth_female",
            "upo_smooth_male",
            "not_flower",
        ),
        input_size=(224, 224),
        input_dtype="float32",
        version="3.0.0-multiclass",
        license="Apache-2.0",
    ),
    "gourd_tm_float": ModelSpec(
        name="gourd_tm_float",
        repo_id="gourdsense/gourd-classifiers",
        filename="model_unquant.onnx",
        subfolder="tm_floating_point",
        labels=(
            "Ampalaya Bilog Male",
            "Ampalaya Bilog Female",
            "Not Flower",
            "Patola Female",
            "Patola Male",
            "Upo Smooth Female",
            "Upo Smooth Male",
        ),
        input_size=(224, 224),
        input_dtype="float32",
        version="3.0.0-float-only",
        license="Apache-2.0",
    ),
}


def get_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads and caches ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the model file, fetching it from the Hub only when absent.

        A file already at ``models_dir/<subfolder>/<filename>`` (a sideloaded
        export, or an earlier download) is used as is, so devices without
        network access can run from a pre-populated models directory.
        """
        spec = get_spec(model_name)

        cached = self._model_paths.get(model_name)
        if cached is not None and cached.exists():
            return cached

        bundled = self._bundled_path(spec)
        if bundled.exists():
            logger.info("Using local %s (%s) at %s", model_name, spec.version, bundled)
            path = bundled
        else:
            path = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=spec.filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir),
                )
            )
            logger.info("Downloaded %s (%s) to %s", model_name, spec.version, path)
        self._model_paths[model_name] = path
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Another thread may have created it while we loaded.
            existing = self._sessions.setdefault(model_name, session)
            if existing is session:
                logger.info("Loaded session for %s", model_name)
            return existing

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _bundled_path(self, spec: ModelSpec) -> Path:
        if spec.subfolder is None:
            return self._models_dir / spec.filename
        return self._models_dir / spec.subfolder / spec.filename

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
