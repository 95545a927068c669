"""Tests for the GourdSense API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

import httpx
import pytest
from fakes import FakeClassifier, FakeRemote, distribution, remote_prediction
from fastapi import FastAPI, status
from PIL import Image

from gourdsense.config import get_settings
from gourdsense.engine.pipeline import VerificationPipeline
from gourdsense.errors import InferenceError, ModelNotReadyError
from gourdsense.main import create_app
from gourdsense.ml.inference import InferencePool
from gourdsense.ml.labels import Gender, GourdLabel, Variety
from gourdsense.ml.model_manager import OnnxModelManager
from gourdsense.ml.preprocessing import PillowPreprocessor


def _init_app_state(
    app: FastAPI,
    models_dir: Path,
    classifier: FakeClassifier | None = None,
    remote: FakeRemote | None = None,
    **env_overrides: str,
) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, {"GOURDSENSE_MODELS_DIR": str(models_dir), **env_overrides}):
        settings = get_settings()
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.model_manager = OnnxModelManager(settings)
    app.state.preprocessor = PillowPreprocessor(settings.max_image_pixels)
    if classifier is not None:
        app.state.classifier = classifier
        app.state.pipeline = VerificationPipeline(
            classifier,
            remote,
            confidence_threshold=settings.local_confidence_threshold,
            model_version="test",
            runner=app.state.inference_pool.run,
        )


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _png_bytes(width: int = 64, height: int = 48) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(240, 200, 40)).save(buffer, format="PNG")
    return buffer.getvalue()


def _upload(data: bytes | None = None) -> dict[str, tuple[str, io.BytesIO, str]]:
    return {"file": ("flower.png", io.BytesIO(data if data is not None else _png_bytes()), "image/png")}


@pytest.fixture()
def app(tmp_path: Path) -> FastAPI:
    """Create a fresh app with a confident Patola female local classifier."""
    application = create_app()
    _init_app_state(application, tmp_path, FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.88)))
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["local_model_ready"] is True
        assert data["remote_validation"] is False
        assert isinstance(data["models_loaded"], list)
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_without_classifier(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path)
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["local_model_ready"] is False

    async def test_health_gpu_true_when_cuda(self, tmp_path: Path) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, tmp_path, GOURDSENSE_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestAnalyzeEndpoint:
    async def test_local_only_analysis(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/analyze", files=_upload())
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["state"] == "finalized"
        assert data["validation_status"] == "local_only"
        assert data["remote"] is None
        assert data["comparison"] is None
        final = data["final"]
        assert final["variety"] == "Patola"
        assert final["gender"] == "female"
        assert final["source"] == "local"
        assert final["confidence"] == pytest.approx(88.0)
        assert final["label"] == "patola_female"
        assert final["model_version"] == "test"

    async def test_validated_by_remote(self, tmp_path: Path) -> None:
        app = create_app()
        remote = FakeRemote(remote_prediction(Variety.PATOLA, Gender.FEMALE, 0.93))
        _init_app_state(app, tmp_path, FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.88)), remote)
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/analyze",
                files=_upload(),
                data={"context_label": "Patola Female", "context_confidence": "0.9"},
            )
            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert data["validation_status"] == "validated"
            assert data["comparison"]["agree"] is True
            assert data["final"]["source"] == "remote"
            assert data["remote"]["auxiliary"]["reasoning"] == ""
            assert remote.hints[0] is not None
            assert remote.hints[0].label is GourdLabel.PATOLA_FEMALE

    async def test_conflict_awaits_user(self, tmp_path: Path) -> None:
        app = create_app()
        remote = FakeRemote(remote_prediction(Variety.PATOLA, Gender.FEMALE, 0.94))
        _init_app_state(app, tmp_path, FakeClassifier(distribution(GourdLabel.UPO_SMOOTH_MALE, 0.93)), remote)
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/analyze", files=_upload())
            data = response.json()
            assert data["state"] == "awaiting_user_choice"
            assert data["validation_status"] == "conflict"
            assert data["comparison"]["recommendation"] == "manual"
            assert data["final"] is None
            assert data["local"]["variety"] == "Upo (Smooth)"
            assert data["remote"]["variety"] == "Patola"

    async def test_invalid_image_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/analyze", files=_upload(b"fake image data"))
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "decode" in response.json()["detail"].lower()

    async def test_unknown_context_label_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/analyze", files=_upload(), data={"context_label": "sunflower"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_oversized_upload_returns_413(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(
            app,
            tmp_path,
            FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.88)),
            GOURDSENSE_MAX_FILE_SIZE="16",
        )
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/analyze", files=_upload())
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    async def test_oversized_body_rejected_before_reading(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(
            app,
            tmp_path,
            FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.88)),
            GOURDSENSE_MAX_FILE_SIZE="16",
        )
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/analyze", files=_upload(b"\x00" * 100_000))
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
            assert "Request body" in response.json()["detail"]

    async def test_model_not_ready_returns_503(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, FakeClassifier(ModelNotReadyError("Model 'gourd_tm_float' is not loaded")))
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/analyze", files=_upload())
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_missing_pipeline_returns_503(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path)
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/analyze", files=_upload())
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_inference_failure_returns_422(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, FakeClassifier(InferenceError("session crashed")))
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/analyze", files=_upload())
            assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
            assert "session crashed" in response.json()["detail"]


class TestReconcileEndpoint:
    async def test_near_certain_remote_overrides_female_call(self, client: httpx.AsyncClient) -> None:
        body = {
            "local": {"variety": "Ampalaya Bilog", "gender": "female", "raw_score": 0.95},
            "remote": {"variety": "Ampalaya Bilog", "gender": "male", "raw_score": 0.99},
        }
        response = await client.post("/api/v1/reconcile", json=body)
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["agree"] is False
        assert data["recommendation"] == "remote"
        assert data["confidence"] == pytest.approx(0.97)

    async def test_female_call_kept(self, client: httpx.AsyncClient) -> None:
        body = {
            "local": {"variety": "Ampalaya Bilog", "gender": "female", "raw_score": 0.95},
            "remote": {"variety": "Ampalaya Bilog", "gender": "male", "raw_score": 0.90},
        }
        response = await client.post("/api/v1/reconcile", json=body)
        assert response.json()["recommendation"] == "local"

    async def test_score_out_of_range_rejected(self, client: httpx.AsyncClient) -> None:
        body = {
            "local": {"variety": "Patola", "gender": "male", "raw_score": 1.5},
            "remote": {"variety": "Patola", "gender": "male", "raw_score": 0.5},
        }
        response = await client.post("/api/v1/reconcile", json=body)
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestModelsEndpoint:
    async def test_models_returns_list(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert "models" in data
        assert len(data["models"]) >= 2

    async def test_default_model_is_active(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        models = response.json()["models"]
        active_names = {m["name"] for m in models if m["status"] == "active"}
        assert active_names == {"gourd_tm_float"}

    async def test_models_report_vocabulary(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        models = response.json()["models"]
        tm_float = next(m for m in models if m["name"] == "gourd_tm_float")
        assert len(tm_float["labels"]) == 7
        assert tm_float["labels"][2] == "Not Flower"

    async def test_active_model_follows_settings(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, GOURDSENSE_LOCAL_MODEL="gourd_multiclass_v3")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/models")
            models = response.json()["models"]
            multiclass = next(m for m in models if m["name"] == "gourd_multiclass_v3")
            assert multiclass["status"] == "active"


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, GOURDSENSE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, GOURDSENSE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, GOURDSENSE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )
