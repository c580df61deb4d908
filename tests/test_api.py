"""Tests for the facepipe HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import numpy as np
import pytest
from fastapi import FastAPI, status
from PIL import Image

from facepipe.config import get_settings
from facepipe.main import create_app
from facepipe.ml.face_detector import FaceDetection
from facepipe.ml.face_landmarks import FaceLandmarks
from facepipe.ml.geometry import Point, Rect
from facepipe.ml.inference import InferencePool
from facepipe.ml.model_manager import MODEL_REGISTRY
from facepipe.ml.net_input import claim_net_input
from facepipe.ml.pipeline import FacePipeline
from facepipe.ml.tensor_engine import NumpyTensorEngine

# ---------------------------------------------------------------------------
# Fake stages
# ---------------------------------------------------------------------------


class _Detector:
    def __init__(self, engine: NumpyTensorEngine, error: Exception | None = None) -> None:
        self.engine = engine
        self.error = error

    async def locate_faces(
        self, inputs: object, min_confidence: float = 0.5, max_results: int | None = None
    ) -> list[FaceDetection]:
        async with claim_net_input(inputs, self.engine) as net_input:
            if self.error is not None:
                raise self.error
            width, height = net_input.get_input_width(0), net_input.get_input_height(0)
            found = [
                FaceDetection(0.9, Rect(10, 10, 40, 40), width, height),
                FaceDetection(0.6, Rect(60, 60, 30, 30), width, height),
            ]
            found = [d for d in found if d.score >= min_confidence]
            return found[:max_results] if max_results is not None else found


class _Landmarker:
    async def detect_landmarks(self, inputs: object) -> list[FaceLandmarks]:
        assert isinstance(inputs, list)
        # Eyes, nose tip and mouth corners as fractions of the crop size.
        layout = [(0.3, 0.4), (0.7, 0.4), (0.5, 0.6), (0.35, 0.8), (0.65, 0.8)]
        landmarks = []
        for tensor in inputs:
            height, width = tensor.shape[:2]
            landmarks.append(FaceLandmarks([Point(fx * width, fy * height) for fx, fy in layout], width, height))
        return landmarks


class _Recognizer:
    descriptor_size = 128

    async def compute_face_descriptor(self, inputs: object) -> np.ndarray:
        return np.full(128, 0.5, dtype=np.float32)


def _png_bytes(width: int = 120, height: int = 100) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (90, 80, 70)).save(buf, format="PNG")
    return buf.getvalue()


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _init_app_state(app: FastAPI, detector_error: Exception | None = None, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    engine = NumpyTensorEngine()
    model_manager = MagicMock()
    model_manager.get_loaded_models.return_value = [settings.face_detection_model]
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.model_manager = model_manager
    app.state.pipeline = FacePipeline(_Detector(engine, detector_error), _Landmarker(), _Recognizer(), engine)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


def _upload(data: bytes) -> dict[str, tuple[str, io.BytesIO, str]]:
    return {"file": ("face.png", io.BytesIO(data), "image/png")}


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["models_loaded"] == ["ssd_mobilenetv1"]
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, FACEPIPE_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestDetectFacesEndpoint:
    async def test_returns_boxes_and_scores(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/detect-faces", files=_upload(_png_bytes()))
        assert response.status_code == status.HTTP_200_OK
        faces = response.json()
        assert [f["score"] for f in faces] == [0.9, 0.6]
        assert faces[0]["box"] == {"x": 10.0, "y": 10.0, "width": 40.0, "height": 40.0}

    async def test_query_parameters_filter_results(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/detect-faces", params={"min_confidence": 0.7}, files=_upload(_png_bytes())
        )
        assert [f["score"] for f in response.json()] == [0.9]

        response = await client.post("/api/v1/detect-faces", params={"max_results": 1}, files=_upload(_png_bytes()))
        assert len(response.json()) == 1

    async def test_invalid_query_parameter(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/detect-faces", params={"min_confidence": 1.5}, files=_upload(_png_bytes())
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    async def test_undecodable_image_is_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/detect-faces", files=_upload(b"fake image data"))
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert "could not decode" in response.json()["detail"].lower()

    async def test_oversize_upload_is_413(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPIPE_MAX_FILE_SIZE="10")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/detect-faces", files=_upload(_png_bytes()))
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    async def test_too_many_pixels_is_422(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPIPE_MAX_IMAGE_PIXELS="100")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/detect-faces", files=_upload(_png_bytes()))
            assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    async def test_queue_timeout_is_503(self) -> None:
        app = create_app()
        _init_app_state(app, detector_error=TimeoutError("queue full"))
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/detect-faces", files=_upload(_png_bytes()))
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestDescribeFacesEndpoint:
    async def test_returns_full_descriptions(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/describe-faces", files=_upload(_png_bytes()))
        assert response.status_code == status.HTTP_200_OK
        faces = response.json()
        assert len(faces) == 2
        first = faces[0]
        assert first["score"] == 0.9
        assert len(first["landmarks"]) == 5
        # Landmarks are reported in image pixels, offset by the face box.
        assert first["landmarks"][0] == {"x": pytest.approx(22.0), "y": pytest.approx(26.0)}
        assert len(first["descriptor"]) == 128

    async def test_undecodable_image_is_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/describe-faces", files=_upload(b"\x89PNG broken"))
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    async def test_missing_file_is_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/describe-faces")
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestModelsEndpoint:
    async def test_models_returns_registry(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        names = {m["name"] for m in response.json()["models"]}
        assert names == set(MODEL_REGISTRY)

    async def test_configured_models_are_active(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        statuses = {m["name"]: m["status"] for m in response.json()["models"]}
        assert statuses["ssd_mobilenetv1"] == "active"
        assert statuses["face_landmark_68"] == "active"
        assert statuses["face_recognition_resnet"] == "active"
        assert statuses["face_landmark_68_tiny"] == "available"

    async def test_active_follows_settings(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPIPE_FACE_LANDMARK_MODEL="face_landmark_68_tiny")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/models")
            statuses = {m["name"]: m["status"] for m in response.json()["models"]}
            assert statuses["face_landmark_68_tiny"] == "active"
            assert statuses["face_landmark_68"] == "available"


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPIPE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_bearer_key(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPIPE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_passes_with_x_api_key(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPIPE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health", headers={"X-API-Key": "test-secret-key"})
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPIPE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
