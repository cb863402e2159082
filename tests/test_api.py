"""Tests for the NSFWDetect HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from nsfwdetect.ml.preprocessing import CanonicalImage

import httpx
import pytest
from fastapi import FastAPI, status
from PIL import Image

from nsfwdetect.config import get_settings
from nsfwdetect.main import create_app
from nsfwdetect.ml.detector import NsfwDetector
from nsfwdetect.ml.environment import ExecutionMode
from nsfwdetect.ml.inference import InferencePool
from nsfwdetect.ml.model import Observation


class _StubModel:
    """Stands in for the loaded ONNX model."""

    name = "stub_model"

    def __init__(self, observations: list[Observation] | None = None, error: Exception | None = None) -> None:
        self._observations = observations if observations is not None else [
            Observation("SFW", 0.1),
            Observation("NSFW", 0.9),
        ]
        self._error = error

    def classify(self, image: CanonicalImage, mode: ExecutionMode) -> list[Observation]:
        if self._error is not None:
            raise self._error
        return self._observations


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (16, 16), (200, 100, 50)).save(buffer, format="PNG")
    return buffer.getvalue()


def _init_app_state(
    app: FastAPI,
    model: _StubModel | None = None,
    mode: ExecutionMode = ExecutionMode.PORTABLE_ONLY,
    **env_overrides: str,
) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    model = model if model is not None else _StubModel()
    pool = InferencePool(settings)
    app.state.settings = settings
    app.state.model = model
    app.state.inference_pool = pool
    app.state.detector = NsfwDetector(model, mode, pool.executor)


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


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["model"] == "stub_model"
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_reports_portable_mode(self, client: httpx.AsyncClient) -> None:
        data = (await client.get("/api/v1/health")).json()
        assert data["execution_mode"] == "portable_only"
        assert data["reduced_accuracy"] is True

    async def test_health_gpu_true_when_cuda_accelerated(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, mode=ExecutionMode.ACCELERATED, NSFWDETECT_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            data = (await ac.get("/api/v1/health")).json()
            assert data["gpu"] is True
            assert data["execution_mode"] == "accelerated"
            assert data["reduced_accuracy"] is False


class TestCheckEndpoint:
    async def test_check_returns_confidence(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/check",
            files={"file": ("test.png", io.BytesIO(_png_bytes()), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["confidence"] == pytest.approx(0.9)
        assert data["label"] == "NSFW"
        assert data["execution_mode"] == "portable_only"

    async def test_undecodable_upload_returns_415(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/check",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
        assert "neither a decodable bitmap" in response.json()["detail"]

    async def test_missing_label_returns_500(self) -> None:
        app = create_app()
        _init_app_state(app, model=_StubModel(observations=[Observation("SFW", 1.0)]))
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/check",
                files={"file": ("test.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
            assert "designated label" in response.json()["detail"]

    async def test_backend_failure_returns_500(self) -> None:
        app = create_app()
        _init_app_state(app, model=_StubModel(error=RuntimeError("session crashed")))
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/check",
                files={"file": ("test.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
            assert "session crashed" in response.json()["detail"]

    async def test_decompression_bomb_returns_415(
        self, client: httpx.AsyncClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
        response = await client.post(
            "/api/v1/check",
            files={"file": ("big.png", io.BytesIO(_png_bytes()), "image/png")},
        )
        assert response.status_code == status.HTTP_415_UNSUPPORTED_MEDIA_TYPE

    async def test_non_finite_score_returns_error_response(self) -> None:
        app = create_app()
        _init_app_state(app, model=_StubModel(observations=[Observation("NSFW", float("nan"))]))
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/check",
                files={"file": ("test.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
            assert "outside [0, 1]" in response.json()["detail"]

    async def test_oversized_upload_returns_413(self) -> None:
        app = create_app()
        _init_app_state(app, NSFWDETECT_MAX_FILE_SIZE="10")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/check",
                files={"file": ("test.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_413_CONTENT_TOO_LARGE

    async def test_no_free_slot_returns_503(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        pool: InferencePool = app.state.inference_pool
        with patch("nsfwdetect.ml.inference.SEMAPHORE_TIMEOUT_SECONDS", 0.01):
            async with pool.slot(), pool.slot():
                response = await client.post(
                    "/api/v1/check",
                    files={"file": ("test.png", io.BytesIO(_png_bytes()), "image/png")},
                )
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, NSFWDETECT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, NSFWDETECT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, NSFWDETECT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/check",
                headers={"Authorization": "Bearer wrong-key"},
                files={"file": ("test.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
