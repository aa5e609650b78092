"""Tests for the PhotoClassify HTTP API."""

from __future__ import annotations

import io
import os
import threading
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    import numpy as np

import httpx
import pytest
from fastapi import FastAPI, status
from fastapi.security import HTTPAuthorizationCredentials
from PIL import Image

from photoclassify.api.middleware import AccessStatus, access_status
from photoclassify.config import Settings, get_settings
from photoclassify.formatting import NO_PREDICTIONS_MESSAGE
from photoclassify.main import create_app, init_state, lifespan
from photoclassify.ml.image_classifier import ClassificationError, OnnxImageClassifier, Prediction
from photoclassify.ml.inference import InferencePool

TEST_MODELS_DIR = "/tmp/photoclassify_test_models"

CAT_PREDICTIONS = [
    Prediction(classification="tabby, tabby cat", confidence_percentage="62.4"),
    Prediction(classification="tiger cat", confidence_percentage="21.3"),
    Prediction(classification="Egyptian cat", confidence_percentage="9.8"),
]


class FakeClassifier:
    """Stands in for the ONNX classifier so tests never download a model."""

    model_name = "mobilenet_v2"

    def __init__(self, predictions: list[Prediction] | None = None, error: Exception | None = None) -> None:
        self.predictions = CAT_PREDICTIONS if predictions is None else predictions
        self.error = error
        self.seen_shapes: list[tuple[int, ...]] = []

    def classify(self, image: np.ndarray) -> list[Prediction]:
        self.seen_shapes.append(image.shape)
        if self.error is not None:
            raise self.error
        return self.predictions


def _init_app_state(app: FastAPI, classifier: FakeClassifier | None = None, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    env = {"PHOTOCLASSIFY_MODELS_DIR": TEST_MODELS_DIR, **env_overrides}
    with patch.dict(os.environ, env):
        settings = get_settings()
    init_state(app, settings)
    app.state.classifier = classifier or FakeClassifier()


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _png_bytes(size: tuple[int, int] = (64, 48)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 120, 40)).save(buf, format="PNG")
    return buf.getvalue()


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


async def _upload(
    ac: httpx.AsyncClient, data: bytes, content_type: str = "image/png", filename: str = "photo.png"
) -> httpx.Response:
    return await ac.post(
        "/api/v1/classify-image",
        files={"file": (filename, io.BytesIO(data), content_type)},
    )


class TestClassifyImageEndpoint:
    async def test_returns_predictions_and_display(self, client: httpx.AsyncClient) -> None:
        response = await _upload(client, _png_bytes())
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["model"] == "mobilenet_v2"
        assert data["predictions"][0] == {"classification": "tabby, tabby cat", "confidence_percentage": "62.4"}
        assert len(data["predictions"]) == 3
        assert data["display"] == "tabby - 62.4%\ntiger cat - 21.3%"

    async def test_classifier_receives_decoded_image(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _upload(client, _png_bytes((64, 48)))
        assert app.state.classifier.seen_shapes == [(48, 64, 3)]

    async def test_non_image_rejected(self, client: httpx.AsyncClient) -> None:
        response = await _upload(client, b"hello", content_type="text/plain", filename="notes.txt")
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"] == "File must be an image"

    async def test_empty_upload_rejected(self, client: httpx.AsyncClient) -> None:
        response = await _upload(client, b"")
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "No image provided" in response.json()["detail"]

    async def test_corrupt_image_gives_generic_alert(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        response = await _upload(client, b"not really a png", content_type="image/png")
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Please try again" in response.json()["detail"]
        assert app.state.classifier.seen_shapes == []

    async def test_file_size_limit(self) -> None:
        app = create_app()
        _init_app_state(app, PHOTOCLASSIFY_MAX_FILE_SIZE="16")
        async for ac in _make_client(app):
            response = await _upload(ac, _png_bytes())
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    async def test_pixel_limit(self) -> None:
        app = create_app()
        _init_app_state(app, PHOTOCLASSIFY_MAX_IMAGE_PIXELS="100")
        async for ac in _make_client(app):
            response = await _upload(ac, _png_bytes((20, 20)))
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    async def test_classification_error_shows_fallback(self) -> None:
        app = create_app()
        _init_app_state(app, classifier=FakeClassifier(error=ClassificationError("session exploded")))
        async for ac in _make_client(app):
            response = await _upload(ac, _png_bytes())
            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert data["predictions"] == []
            assert data["display"] == NO_PREDICTIONS_MESSAGE
            assert "session exploded" not in response.text

    async def test_empty_predictions_show_fallback(self) -> None:
        app = create_app()
        _init_app_state(app, classifier=FakeClassifier(predictions=[]))
        async for ac in _make_client(app):
            response = await _upload(ac, _png_bytes())
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["display"] == NO_PREDICTIONS_MESSAGE

    async def test_busy_pool_returns_503(self, client: httpx.AsyncClient) -> None:
        with patch.object(InferencePool, "run", side_effect=TimeoutError()):
            response = await _upload(client, _png_bytes())
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["models_loaded"] == []
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, PHOTOCLASSIFY_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestModelsEndpoint:
    async def test_models_returns_list(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        names = {m["name"] for m in response.json()["models"]}
        assert names == {"mobilenet_v2", "resnet_50"}

    async def test_default_model_is_active(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        statuses = {m["name"]: m["status"] for m in response.json()["models"]}
        assert statuses == {"mobilenet_v2": "active", "resnet_50": "available"}

    async def test_configured_model_is_active(self) -> None:
        app = create_app()
        _init_app_state(app, PHOTOCLASSIFY_CLASSIFICATION_MODEL="resnet_50")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/models")
            statuses = {m["name"]: m["status"] for m in response.json()["models"]}
            assert statuses["resnet_50"] == "active"
            assert all(m["task"] == "image_classification" for m in response.json()["models"])


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, PHOTOCLASSIFY_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
            assert "PHOTOCLASSIFY_API_KEY" in response.json()["detail"]
            assert response.headers["www-authenticate"] == "Bearer"

    async def test_classify_requires_auth(self) -> None:
        app = create_app()
        _init_app_state(app, PHOTOCLASSIFY_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await _upload(ac, _png_bytes())
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
            assert app.state.classifier.seen_shapes == []

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, PHOTOCLASSIFY_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, PHOTOCLASSIFY_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code == status.HTTP_403_FORBIDDEN
            assert "denied" in response.json()["detail"]


class TestLifespan:
    async def test_lifespan_builds_and_tears_down_state(self, tmp_path: Path) -> None:
        app = create_app()
        with patch.dict(os.environ, {"PHOTOCLASSIFY_MODELS_DIR": str(tmp_path)}):
            async with lifespan(app):
                assert app.state.settings.models_dir == str(tmp_path)
                assert app.state.classifier.model_name == "mobilenet_v2"
                assert app.state.model_manager.get_loaded_models() == []

    async def test_preload_warms_model_on_worker_thread(self, tmp_path: Path) -> None:
        warm_threads: list[str] = []

        def record_warm_up(_self: OnnxImageClassifier) -> None:
            warm_threads.append(threading.current_thread().name)

        app = create_app()
        env = {"PHOTOCLASSIFY_MODELS_DIR": str(tmp_path), "PHOTOCLASSIFY_PRELOAD_MODEL": "true"}
        with (
            patch.dict(os.environ, env),
            patch.object(OnnxImageClassifier, "warm_up", autospec=True, side_effect=record_warm_up) as warm_up,
        ):
            async with lifespan(app):
                warm_up.assert_called_once_with(app.state.classifier)
        assert len(warm_threads) == 1
        assert warm_threads[0].startswith("photoclassify-worker")

    async def test_no_preload_by_default(self, tmp_path: Path) -> None:
        app = create_app()
        with (
            patch.dict(os.environ, {"PHOTOCLASSIFY_MODELS_DIR": str(tmp_path)}),
            patch.object(OnnxImageClassifier, "warm_up", autospec=True) as warm_up,
        ):
            async with lifespan(app):
                pass
        warm_up.assert_not_called()

    async def test_preload_failure_aborts_startup(self, tmp_path: Path) -> None:
        app = create_app()
        env = {"PHOTOCLASSIFY_MODELS_DIR": str(tmp_path), "PHOTOCLASSIFY_PRELOAD_MODEL": "true"}
        with (
            patch.dict(os.environ, env),
            patch.object(OnnxImageClassifier, "warm_up", autospec=True, side_effect=OSError("hub unreachable")),
            pytest.raises(OSError, match="hub unreachable"),
        ):
            async with lifespan(app):
                pass


class TestAccessStatus:
    def _creds(self, token: str) -> HTTPAuthorizationCredentials:
        return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)

    def test_authorized_without_configured_key(self) -> None:
        assert access_status(Settings(api_key=None), None) is AccessStatus.AUTHORIZED

    def test_not_determined_without_credentials(self) -> None:
        assert access_status(Settings(api_key="k"), None) is AccessStatus.NOT_DETERMINED

    def test_denied_with_wrong_key(self) -> None:
        assert access_status(Settings(api_key="k"), self._creds("nope")) is AccessStatus.DENIED

    def test_authorized_with_matching_key(self) -> None:
        assert access_status(Settings(api_key="k"), self._creds("k")) is AccessStatus.AUTHORIZED
