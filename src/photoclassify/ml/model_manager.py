"""Model manager: download, load and cache ONNX classification models.

Handles downloading models and their label files from HuggingFace, and
creating one ONNX InferenceSession per model that lives as long as the
process does.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from photoclassify.config import Settings

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

    def get_labels(self, model_name: str) -> list[str]:
        """Return class labels ordered by model output index."""
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


class ModelTask(StrEnum):
    IMAGE_CLASSIFICATION = "image_classification"


IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    labels_filename: str
    task: ModelTask
    license: str
    resize_size: int
    crop_size: int
    mean: tuple[float, float, float]
    std: tuple[float, float, float]


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenet_v2": ModelSpec(
        name="mobilenet_v2",
        repo_id="Xenova/mobilenet_v2_1.0_224",
        filename="model.onnx",
        subfolder="onnx",
        labels_filename="config.json",
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
        resize_size=256,
        crop_size=224,
        mean=(0.5, 0.5, 0.5),
        std=(0.5, 0.5, 0.5),
    ),
    "resnet_50": ModelSpec(
        name="resnet_50",
        repo_id="Xenova/resnet-50",
        filename="model.onnx",
        subfolder="onnx",
        labels_filename="config.json",
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
        resize_size=256,
        crop_size=224,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
    ),
}


def get_model_spec(model_name: str) -> ModelSpec:
    """Look up a registry entry by name."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads and caches ONNX inference sessions and label lists."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._labels: dict[str, list[str]] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally."""
        spec = get_model_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir / spec.name),
            )
        )
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the cached InferenceSession, creating one on first use."""
        with self._lock:
            session = self._sessions.get(model_name)
            if session is not None:
                return session

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def get_labels(self, model_name: str) -> list[str]:
        """Return the model's class labels, indexed by output position."""
        with self._lock:
            labels = self._labels.get(model_name)
            if labels is not None:
                return labels

        spec = get_model_spec(model_name)
        config_path = hf_hub_download(
            repo_id=spec.repo_id,
            filename=spec.labels_filename,
            local_dir=str(self._models_dir / spec.name),
        )
        with Path(config_path).open(encoding="utf-8") as fh:
            id2label: dict[str, str] = json.load(fh)["id2label"]
        labels = [label for _, label in sorted(id2label.items(), key=lambda item: int(item[0]))]

        with self._lock:
            self._labels.setdefault(model_name, labels)
            logger.info("Loaded %d labels for %s", len(labels), model_name)
            return self._labels[model_name]

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions and labels."""
        with self._lock:
            self._sessions.clear()
            self._labels.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

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
