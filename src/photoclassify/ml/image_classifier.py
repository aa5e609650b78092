"""Image classification over a pretrained ImageNet model via ONNX."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from photoclassify.formatting import confidence_percentage
from photoclassify.ml.model_manager import get_model_spec
from photoclassify.ml.preprocessing import prepare_input

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from photoclassify.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


class ClassificationError(RuntimeError):
    """Raised when the model fails to run or returns unusable output."""


@dataclass(frozen=True)
class Prediction:
    """A single classification prediction."""

    # Raw model label, possibly several comma-separated synonyms.
    classification: str
    # Decimal percentage string without the '%' suffix.
    confidence_percentage: str


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[Prediction]:
        """Classify an image and return ranked predictions.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of predictions sorted by confidence (descending).
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class OnnxImageClassifier:
    """Runs a registry model through a shared model manager.

    The session is created on the first call (or by ``warm_up``) and reused
    for every later request.
    """

    def __init__(self, model_manager: ModelManager, model_name: str, top_k: int = 5) -> None:
        self._model_manager = model_manager
        self._spec = get_model_spec(model_name)
        self._top_k = top_k

    @property
    def model_name(self) -> str:
        return self._spec.name

    def warm_up(self) -> None:
        """Load the session and labels ahead of the first request."""
        self._model_manager.get_session(self._spec.name)
        self._model_manager.get_labels(self._spec.name)

    def classify(self, image: NDArray[np.uint8]) -> list[Prediction]:
        """Classify an image and return the top-k ranked predictions.

        Raises:
            ClassificationError: If preprocessing fails, the model cannot be
                loaded or run, or its output doesn't match the label set.
        """
        try:
            tensor = prepare_input(image, self._spec)
            session = self._model_manager.get_session(self._spec.name)
            labels = self._model_manager.get_labels(self._spec.name)
            input_name = session.get_inputs()[0].name
            outputs = session.run(None, {input_name: tensor})
        except Exception as exc:
            raise ClassificationError(f"Inference failed for {self._spec.name}: {exc}") from exc

        if not outputs:
            return []

        logits = np.asarray(outputs[0], dtype=np.float32)
        if logits.ndim != 2 or logits.shape[0] != 1:
            raise ClassificationError(f"Unexpected output shape {logits.shape} from {self._spec.name}")
        if logits.shape[1] != len(labels):
            raise ClassificationError(
                f"Model {self._spec.name} produced {logits.shape[1]} scores for {len(labels)} labels"
            )

        scores = softmax(logits[0])
        ranked = np.argsort(scores)[::-1][: self._top_k]
        predictions = [
            Prediction(
                classification=labels[index],
                confidence_percentage=confidence_percentage(float(scores[index])),
            )
            for index in ranked
        ]
        logger.debug("Top prediction from %s: %s", self._spec.name, predictions[0] if predictions else None)
        return predictions
