"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from photoclassify.api.middleware import verify_api_key
from photoclassify.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImagePrediction,
    ModelInfo,
    ModelsResponse,
)
from photoclassify.formatting import format_predictions
from photoclassify.ml.image_classifier import ClassificationError
from photoclassify.ml.model_manager import MODEL_REGISTRY
from photoclassify.ml.preprocessing import ImageDecodeError, ImageTooLargeError, decode_image

if TYPE_CHECKING:
    from photoclassify.config import Settings
    from photoclassify.ml.image_classifier import ImageClassifier, Prediction
    from photoclassify.ml.inference import InferencePool
    from photoclassify.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

TRY_AGAIN_DETAIL = "Please try again..."


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_classifier(request: Request) -> ImageClassifier:
    classifier: ImageClassifier = request.app.state.classifier
    return classifier


def _classify_upload(classifier: ImageClassifier, image_bytes: bytes, max_pixels: int) -> list[Prediction]:
    image = decode_image(image_bytes, max_pixels)
    return classifier.classify(image)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return ranked predictions plus display text."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    classifier = _get_classifier(request)

    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File must be an image")

    contents = await file.read(settings.max_file_size + 1)
    if not contents:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"No image provided. {TRY_AGAIN_DETAIL}",
        )
    if len(contents) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    logger.info("Classifying %s (%d bytes)", file.filename, len(contents))
    predictions: list[Prediction] | None
    try:
        predictions = await pool.run(_classify_upload, classifier, contents, settings.max_image_pixels)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, retry later",
        ) from None
    except ImageTooLargeError as exc:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc)) from exc
    except ImageDecodeError as exc:
        logger.info("Rejected upload %s: %s", file.filename, exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{exc}. {TRY_AGAIN_DETAIL}",
        ) from exc
    except ClassificationError:
        logger.warning("Image classification error for %s", file.filename, exc_info=True)
        predictions = None

    return ClassifyImageResponse(
        model=classifier.model_name,
        predictions=[
            ImagePrediction(
                classification=prediction.classification,
                confidence_percentage=prediction.confidence_percentage,
            )
            for prediction in predictions or []
        ],
        display=format_predictions(predictions),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and which one is serving requests."""
    settings = _get_settings(request)

    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        models.append(
            ModelInfo(
                name=spec.name,
                task=spec.task,
                status="active" if spec.name == settings.classification_model else "available",
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)
