"""Pydantic request/response schemas for the PhotoClassify API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImagePrediction(BaseModel):
    """A single ranked classification result."""

    classification: str = Field(description="Raw model label, may contain comma-separated synonyms")
    confidence_percentage: str = Field(description="Confidence as a percentage string without '%'")


class ClassifyImageResponse(BaseModel):
    """Response for image classification endpoint."""

    model: str
    predictions: list[ImagePrediction]
    display: str = Field(description="Top predictions formatted for display, one per line")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
