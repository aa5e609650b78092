"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from photoclassify.api.routes import router
from photoclassify.config import Settings, get_settings
from photoclassify.ml.image_classifier import OnnxImageClassifier
from photoclassify.ml.inference import InferencePool
from photoclassify.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Attach settings, inference pool, model manager and classifier to the app."""
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.model_manager = OnnxModelManager(settings)
    app.state.classifier = OnnxImageClassifier(
        app.state.model_manager,
        settings.classification_model,
        top_k=settings.top_k,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting PhotoClassify (device=%s, max_concurrent=%s, model=%s, top_k=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
        settings.top_k,
    )

    init_state(app, settings)

    if settings.preload_model:
        logger.info("Preloading %s", settings.classification_model)
        await app.state.inference_pool.run(app.state.classifier.warm_up)

    logger.info("PhotoClassify ready")
    yield

    logger.info("Shutting down PhotoClassify")
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("PhotoClassify shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="PhotoClassify",
        description="Classify a photo with a pretrained ImageNet model and return its top labels",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("photoclassify.main:app", host=settings.host, port=settings.port)
