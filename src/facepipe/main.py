"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facepipe.api.routes import router
from facepipe.config import get_settings
from facepipe.ml.inference import InferencePool
from facepipe.ml.media import MediaResolver
from facepipe.ml.model_manager import OnnxModelManager
from facepipe.ml.pipeline import build_pipeline
from facepipe.ml.tensor_engine import NumpyTensorEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting facepipe (device=%s, max_concurrent=%s, detection=%s, landmarks=%s, recognition=%s)",
        settings.device,
        settings.max_concurrent,
        settings.face_detection_model,
        settings.face_landmark_model,
        settings.face_recognition_model,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.pipeline = build_pipeline(
        settings,
        model_manager,
        NumpyTensorEngine(),
        pool=inference_pool,
        resolver=MediaResolver(max_pixels=settings.max_image_pixels),
    )

    logger.info("facepipe ready")
    yield

    logger.info("Shutting down facepipe")
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("facepipe shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="facepipe",
        description="Face detection, landmark and descriptor pipeline over ONNX models",
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
