"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status

from facepipe.api.middleware import verify_api_key
from facepipe.api.schemas import (
    DescribedFace,
    DetectedFace,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
)
from facepipe.errors import MediaLoadError, NetInputError
from facepipe.ml.media import MediaElement
from facepipe.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from facepipe.config import Settings
    from facepipe.ml.inference import InferencePool
    from facepipe.ml.model_manager import ModelManager
    from facepipe.ml.pipeline import FacePipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}

MinConfidence = Annotated[float | None, Query(ge=0.0, le=1.0, description="Minimum detection score")]
MaxResults = Annotated[int | None, Query(ge=1, description="Maximum number of faces returned")]


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_pipeline(request: Request) -> FacePipeline:
    pipeline: FacePipeline = request.app.state.pipeline
    return pipeline


async def _read_media(file: UploadFile, settings: Settings) -> MediaElement:
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the limit of {settings.max_file_size} bytes",
        )
    return MediaElement(data, name=file.filename, max_pixels=settings.max_image_pixels)


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, TimeoutError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Inference queue is full")
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


@router.post(
    "/detect-faces",
    response_model=list[DetectedFace],
    responses=_ERROR_RESPONSES,
    summary="Detect faces in an image",
)
async def detect_faces(
    request: Request,
    file: UploadFile,
    min_confidence: MinConfidence = None,
    max_results: MaxResults = None,
) -> list[DetectedFace]:
    """Return face boxes and scores for an uploaded image."""
    settings = _get_settings(request)
    media = await _read_media(file, settings)
    try:
        detections = await _get_pipeline(request).detect_faces(
            media,
            min_confidence if min_confidence is not None else settings.min_confidence,
            max_results if max_results is not None else settings.max_results,
        )
    except (NetInputError, MediaLoadError, TimeoutError) as exc:
        raise _to_http_error(exc) from exc
    return [DetectedFace.from_detection(d) for d in detections]


@router.post(
    "/describe-faces",
    response_model=list[DescribedFace],
    responses=_ERROR_RESPONSES,
    summary="Detect faces and compute landmarks and descriptors",
)
async def describe_faces(
    request: Request,
    file: UploadFile,
    min_confidence: MinConfidence = None,
    max_results: MaxResults = None,
) -> list[DescribedFace]:
    """Return a full description (box, landmarks, descriptor) per face."""
    settings = _get_settings(request)
    media = await _read_media(file, settings)
    try:
        descriptions = await _get_pipeline(request).describe_all_faces(
            media,
            min_confidence if min_confidence is not None else settings.min_confidence,
            max_results if max_results is not None else settings.max_results,
        )
    except (NetInputError, MediaLoadError, TimeoutError) as exc:
        raise _to_http_error(exc) from exc
    logger.info("Described %d faces in %s", len(descriptions), media.name)
    return [DescribedFace.from_description(d) for d in descriptions]


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return known models and whether each is the one configured for its stage."""
    settings = _get_settings(request)
    active_models = {
        settings.face_detection_model,
        settings.face_landmark_model,
        settings.face_recognition_model,
    }
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                task=spec.task,
                status="active" if spec.name in active_models else "available",
                input_size=spec.input_size,
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
