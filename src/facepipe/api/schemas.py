"""Pydantic request/response schemas for the facepipe API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from facepipe.ml.face_detector import FaceDetection
    from facepipe.ml.pipeline import FullFaceDescription


class BoundingBox(BaseModel):
    """Face box in image pixels."""

    x: float
    y: float
    width: float
    height: float


class LandmarkPoint(BaseModel):
    x: float
    y: float


class DetectedFace(BaseModel):
    """A single detected face."""

    box: BoundingBox
    score: float = Field(description="Detection confidence (0.0-1.0)")

    @classmethod
    def from_detection(cls, detection: FaceDetection) -> DetectedFace:
        box = detection.box
        return cls(
            box=BoundingBox(x=box.x, y=box.y, width=box.width, height=box.height),
            score=detection.score,
        )


class DescribedFace(DetectedFace):
    """A detected face with landmarks in image pixels and its descriptor."""

    landmarks: list[LandmarkPoint]
    descriptor: list[float] = Field(description="Face descriptor (128 dimensions)")

    @classmethod
    def from_description(cls, description: FullFaceDescription) -> DescribedFace:
        detected = DetectedFace.from_detection(description.detection)
        return cls(
            box=detected.box,
            score=detected.score,
            landmarks=[LandmarkPoint(x=pt.x, y=pt.y) for pt in description.landmarks.positions],
            descriptor=[float(v) for v in description.descriptor],
        )


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
    task: str = Field(description="Model task: 'face_detection', 'face_landmarks', or 'face_recognition'")
    status: str = Field(description="Model status: 'active' or 'available'")
    input_size: int
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
