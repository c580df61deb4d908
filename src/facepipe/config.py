"""Environment-based configuration for facepipe."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACEPIPE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEPIPE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ONNX Runtime device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    face_detection_model: str = "ssd_mobilenetv1"
    face_landmark_model: str = "face_landmark_68"
    face_recognition_model: str = "face_recognition_resnet"
    models_repo: str = "facepipe/facepipe-models"
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Detection defaults
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    max_results: int | None = Field(default=None, ge=1)
    iou_threshold: float = Field(default=0.5, gt=0.0, le=1.0)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
