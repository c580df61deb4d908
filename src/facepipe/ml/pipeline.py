"""Full face description pipeline: detect, landmark, align, describe.

Stage order for one image:

    detect -> crop raw faces -> landmarks -> align boxes
           -> crop aligned faces -> descriptors (concurrent per face) -> assemble

Crops live in an engine scope per step and are released before the next
step allocates, on success and on failure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from facepipe.ml.extract_faces import extract_face_tensors
from facepipe.ml.face_detector import OnnxFaceDetector
from facepipe.ml.face_landmarks import OnnxFaceLandmarker
from facepipe.ml.face_recognizer import OnnxFaceRecognizer
from facepipe.ml.net_input import claim_net_input

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import numpy as np
    from numpy.typing import NDArray

    from facepipe.config import Settings
    from facepipe.ml.face_detector import FaceDetection, FaceDetector
    from facepipe.ml.face_landmarks import FaceLandmarker, FaceLandmarks
    from facepipe.ml.face_recognizer import FaceRecognizer
    from facepipe.ml.inference import InferencePool
    from facepipe.ml.media import MediaResolver
    from facepipe.ml.model_manager import ModelManager
    from facepipe.ml.tensor_engine import TensorEngine

    AllFacesFunction = Callable[..., Awaitable[list["FullFaceDescription"]]]

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FullFaceDescription:
    """Detection, landmarks in image space, and descriptor for one face."""

    detection: FaceDetection
    landmarks: FaceLandmarks
    descriptor: NDArray[np.float32] = field(compare=False, repr=False)


async def _gather_all_or_cancel(calls: list[Awaitable[T]]) -> list[T]:
    """Await all calls in order; on the first failure cancel and await the rest.

    No call is still running when this returns or raises, so the tensors the
    calls read can be released right after.
    """
    tasks = [asyncio.ensure_future(call) for call in calls]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def all_faces_factory(
    detector: FaceDetector,
    landmarker: FaceLandmarker,
    recognizer: FaceRecognizer,
    engine: TensorEngine,
    resolver: MediaResolver | None = None,
) -> AllFacesFunction:
    """Compose the three stages into one call.

    Returns:
        ``async (inputs, min_confidence=0.5, max_results=None) ->
        list[FullFaceDescription]``, one entry per detection in detection
        order. Any stage error propagates and no partial result is returned.
    """

    async def all_faces(
        inputs: object,
        min_confidence: float = 0.5,
        max_results: int | None = None,
    ) -> list[FullFaceDescription]:
        async with claim_net_input(inputs, engine, resolver) as net_input:
            if net_input.batch_size > 1:
                raise ValueError(f"all_faces - expected a single image, got a batch of {net_input.batch_size}")
            width = net_input.get_input_width(0)
            height = net_input.get_input_height(0)

            detections = await detector.locate_faces(net_input, min_confidence, max_results)
            if not detections:
                return []
            crop_boxes = [d.box.clip_at_image_borders(width, height) for d in detections]

            with engine.scope():
                face_tensors = extract_face_tensors(engine, net_input, crop_boxes)
                landmarks_by_face = await landmarker.detect_landmarks(face_tensors)
            if not isinstance(landmarks_by_face, list) or len(landmarks_by_face) != len(detections):
                raise RuntimeError("all_faces - landmark stage returned a result count that does not match detections")

            aligned_boxes = [
                landmarks.align(box).clip_at_image_borders(width, height)
                for landmarks, box in zip(landmarks_by_face, crop_boxes)
            ]

            with engine.scope():
                aligned_tensors = extract_face_tensors(engine, net_input, aligned_boxes)
                descriptors = await _gather_all_or_cancel(
                    [recognizer.compute_face_descriptor(tensor) for tensor in aligned_tensors]
                )

            logger.debug("Described %d faces", len(detections))
            return [
                FullFaceDescription(
                    detection=detection,
                    landmarks=landmarks.shift_by(box.x, box.y),
                    descriptor=descriptor,
                )
                for detection, landmarks, box, descriptor in zip(
                    detections, landmarks_by_face, crop_boxes, descriptors
                )
            ]

    return all_faces


class FacePipeline:
    """The three configured stages plus the composed full-description call."""

    def __init__(
        self,
        detector: FaceDetector,
        landmarker: FaceLandmarker,
        recognizer: FaceRecognizer,
        engine: TensorEngine,
        resolver: MediaResolver | None = None,
    ) -> None:
        self.detector = detector
        self.landmarker = landmarker
        self.recognizer = recognizer
        self.engine = engine
        self._all_faces = all_faces_factory(detector, landmarker, recognizer, engine, resolver)

    async def detect_faces(
        self,
        inputs: object,
        min_confidence: float = 0.5,
        max_results: int | None = None,
    ) -> list[FaceDetection]:
        return await self.detector.locate_faces(inputs, min_confidence, max_results)

    async def describe_all_faces(
        self,
        inputs: object,
        min_confidence: float = 0.5,
        max_results: int | None = None,
    ) -> list[FullFaceDescription]:
        return await self._all_faces(inputs, min_confidence, max_results)


def build_pipeline(
    settings: Settings,
    model_manager: ModelManager,
    engine: TensorEngine,
    pool: InferencePool | None = None,
    resolver: MediaResolver | None = None,
) -> FacePipeline:
    """Wire the ONNX stages selected in ``settings``."""
    detector = OnnxFaceDetector(
        model_manager,
        settings.face_detection_model,
        engine,
        pool=pool,
        resolver=resolver,
        iou_threshold=settings.iou_threshold,
    )
    landmarker = OnnxFaceLandmarker(model_manager, settings.face_landmark_model, engine, pool=pool, resolver=resolver)
    recognizer = OnnxFaceRecognizer(model_manager, settings.face_recognition_model, engine, pool=pool, resolver=resolver)
    return FacePipeline(detector, landmarker, recognizer, engine, resolver)
