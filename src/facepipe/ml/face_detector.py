"""Face detection stage.

Implementation: SSD MobileNetV1 exported to ONNX, 512x512 NHWC input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from facepipe.ml.geometry import Rect
from facepipe.ml.inference import run_inference
from facepipe.ml.net_input import claim_net_input

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facepipe.ml.inference import InferencePool
    from facepipe.ml.media import MediaResolver
    from facepipe.ml.model_manager import ModelManager
    from facepipe.ml.net_input import NetInput
    from facepipe.ml.tensor_engine import TensorEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceDetection:
    """A detected face: confidence score and box in image pixel space."""

    score: float
    box: Rect
    image_width: int
    image_height: int


class FaceDetector(Protocol):
    """Protocol for face detection stages."""

    async def locate_faces(
        self,
        inputs: object,
        min_confidence: float = 0.5,
        max_results: int | None = None,
    ) -> list[FaceDetection]:
        """Detect faces in a single image.

        Args:
            inputs: Anything ``to_net_input`` accepts, holding one image.
            min_confidence: Drop detections scoring below this.
            max_results: Keep at most this many detections.

        Returns:
            Detections sorted by descending score.
        """
        ...


def select_detections(
    boxes: NDArray[np.float32],
    scores: NDArray[np.float32],
    min_confidence: float,
    max_results: int | None = None,
    iou_threshold: float = 0.5,
) -> list[int]:
    """Pick detection indices: threshold, sort, suppress overlaps, cap.

    Boxes are (x_min, y_min, x_max, y_max). Equal scores keep their input
    order. Returns indices in descending score order.
    """
    candidates = np.flatnonzero(scores >= min_confidence)
    order = candidates[np.argsort(-scores[candidates], kind="stable")]

    x1, y1, x2, y2 = boxes[:, 0], boxes[:, 1], boxes[:, 2], boxes[:, 3]
    areas = np.maximum(0.0, x2 - x1) * np.maximum(0.0, y2 - y1)

    keep: list[int] = []
    while order.size > 0:
        if max_results is not None and len(keep) >= max_results:
            break
        i = int(order[0])
        keep.append(i)

        rest = order[1:]
        w = np.maximum(0.0, np.minimum(x2[i], x2[rest]) - np.maximum(x1[i], x1[rest]))
        h = np.maximum(0.0, np.minimum(y2[i], y2[rest]) - np.maximum(y1[i], y1[rest]))
        inter = w * h
        iou = inter / np.maximum(areas[i] + areas[rest] - inter, 1e-8)
        order = rest[iou <= iou_threshold]
    return keep


class OnnxFaceDetector:
    """SSD face detector running through an ONNX Runtime session.

    The model takes a (B, 512, 512, 3) float32 batch scaled to [-1, 1] and
    returns boxes (B, N, 4) as relative (x_min, y_min, x_max, y_max) and
    scores (B, N).
    """

    INPUT_SIZE = 512

    def __init__(
        self,
        model_manager: ModelManager,
        model_name: str,
        engine: TensorEngine,
        *,
        pool: InferencePool | None = None,
        resolver: MediaResolver | None = None,
        iou_threshold: float = 0.5,
    ) -> None:
        self._model_manager = model_manager
        self._model_name = model_name
        self._engine = engine
        self._pool = pool
        self._resolver = resolver
        self._iou_threshold = iou_threshold

    @property
    def model_name(self) -> str:
        return self._model_name

    async def detect(
        self,
        inputs: object,
        min_confidence: float = 0.5,
        max_results: int | None = None,
    ) -> list[list[FaceDetection]]:
        """Detect faces in every image of the input, one list per image."""
        async with claim_net_input(inputs, self._engine, self._resolver) as net_input:
            with self._engine.scope():
                batch = net_input.to_batch_tensor(self.INPUT_SIZE, center=False)
                boxes, scores = await run_inference(self._pool, self._forward, batch)
            return [
                self._to_detections(net_input, idx, boxes[idx], scores[idx], min_confidence, max_results)
                for idx in range(net_input.batch_size)
            ]

    async def locate_faces(
        self,
        inputs: object,
        min_confidence: float = 0.5,
        max_results: int | None = None,
    ) -> list[FaceDetection]:
        results = await self.detect(inputs, min_confidence, max_results)
        if len(results) != 1:
            raise ValueError(f"locate_faces - expected a single image, got a batch of {len(results)}")
        return results[0]

    # -- Internal -----------------------------------------------------------

    def _forward(self, batch: NDArray[np.float32]) -> tuple[NDArray[np.float32], NDArray[np.float32]]:
        session = self._model_manager.get_session(self._model_name)
        input_name = session.get_inputs()[0].name
        normalized = (batch * (2.0 / 255.0) - 1.0).astype(np.float32)
        boxes, scores = session.run(None, {input_name: normalized})[:2]
        return np.asarray(boxes, dtype=np.float32), np.asarray(scores, dtype=np.float32)

    def _to_detections(
        self,
        net_input: NetInput,
        idx: int,
        boxes: NDArray[np.float32],
        scores: NDArray[np.float32],
        min_confidence: float,
        max_results: int | None,
    ) -> list[FaceDetection]:
        height = net_input.get_input_height(idx)
        width = net_input.get_input_width(idx)
        # Inputs are padded bottom/right to a square of the longer side.
        side = max(height, width)
        pixel_boxes = boxes * side
        pixel_boxes[:, [0, 2]] = np.clip(pixel_boxes[:, [0, 2]], 0, width)
        pixel_boxes[:, [1, 3]] = np.clip(pixel_boxes[:, [1, 3]], 0, height)

        keep = select_detections(pixel_boxes, scores, min_confidence, max_results, self._iou_threshold)
        logger.debug("Detected %d faces (of %d candidates) in item %d", len(keep), len(scores), idx)
        return [
            FaceDetection(
                score=float(scores[i]),
                box=Rect(
                    float(pixel_boxes[i, 0]),
                    float(pixel_boxes[i, 1]),
                    float(pixel_boxes[i, 2] - pixel_boxes[i, 0]),
                    float(pixel_boxes[i, 3] - pixel_boxes[i, 1]),
                ),
                image_width=width,
                image_height=height,
            )
            for i in keep
        ]
