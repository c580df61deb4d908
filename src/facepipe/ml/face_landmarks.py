"""Face landmark stage and the landmark geometry used for alignment.

Implementations: 68-point landmark net (full and tiny), 112x112 input.
Five-point landmark sets (eyes, nose tip, mouth corners) are supported by
the geometry as well.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Protocol

import numpy as np

from facepipe.ml.geometry import Point, Rect, center_point
from facepipe.ml.inference import run_inference
from facepipe.ml.net_input import claim_net_input

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from facepipe.ml.inference import InferencePool
    from facepipe.ml.media import MediaResolver
    from facepipe.ml.model_manager import ModelManager
    from facepipe.ml.net_input import NetInput
    from facepipe.ml.tensor_engine import TensorEngine

logger = logging.getLogger(__name__)

# Index ranges into the 68-point layout.
_LEFT_EYE_68 = range(36, 42)
_RIGHT_EYE_68 = range(42, 48)
_MOUTH_68 = range(48, 68)


class FaceLandmarks:
    """Landmark points for one face.

    Points are stored in the coordinate space of the image they were
    detected on (usually a face crop), plus an accumulated shift that
    re-expresses them in another space.
    """

    def __init__(
        self,
        positions: Sequence[Point] | NDArray[np.float32],
        image_width: int,
        image_height: int,
        shift: Point = Point(0, 0),
    ) -> None:
        if isinstance(positions, np.ndarray):
            positions = [Point(float(x), float(y)) for x, y in positions.reshape(-1, 2)]
        self._positions: tuple[Point, ...] = tuple(positions)
        self._image_width = image_width
        self._image_height = image_height
        self._shift = shift

    @property
    def positions(self) -> list[Point]:
        """Points with the shift applied."""
        return [pt.add(self._shift) for pt in self._positions]

    @property
    def shift(self) -> Point:
        return self._shift

    @property
    def image_width(self) -> int:
        return self._image_width

    @property
    def image_height(self) -> int:
        return self._image_height

    def __len__(self) -> int:
        return len(self._positions)

    def __repr__(self) -> str:
        return f"FaceLandmarks(points={len(self)}, shift=({self._shift.x}, {self._shift.y}))"

    def shift_by(self, x: float = 0, y: float = 0) -> FaceLandmarks:
        return FaceLandmarks(self._positions, self._image_width, self._image_height, self._shift.add(Point(x, y)))

    def ref_points_for_alignment(self) -> list[Point]:
        """Left eye center, right eye center and mouth center."""
        pts = self.positions
        if len(pts) == 68:
            return [
                center_point([pts[i] for i in _LEFT_EYE_68]),
                center_point([pts[i] for i in _RIGHT_EYE_68]),
                center_point([pts[i] for i in _MOUTH_68]),
            ]
        if len(pts) == 5:
            return [pts[0], pts[1], center_point([pts[3], pts[4]])]
        raise ValueError(f"Cannot align a face with {len(pts)} landmarks; expected 5 or 68")

    def align(self, box: Rect | None = None) -> Rect:
        """Compute a face box centered on eyes and mouth.

        When ``box`` is given the landmarks are taken to be relative to that
        box and the result is in the box's coordinate space.
        """
        if box is not None:
            floored = box.floor()
            return self.shift_by(floored.x, floored.y).align()

        left_eye, right_eye, mouth = self.ref_points_for_alignment()
        eye_to_mouth = (mouth.sub(left_eye).magnitude() + mouth.sub(right_eye).magnitude()) / 2
        size = max(1, math.floor(eye_to_mouth / 0.45))

        ref = center_point([left_eye, right_eye, mouth])
        x = math.floor(max(0.0, ref.x - 0.5 * size))
        y = math.floor(max(0.0, ref.y - 0.43 * size))
        return Rect(x, y, size, size)


class FaceLandmarker(Protocol):
    """Protocol for landmark stages."""

    async def detect_landmarks(self, inputs: object) -> FaceLandmarks | list[FaceLandmarks]:
        """Detect landmarks on face crops.

        Args:
            inputs: A single face crop or a list of them.

        Returns:
            One FaceLandmarks per crop, in input order; a single
            FaceLandmarks when the input was not a list.
        """
        ...


class OnnxFaceLandmarker:
    """Landmark net running through an ONNX Runtime session.

    The model takes a (B, 112, 112, 3) float32 batch, mean-subtracted and
    scaled to [0, 1], and returns (B, 2 * points) relative x/y pairs within
    the padded input square.
    """

    INPUT_SIZE = 112
    MEAN_RGB = (122.782, 117.001, 104.298)

    def __init__(
        self,
        model_manager: ModelManager,
        model_name: str,
        engine: TensorEngine,
        *,
        pool: InferencePool | None = None,
        resolver: MediaResolver | None = None,
    ) -> None:
        self._model_manager = model_manager
        self._model_name = model_name
        self._engine = engine
        self._pool = pool
        self._resolver = resolver

    @property
    def model_name(self) -> str:
        return self._model_name

    async def detect_landmarks(self, inputs: object) -> FaceLandmarks | list[FaceLandmarks]:
        async with claim_net_input(inputs, self._engine, self._resolver) as net_input:
            with self._engine.scope():
                batch = net_input.to_batch_tensor(self.INPUT_SIZE, center=True)
                output = await run_inference(self._pool, self._forward, batch)
            landmarks = [self._to_landmarks(net_input, idx, output[idx]) for idx in range(net_input.batch_size)]
            return landmarks if net_input.is_batch_input else landmarks[0]

    def _forward(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        session = self._model_manager.get_session(self._model_name)
        input_name = session.get_inputs()[0].name
        normalized = ((batch - np.array(self.MEAN_RGB, dtype=np.float32)) / 255.0).astype(np.float32)
        output = session.run(None, {input_name: normalized})[0]
        return np.asarray(output, dtype=np.float32)

    def _to_landmarks(self, net_input: NetInput, idx: int, output: NDArray[np.float32]) -> FaceLandmarks:
        height = net_input.get_input_height(idx)
        width = net_input.get_input_width(idx)
        new_height, new_width = net_input.get_reshaped_input_dimensions(idx)
        padding = net_input.get_padding(idx)

        points = output.reshape(-1, 2) * self.INPUT_SIZE
        points[:, 0] = (points[:, 0] - padding.x) * (width / new_width)
        points[:, 1] = (points[:, 1] - padding.y) * (height / new_height)
        return FaceLandmarks(points, width, height)
