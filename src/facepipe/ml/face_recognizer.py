"""Face recognition (descriptor) stage.

Implementation: ResNet-34 style recognition net, 150x150 input, 128-d output.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from facepipe.ml.inference import run_inference
from facepipe.ml.net_input import claim_net_input

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facepipe.ml.inference import InferencePool
    from facepipe.ml.media import MediaResolver
    from facepipe.ml.model_manager import ModelManager
    from facepipe.ml.tensor_engine import TensorEngine

logger = logging.getLogger(__name__)


class FaceRecognizer(Protocol):
    """Protocol for face recognition (descriptor) stages."""

    @property
    def descriptor_size(self) -> int:
        """Return the descriptor length (e.g., 128)."""
        ...

    async def compute_face_descriptor(self, inputs: object) -> NDArray[np.float32] | list[NDArray[np.float32]]:
        """Compute descriptors for aligned face crops.

        Args:
            inputs: A single aligned face crop or a list of them.

        Returns:
            One descriptor per crop in input order; a single descriptor when
            the input was not a list.
        """
        ...


def euclidean_distance(a: NDArray[np.float32], b: NDArray[np.float32]) -> float:
    """Distance between two descriptors; smaller means more alike."""
    if a.shape != b.shape:
        raise ValueError(f"Descriptor shapes differ: {a.shape} vs {b.shape}")
    return float(np.linalg.norm(np.asarray(a, dtype=np.float32) - np.asarray(b, dtype=np.float32)))


class OnnxFaceRecognizer:
    """Recognition net running through an ONNX Runtime session.

    The model takes a (B, 150, 150, 3) float32 batch, mean-subtracted and
    scaled by 1/256, and returns (B, 128) descriptors.
    """

    INPUT_SIZE = 150
    MEAN_RGB = (122.782, 117.001, 104.298)

    def __init__(
        self,
        model_manager: ModelManager,
        model_name: str,
        engine: TensorEngine,
        *,
        pool: InferencePool | None = None,
        resolver: MediaResolver | None = None,
        descriptor_size: int = 128,
    ) -> None:
        self._model_manager = model_manager
        self._model_name = model_name
        self._engine = engine
        self._pool = pool
        self._resolver = resolver
        self._descriptor_size = descriptor_size

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def descriptor_size(self) -> int:
        return self._descriptor_size

    async def compute_face_descriptor(self, inputs: object) -> NDArray[np.float32] | list[NDArray[np.float32]]:
        async with claim_net_input(inputs, self._engine, self._resolver) as net_input:
            with self._engine.scope():
                batch = net_input.to_batch_tensor(self.INPUT_SIZE, center=True)
                output = await run_inference(self._pool, self._forward, batch)
            descriptors = [output[idx] for idx in range(net_input.batch_size)]
            return descriptors if net_input.is_batch_input else descriptors[0]

    def _forward(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        session = self._model_manager.get_session(self._model_name)
        input_name = session.get_inputs()[0].name
        normalized = ((batch - np.array(self.MEAN_RGB, dtype=np.float32)) / 256.0).astype(np.float32)
        output = np.asarray(session.run(None, {input_name: normalized})[0], dtype=np.float32)
        output = output.reshape(batch.shape[0], -1)
        if output.shape[1] != self._descriptor_size:
            raise ValueError(
                f"Model {self._model_name} returned {output.shape[1]}-d descriptors, expected {self._descriptor_size}"
            )
        return output
