"""Tensor engine: the allocation and release surface every stage goes through.

The engine is passed explicitly to every component instead of living in a
module global, so tests can swap in an instrumented engine and count what
was allocated and released.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from contextlib import AbstractContextManager

    from numpy.typing import NDArray

    from facepipe.ml.geometry import Rect

logger = logging.getLogger(__name__)

# Innermost active scope. Coroutines spawned inside a scope inherit it.
_active_scope: ContextVar[list[NDArray[np.float32]] | None] = ContextVar("facepipe_tensor_scope", default=None)


class TensorEngine(Protocol):
    """Protocol for the tensor operations the pipeline needs."""

    def from_pixels(self, pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
        """Convert an HxWxC uint8 image into a new float32 tensor."""
        ...

    def reshape(self, tensor: NDArray[np.float32], shape: Sequence[int]) -> NDArray[np.float32]: ...

    def crop(self, tensor: NDArray[np.float32], box: Rect) -> NDArray[np.float32]:
        """Copy the region ``box`` out of an HxWxC tensor."""
        ...

    def resize(self, tensor: NDArray[np.float32], height: int, width: int) -> NDArray[np.float32]: ...

    def pad_to_square(self, tensor: NDArray[np.float32], center: bool = False) -> NDArray[np.float32]: ...

    def stack(self, tensors: Sequence[NDArray[np.float32]]) -> NDArray[np.float32]: ...

    def release(self, tensor: NDArray[np.float32]) -> None:
        """Release a tensor. Tensors the engine did not allocate are ignored."""
        ...

    def scope(self) -> AbstractContextManager[None]:
        """Release every tensor allocated inside the block when it exits."""
        ...

    def keep(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Exempt a tensor from the active scope; the caller releases it."""
        ...


class NumpyTensorEngine:
    """numpy-backed engine that tracks every tensor it hands out."""

    def __init__(self) -> None:
        self._live: dict[int, NDArray[np.float32]] = {}
        self._allocated: int = 0
        self._released: int = 0
        self._lock = threading.Lock()

    # -- Bookkeeping --------------------------------------------------------

    @property
    def num_tensors(self) -> int:
        """Number of tensors allocated and not yet released."""
        with self._lock:
            return len(self._live)

    @property
    def num_allocated(self) -> int:
        with self._lock:
            return self._allocated

    @property
    def num_released(self) -> int:
        with self._lock:
            return self._released

    def is_live(self, tensor: NDArray[np.float32]) -> bool:
        with self._lock:
            return id(tensor) in self._live

    def _track(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        with self._lock:
            self._live[id(tensor)] = tensor
            self._allocated += 1
        active = _active_scope.get()
        if active is not None:
            active.append(tensor)
        return tensor

    def release(self, tensor: NDArray[np.float32]) -> None:
        with self._lock:
            if self._live.pop(id(tensor), None) is not None:
                self._released += 1

    @contextmanager
    def scope(self) -> Iterator[None]:
        tracked: list[NDArray[np.float32]] = []
        token = _active_scope.set(tracked)
        try:
            yield
        finally:
            _active_scope.reset(token)
            # Tensors a managed NetInput already disposed are skipped.
            remaining = [tensor for tensor in tracked if self.is_live(tensor)]
            for tensor in remaining:
                self.release(tensor)
            if remaining:
                logger.debug("Released %d scoped tensors", len(remaining))

    def keep(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        active = _active_scope.get()
        if active is not None:
            for i, candidate in enumerate(active):
                if candidate is tensor:
                    del active[i]
                    break
        return tensor

    # -- Operations ---------------------------------------------------------

    def from_pixels(self, pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
        arr = np.asarray(pixels)
        if arr.ndim == 2:
            arr = np.stack([arr, arr, arr], axis=-1)
        elif arr.ndim == 3 and arr.shape[2] == 4:
            arr = arr[:, :, :3]
        if arr.ndim != 3 or arr.shape[2] != 3:
            raise ValueError(f"Expected HxWx3 pixels, got shape {arr.shape}")
        return self._track(np.array(arr, dtype=np.float32))

    def reshape(self, tensor: NDArray[np.float32], shape: Sequence[int]) -> NDArray[np.float32]:
        return self._track(np.reshape(tensor, tuple(shape)))

    def crop(self, tensor: NDArray[np.float32], box: Rect) -> NDArray[np.float32]:
        x, y = int(box.x), int(box.y)
        w, h = int(box.width), int(box.height)
        return self._track(np.array(tensor[y : y + h, x : x + w, :], dtype=np.float32))

    def resize(self, tensor: NDArray[np.float32], height: int, width: int) -> NDArray[np.float32]:
        if tensor.shape[0] == height and tensor.shape[1] == width:
            return self._track(np.array(tensor, dtype=np.float32))
        # Mode "F" keeps float precision; Pillow resizes one channel at a time.
        channels = [
            np.asarray(
                Image.fromarray(np.ascontiguousarray(tensor[:, :, c], dtype=np.float32)).resize(
                    (width, height), Image.Resampling.BILINEAR
                ),
                dtype=np.float32,
            )
            for c in range(tensor.shape[2])
        ]
        return self._track(np.stack(channels, axis=-1))

    def pad_to_square(self, tensor: NDArray[np.float32], center: bool = False) -> NDArray[np.float32]:
        height, width = tensor.shape[:2]
        size = max(height, width)
        padded = np.zeros((size, size, tensor.shape[2]), dtype=np.float32)
        top, left = ((size - height) // 2, (size - width) // 2) if center else (0, 0)
        padded[top : top + height, left : left + width, :] = tensor
        return self._track(padded)

    def stack(self, tensors: Sequence[NDArray[np.float32]]) -> NDArray[np.float32]:
        return self._track(np.stack(tensors, axis=0).astype(np.float32, copy=False))
