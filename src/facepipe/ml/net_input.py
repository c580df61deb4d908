"""Canonical network input and the coercion from caller-supplied input.

Callers may pass a media element, a list of media elements and 3D tensors,
or a pre-batched 4D tensor. ``tag_input`` classifies each value once into a
tagged variant; ``to_net_input`` then validates, resolves identifiers,
waits for media to load and returns a NetInput that every stage accepts.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image

from facepipe.errors import (
    EmptyInputError,
    InvalidBatchSizeError,
    UnresolvedIdentifierError,
    UnsupportedTypeError,
)
from facepipe.ml.geometry import Point
from facepipe.ml.media import MediaElement, MediaResolver

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from numpy.typing import NDArray

    from facepipe.ml.tensor_engine import TensorEngine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tagged raw input
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MediaInput:
    media: MediaElement


@dataclass(frozen=True, eq=False)
class TensorInput:
    tensor: NDArray[np.float32]


@dataclass(frozen=True)
class IdentifierInput:
    identifier: str


@dataclass(frozen=True)
class UnsupportedInput:
    value: object = field(repr=False)

    @property
    def type_name(self) -> str:
        return type(self.value).__name__


RawInput = MediaInput | TensorInput | IdentifierInput | UnsupportedInput

_TAGGED_TYPES = (MediaInput, TensorInput, IdentifierInput, UnsupportedInput)


def tag_input(value: object) -> RawInput:
    """Classify one caller-supplied value. Never raises.

    Media sources are only wrapped here; decoding and pixel conversion happen
    when ``to_net_input`` waits for them to load.
    """
    if isinstance(value, _TAGGED_TYPES):
        return value
    if isinstance(value, MediaElement):
        return MediaInput(value)
    if isinstance(value, (Image.Image, bytes, os.PathLike)):
        return MediaInput(MediaElement(value))
    if isinstance(value, np.ndarray):
        return TensorInput(value)
    if isinstance(value, str):
        return IdentifierInput(value)
    return UnsupportedInput(value)


# ---------------------------------------------------------------------------
# NetInput
# ---------------------------------------------------------------------------


class NetInput:
    """A validated batch of loaded images, ready for any stage.

    Items are either media elements (converted to tensors on construction)
    or 3D HxWxC tensors; alternatively the whole batch is one 4D tensor.
    A managed input releases both the tensors it created and the ones the
    caller supplied on ``dispose``; an unmanaged one leaves them to the caller.
    """

    def __init__(
        self,
        inputs: NDArray[np.float32] | list[MediaElement | NDArray[np.float32]],
        engine: TensorEngine,
        is_batch_input: bool = False,
        owned_tensors: list[NDArray[np.float32]] | None = None,
    ) -> None:
        self._engine = engine
        self._is_managed = False
        self._owned: list[NDArray[np.float32]] = list(owned_tensors or [])
        self._batch_tensor: NDArray[np.float32] | None = None
        self._items: list[NDArray[np.float32]] = []
        self._caller_tensors: list[NDArray[np.float32]] = []
        self._disposed = False

        if isinstance(inputs, np.ndarray):
            if inputs.ndim != 4:
                raise ValueError(f"NetInput - expected a 4D tensor, got {inputs.ndim}D")
            self._batch_tensor = inputs
            self._caller_tensors.append(inputs)
            self._is_batch_input = inputs.shape[0] > 1
            self._input_dimensions = [tuple(inputs.shape[1:]) for _ in range(inputs.shape[0])]
        else:
            self._is_batch_input = is_batch_input
            owned_ids = {id(t) for t in self._owned}
            for item in inputs:
                if isinstance(item, MediaElement):
                    tensor = engine.keep(engine.from_pixels(item.pixels))
                    self._owned.append(tensor)
                    self._items.append(tensor)
                else:
                    self._items.append(item)
                    if id(item) not in owned_ids:
                        self._caller_tensors.append(item)
            self._input_dimensions = [tuple(t.shape) for t in self._items]

        self._reshaped_dimensions: list[tuple[int, int] | None] = [None] * self.batch_size
        self._paddings: list[Point] = [Point(0, 0)] * self.batch_size

    # -- Properties ---------------------------------------------------------

    @property
    def is_managed(self) -> bool:
        return self._is_managed

    @property
    def is_batch_input(self) -> bool:
        return self._is_batch_input

    @property
    def batch_size(self) -> int:
        return len(self._input_dimensions)

    @property
    def input_dimensions(self) -> list[tuple[int, ...]]:
        return list(self._input_dimensions)

    def managed(self) -> NetInput:
        self._is_managed = True
        return self

    def get_input(self, batch_idx: int) -> NDArray[np.float32]:
        """Return the HxWxC tensor for one item."""
        if self._batch_tensor is not None:
            return self._engine.reshape(self._batch_tensor[batch_idx], self._batch_tensor.shape[1:])
        return self._items[batch_idx]

    def get_input_height(self, batch_idx: int) -> int:
        return int(self._input_dimensions[batch_idx][0])

    def get_input_width(self, batch_idx: int) -> int:
        return int(self._input_dimensions[batch_idx][1])

    def get_reshaped_input_dimensions(self, batch_idx: int) -> tuple[int, int]:
        dims = self._reshaped_dimensions[batch_idx]
        if dims is None:
            raise RuntimeError("NetInput - to_batch_tensor has not been called")
        return dims

    def get_padding(self, batch_idx: int) -> Point:
        """Offset of the resized item inside its padded square."""
        return self._paddings[batch_idx]

    # -- Conversion ---------------------------------------------------------

    def to_batch_tensor(self, input_size: int, center: bool = True) -> NDArray[np.float32]:
        """Resize every item so its longer side is ``input_size``, pad to a square and stack.

        All intermediates, including the returned tensor, are allocated
        through the engine and land in the caller's active scope.
        """
        squares = []
        for idx in range(self.batch_size):
            tensor = self.get_input(idx)
            height, width = tensor.shape[:2]
            scale = input_size / max(height, width)
            new_height = max(1, round(height * scale))
            new_width = max(1, round(width * scale))
            resized = self._engine.resize(tensor, new_height, new_width)
            squares.append(self._engine.pad_to_square(resized, center=center))

            self._reshaped_dimensions[idx] = (new_height, new_width)
            self._paddings[idx] = (
                Point((input_size - new_width) // 2, (input_size - new_height) // 2) if center else Point(0, 0)
            )
        return self._engine.stack(squares)

    def dispose(self) -> None:
        """Release each of this input's tensors once. No-op unless managed."""
        if not self._is_managed or self._disposed:
            return
        self._disposed = True
        for tensor in (*self._owned, *self._caller_tensors):
            self._engine.release(tensor)
        logger.debug("Disposed managed NetInput with %d items", self.batch_size)


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def _resolve(raw: RawInput, resolver: MediaResolver) -> RawInput:
    if isinstance(raw, IdentifierInput):
        media = resolver.resolve(raw.identifier)
        if media is not None:
            return MediaInput(media)
    return raw


async def to_net_input(
    inputs: object,
    engine: TensorEngine,
    manage_created_input: bool = False,
    resolver: MediaResolver | None = None,
) -> NetInput:
    """Validate the input and wait for all media elements to finish loading.

    Args:
        inputs: A NetInput, a media element or tensor, a list of those, or
            a pre-batched 4D tensor.
        engine: Tensor engine that owns any tensors created here.
        manage_created_input: If a new NetInput is created, whether it is
            managed (its tensors released on dispose).
        resolver: Resolves string identifiers; defaults to filesystem paths.

    Returns:
        A NetInput; the same instance when one was passed in.

    Raises:
        EmptyInputError: If an empty list was passed.
        InvalidBatchSizeError: If a 4D tensor in a list has batch size != 1.
        UnresolvedIdentifierError: If a string could not be resolved to media.
        UnsupportedTypeError: For any other unsupported element.
    """
    if isinstance(inputs, NetInput):
        return inputs

    def after_create(net_input: NetInput) -> NetInput:
        return net_input.managed() if manage_created_input else net_input

    is_list = isinstance(inputs, (list, tuple))
    if not is_list:
        tagged = tag_input(inputs)
        if isinstance(tagged, TensorInput) and tagged.tensor.ndim == 4:
            return after_create(NetInput(tagged.tensor, engine))

    raw_items = list(inputs) if is_list else [inputs]  # type: ignore[call-overload]
    if not raw_items:
        raise EmptyInputError()

    def idx_hint(idx: int) -> int | None:
        return idx if is_list else None

    resolver = resolver or MediaResolver()
    resolved = [_resolve(tag_input(raw), resolver) for raw in raw_items]

    for idx, item in enumerate(resolved):
        if isinstance(item, TensorInput) and item.tensor.ndim == 4 and item.tensor.shape[0] != 1:
            raise InvalidBatchSizeError(item.tensor.shape[0], idx_hint(idx))

    for idx, item in enumerate(resolved):
        if isinstance(item, MediaInput):
            continue
        if isinstance(item, TensorInput):
            if item.tensor.ndim in (3, 4):
                continue
            raise UnsupportedTypeError(f"{item.tensor.ndim}D tensor", idx_hint(idx))
        if isinstance(item, IdentifierInput):
            raise UnresolvedIdentifierError(item.identifier, idx_hint(idx))
        raise UnsupportedTypeError(item.type_name, idx_hint(idx))

    await asyncio.gather(*(item.media.wait_loaded() for item in resolved if isinstance(item, MediaInput)))

    items: list[MediaElement | NDArray[np.float32]] = []
    owned: list[NDArray[np.float32]] = []
    for item in resolved:
        if isinstance(item, MediaInput):
            items.append(item.media)
        elif item.tensor.ndim == 4:
            tensor = engine.keep(engine.reshape(item.tensor, item.tensor.shape[1:]))
            owned.append(tensor)
            items.append(tensor)
        else:
            items.append(item.tensor)

    return after_create(NetInput(items, engine, is_batch_input=is_list, owned_tensors=owned))


# Ids of NetInputs claimed by an enclosing call in this context.
_claimed_inputs: ContextVar[frozenset[int]] = ContextVar("facepipe_claimed_inputs", default=frozenset())


@asynccontextmanager
async def claim_net_input(
    inputs: object,
    engine: TensorEngine,
    resolver: MediaResolver | None = None,
) -> AsyncIterator[NetInput]:
    """Coerce ``inputs`` and dispose the result when the outermost claim exits.

    Stages called from the pipeline receive a NetInput the pipeline already
    claimed; they use it without disposing it.
    """
    net_input = await to_net_input(inputs, engine, manage_created_input=True, resolver=resolver)
    claimed = _claimed_inputs.get()
    if id(net_input) in claimed:
        yield net_input
        return

    token = _claimed_inputs.set(claimed | {id(net_input)})
    try:
        yield net_input
    finally:
        _claimed_inputs.reset(token)
        net_input.dispose()
