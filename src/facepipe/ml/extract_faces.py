"""Crop face regions out of a single-image NetInput."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray

    from facepipe.ml.geometry import Rect
    from facepipe.ml.net_input import NetInput
    from facepipe.ml.tensor_engine import TensorEngine

logger = logging.getLogger(__name__)


def extract_face_tensors(
    engine: TensorEngine,
    net_input: NetInput,
    boxes: Sequence[Rect],
) -> list[NDArray[np.float32]]:
    """Return one HxWx3 tensor per box, clipped to the image.

    The tensors are allocated through ``engine`` and belong to the caller's
    active scope.

    Raises:
        ValueError: If ``net_input`` holds more than one image.
    """
    if net_input.batch_size > 1:
        raise ValueError("extract_face_tensors - batch size > 1 not supported")

    image = net_input.get_input(0)
    height, width = image.shape[:2]
    faces = [engine.crop(image, box.clip_at_image_borders(width, height)) for box in boxes]
    logger.debug("Extracted %d face tensors from a %dx%d image", len(faces), width, height)
    return faces
