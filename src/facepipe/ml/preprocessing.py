"""Image decoding: format detection, EXIF orientation, RGB conversion and size limits."""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from facepipe.errors import MediaLoadError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


def image_to_pixels(image: Image.Image, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Convert a Pillow image into an HxWx3 RGB uint8 array.

    Raises:
        MediaLoadError: If the image exceeds ``max_pixels``.
    """
    if max_pixels is not None and image.width * image.height > max_pixels:
        raise MediaLoadError(f"Image of {image.width}x{image.height} exceeds the limit of {max_pixels} pixels")
    image = ImageOps.exif_transpose(image)
    if image.mode != "RGB":
        image = image.convert("RGB")
    return np.asarray(image, dtype=np.uint8)


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Optional upper bound on width * height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        MediaLoadError: If the image cannot be decoded or exceeds size limits.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            image.load()
            pixels = image_to_pixels(image, max_pixels)
    except (UnidentifiedImageError, OSError) as exc:
        raise MediaLoadError(f"Could not decode image: {exc}") from exc
    logger.debug("Decoded image of shape %s", pixels.shape)
    return pixels
