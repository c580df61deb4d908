"""Media elements and the resolver that turns identifiers into them.

A MediaElement wraps an image source that may still need decoding. The
decode runs in a worker thread the first time ``wait_loaded`` is awaited, so
several elements can load concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from PIL import Image

from facepipe.ml.preprocessing import decode_image, image_to_pixels

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class MediaElement:
    """An image source: encoded bytes, a file path, or a Pillow image."""

    def __init__(
        self,
        source: bytes | os.PathLike[str] | Image.Image,
        *,
        name: str | None = None,
        max_pixels: int | None = None,
    ) -> None:
        self._source = source
        self._max_pixels = max_pixels
        self._pixels: NDArray[np.uint8] | None = None
        self._lock = asyncio.Lock()
        self.name = name or (os.fspath(source) if isinstance(source, os.PathLike) else type(source).__name__)

    @property
    def is_loaded(self) -> bool:
        return self._pixels is not None

    @property
    def pixels(self) -> NDArray[np.uint8]:
        """Decoded HxWx3 RGB pixels. Only valid once loaded."""
        if self._pixels is None:
            raise RuntimeError(f"Media element {self.name!r} has not finished loading")
        return self._pixels

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    async def wait_loaded(self) -> None:
        """Decode the source if needed. Safe to await from several tasks."""
        if self._pixels is not None:
            return
        async with self._lock:
            if self._pixels is None:
                self._pixels = await asyncio.to_thread(self._decode)
                logger.debug("Loaded media %s (%dx%d)", self.name, self.width, self.height)

    def _decode(self) -> NDArray[np.uint8]:
        if isinstance(self._source, Image.Image):
            return image_to_pixels(self._source, self._max_pixels)
        if isinstance(self._source, bytes):
            return decode_image(self._source, self._max_pixels)
        return decode_image(Path(self._source).read_bytes(), self._max_pixels)

    def __repr__(self) -> str:
        return f"MediaElement(name={self.name!r}, loaded={self.is_loaded})"


class MediaResolver:
    """Resolves string identifiers to media elements.

    Identifiers are looked up among registered elements first, then treated
    as filesystem paths. Anything else stays unresolved.
    """

    def __init__(self, max_pixels: int | None = None) -> None:
        self._max_pixels = max_pixels
        self._registry: dict[str, MediaElement] = {}

    def register(self, media_id: str, media: MediaElement) -> None:
        self._registry[media_id] = media

    def resolve(self, identifier: str) -> MediaElement | None:
        media = self._registry.get(identifier)
        if media is not None:
            return media
        path = Path(identifier)
        if path.is_file():
            return MediaElement(path, name=identifier, max_pixels=self._max_pixels)
        return None
