"""Image preprocessing: decode, orient, square-crop, and tensorize.

Uploaded images are decoded with Pillow, EXIF-rotated, converted to RGB,
center-cropped to a 1:1 aspect ratio and downscaled so neither side exceeds
the configured crop size.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from asclepius.config import Settings

logger = logging.getLogger(__name__)


class ImageDecodeError(ValueError):
    """Raised when uploaded bytes cannot be turned into a usable image."""


class ImagePreprocessor(Protocol):
    """Protocol for image preprocessing."""

    def crop_square(self, image_bytes: bytes) -> Image.Image:
        """Decode raw image bytes into a square RGB image.

        Raises:
            ImageDecodeError: If the image cannot be decoded or exceeds size limits.
        """
        ...

    def to_tensor(self, image: Image.Image) -> NDArray[np.float32]:
        """Convert a cropped image into a model input tensor."""
        ...


class SquareCropPreprocessor:
    """Center-crops uploads to a square of at most ``crop_size`` pixels per side."""

    def __init__(self, settings: Settings, input_size: int | None = None) -> None:
        self._crop_size = settings.crop_size
        self._input_size = input_size or settings.crop_size
        self._max_pixels = settings.max_image_pixels

    @property
    def crop_size(self) -> int:
        return self._crop_size

    def crop_square(self, image_bytes: bytes) -> Image.Image:
        if not image_bytes:
            raise ImageDecodeError("Image is empty")

        try:
            img = Image.open(io.BytesIO(image_bytes))
            width, height = img.size
            if width * height > self._max_pixels:
                raise ImageDecodeError(f"Image too large: {width}x{height} exceeds {self._max_pixels} pixels")
            img = ImageOps.exif_transpose(img)
            img = img.convert("RGB")
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
            raise ImageDecodeError(f"Failed to load image: {exc}") from exc

        side = min(img.size)
        target = min(side, self._crop_size)
        cropped = ImageOps.fit(img, (target, target), method=Image.Resampling.BILINEAR)
        logger.debug("Cropped %sx%s image to %sx%s", width, height, target, target)
        return cropped

    def to_tensor(self, image: Image.Image) -> NDArray[np.float32]:
        """Return a (1, 3, S, S) float32 tensor scaled to [0, 1], S being the model input size.

        Crops of any other size are resized to S.
        """
        size = (self._input_size, self._input_size)
        if image.size != size:
            image = image.resize(size, Image.Resampling.BILINEAR)
        array = np.asarray(image, dtype=np.float32) / 255.0
        return np.ascontiguousarray(array.transpose(2, 0, 1)[np.newaxis, ...])


def encode_png(image: Image.Image) -> bytes:
    """Encode an image as PNG bytes for echoing back to clients."""
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()
