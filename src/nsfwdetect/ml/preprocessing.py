"""Image normalization: bridge caller images into a canonical form.

Two canonical forms exist:

- ``DecodedBitmap``: an HxWx3 RGB uint8 array decoded from an image object,
  encoded bytes, or a file-like object.
- ``PixelBuffer``: a raw HxWxC uint8 frame with an explicit pixel format, as
  produced by a capture pipeline.

No resizing or colour handling beyond decoding happens here; the model
prepares its own input tensor.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from nsfwdetect.ml.errors import UnsupportedImageFormat

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class PixelFormat(StrEnum):
    RGB = "RGB"
    BGR = "BGR"
    RGBA = "RGBA"
    BGRA = "BGRA"

    @property
    def channels(self) -> int:
        return len(self.value)


@dataclass(frozen=True, eq=False)
class DecodedBitmap:
    """A decoded RGB bitmap plane."""

    pixels: NDArray[np.uint8]

    @property
    def size(self) -> tuple[int, int]:
        height, width = self.pixels.shape[:2]
        return width, height


@dataclass(frozen=True, eq=False)
class PixelBuffer:
    """A raw pixel buffer supplied directly by a capture pipeline."""

    pixels: NDArray[np.uint8]
    pixel_format: PixelFormat = PixelFormat.RGB

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "pixel_format", PixelFormat(self.pixel_format))
        except ValueError as exc:
            raise UnsupportedImageFormat(f"unknown pixel format: {self.pixel_format!r}") from exc

        pixels = self.pixels
        if not isinstance(pixels, np.ndarray) or pixels.dtype != np.uint8 or pixels.ndim != 3:
            raise UnsupportedImageFormat("pixel buffer must be an HxWxC uint8 array")
        if pixels.shape[2] != self.pixel_format.channels:
            raise UnsupportedImageFormat(
                f"pixel buffer has {pixels.shape[2]} channels, expected {self.pixel_format} layout"
            )

    @property
    def size(self) -> tuple[int, int]:
        height, width = self.pixels.shape[:2]
        return width, height


CanonicalImage = DecodedBitmap | PixelBuffer

_CHANNELS_TO_FORMAT = {3: PixelFormat.RGB, 4: PixelFormat.RGBA}


def normalize(image: object) -> CanonicalImage:
    """Convert a caller image into a canonical image.

    The bitmap derivation is tried first, then the pixel buffer derivation.

    Raises:
        UnsupportedImageFormat: If neither derivation applies, or if a bitmap
            derivation was possible but decoding failed.
    """
    if isinstance(image, DecodedBitmap | PixelBuffer):
        return image

    bitmap = _to_bitmap(image)
    if bitmap is not None:
        return bitmap

    buffer = _to_pixel_buffer(image)
    if buffer is not None:
        return buffer

    raise UnsupportedImageFormat


def _to_bitmap(image: object) -> DecodedBitmap | None:
    if isinstance(image, Image.Image):
        return _decode(image)
    if isinstance(image, bytes | bytearray | memoryview):
        return _decode_stream(io.BytesIO(bytes(image)))
    if hasattr(image, "read"):
        return _decode_stream(image)
    return None


def _decode_stream(stream: object) -> DecodedBitmap:
    try:
        with Image.open(stream) as opened:  # type: ignore[arg-type]
            return _decode(opened)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, TypeError, ValueError) as exc:
        logger.debug("Bitmap decoding failed: %s", exc)
        raise UnsupportedImageFormat from exc


def _decode(image: Image.Image) -> DecodedBitmap:
    try:
        rgb = image if image.mode == "RGB" else image.convert("RGB")
        return DecodedBitmap(pixels=np.asarray(rgb, dtype=np.uint8))
    except (Image.DecompressionBombError, OSError, ValueError) as exc:
        logger.debug("Bitmap decoding failed: %s", exc)
        raise UnsupportedImageFormat from exc


def _to_pixel_buffer(image: object) -> PixelBuffer | None:
    if not isinstance(image, np.ndarray) and not hasattr(image, "__array_interface__"):
        return None

    pixels = np.asarray(image)
    if pixels.dtype != np.uint8 or pixels.ndim != 3:
        return None
    pixel_format = _CHANNELS_TO_FORMAT.get(pixels.shape[2])
    if pixel_format is None:
        return None
    return PixelBuffer(pixels=pixels, pixel_format=pixel_format)
