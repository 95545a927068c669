"""Image preprocessing: decoding uploads, classifier input tensors, JPEG encoding."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Literal

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray


class PillowPreprocessor:
    """Decodes raw image bytes into RGB arrays with a pixel budget."""

    def __init__(self, max_image_pixels: int) -> None:
        self._max_image_pixels = max_image_pixels

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Raises:
            ValueError: If the image cannot be decoded or exceeds size limits.
        """
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise ValueError(f"Image has {width * height} pixels, limit is {self._max_image_pixels}")
                oriented = ImageOps.exif_transpose(img)
                return np.asarray(oriented.convert("RGB"), dtype=np.uint8)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
            raise ValueError(f"Cannot decode image: {exc}") from exc


def prepare_input(
    image: NDArray[np.uint8],
    input_size: tuple[int, int],
    dtype: Literal["float32", "uint8"] = "float32",
) -> NDArray[np.float32] | NDArray[np.uint8]:
    """Center-crop to a square, resize, and add a batch dimension.

    float32 inputs are scaled to [0, 1]; uint8 inputs keep 0-255.

    Returns:
        Array of shape (1, height, width, 3).
    """
    height, width = image.shape[:2]
    side = min(height, width)
    top = (height - side) // 2
    left = (width - side) // 2
    cropped = image[top : top + side, left : left + side]

    target_h, target_w = input_size
    resized = Image.fromarray(cropped).resize((target_w, target_h), Image.Resampling.BILINEAR)
    pixels = np.asarray(resized, dtype=np.uint8)

    if dtype == "uint8":
        return pixels[np.newaxis, ...]
    return (pixels.astype(np.float32) / 255.0)[np.newaxis, ...]


def encode_jpeg(image: NDArray[np.uint8], quality: float = 0.8) -> bytes:
    """Encode an RGB array as JPEG; ``quality`` is a 0-1 fraction."""
    buffer = io.BytesIO()
    Image.fromarray(image).save(buffer, format="JPEG", quality=max(1, min(95, round(quality * 100))))
    return buffer.getvalue()
