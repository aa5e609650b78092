"""Image preprocessing: decoding uploads and building model input tensors."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from photoclassify.ml.model_manager import ModelSpec


class ImageDecodeError(ValueError):
    """Raised when uploaded bytes are not a usable image."""


class ImageTooLargeError(ValueError):
    """Raised when an image exceeds the configured pixel limit."""


def decode_image(image_bytes: bytes, max_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    EXIF orientation is applied so the model always sees the image upright.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Upper bound on width * height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        ImageDecodeError: If the bytes are empty or cannot be decoded.
        ImageTooLargeError: If the image exceeds ``max_pixels``.
    """
    if not image_bytes:
        raise ImageDecodeError("No image provided")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise ImageTooLargeError(f"Image is {width}x{height} pixels, limit is {max_pixels} pixels")
            img.load()
            upright = ImageOps.exif_transpose(img)
            rgb = upright.convert("RGB")
    except Image.DecompressionBombError as exc:
        raise ImageTooLargeError("Image exceeds the decompression size limit") from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageDecodeError("Unsupported or corrupt image") from exc

    return np.asarray(rgb, dtype=np.uint8)


def _center_crop_box(width: int, height: int, resize_size: int, crop_size: int) -> tuple[float, float, float, float]:
    # Square region of the source that ends up as the crop after scaling the
    # shorter edge to resize_size.
    side = min(width, height) * crop_size / resize_size
    left = (width - side) / 2
    top = (height - side) / 2
    return (left, top, left + side, top + side)


def prepare_input(image: NDArray[np.uint8], spec: ModelSpec) -> NDArray[np.float32]:
    """Prepare an image for a classification model.

    Equivalent to resizing the shorter edge to ``spec.resize_size`` and
    center-cropping to ``spec.crop_size``, but the crop box is taken from
    the source image and resampled directly, so no intermediate larger than
    the crop is ever allocated. The result is scaled to [0, 1] and
    normalized with the model's per-channel mean and std.

    Args:
        image: HxWx3 RGB uint8 array.
        spec: Registry entry of the target model.

    Returns:
        Float32 tensor of shape (1, 3, crop_size, crop_size).
    """
    img = Image.fromarray(image)
    box = _center_crop_box(img.width, img.height, spec.resize_size, spec.crop_size)
    img = img.resize((spec.crop_size, spec.crop_size), Image.Resampling.BILINEAR, box=box)

    pixels = np.asarray(img, dtype=np.float32) / 255.0
    mean = np.asarray(spec.mean, dtype=np.float32)
    std = np.asarray(spec.std, dtype=np.float32)
    pixels = (pixels - mean) / std

    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
