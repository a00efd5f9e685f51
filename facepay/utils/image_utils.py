"""
Image processing utilities for face capture.

This module provides functions for:
- Decoding and validating uploaded image bytes
- Normalizing images to the detection frame size
- Brightness and sharpness statistics used by the quality gate
"""

import io
import logging
from typing import Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from facepay.exceptions import InvalidImageError
from facepay.models.internal_models import ImageStatistics

logger = logging.getLogger(__name__)

ALLOWED_FORMATS = {"JPEG", "PNG", "WEBP"}
DETECTION_FRAME = (640, 480)
STATISTICS_SIZE = (100, 100)
MAX_IMAGE_BYTES = 5 * 1024 * 1024


def decode_image(image_bytes: bytes) -> Image.Image:
    """
    Decode image bytes into an RGB Pillow image.

    EXIF orientation is applied so that bounding boxes refer to the
    upright frame.

    Args:
        image_bytes: Raw JPEG, PNG or WebP data

    Returns:
        RGB image

    Raises:
        InvalidImageError: If the data is empty, too large, or not a supported image
    """
    if not image_bytes:
        raise InvalidImageError("Image is required")

    if len(image_bytes) > MAX_IMAGE_BYTES:
        raise InvalidImageError(f"Image exceeds maximum size of {MAX_IMAGE_BYTES} bytes")

    try:
        image = Image.open(io.BytesIO(image_bytes))
        image_format = image.format
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"Failed to decode image: {e}")
        raise InvalidImageError(f"Unable to decode image: {e}")

    if image_format not in ALLOWED_FORMATS:
        raise InvalidImageError(
            f"Invalid image type {image_format}. Only JPEG, PNG, and WebP are allowed."
        )

    image = ImageOps.exif_transpose(image)
    return image.convert("RGB")


def preprocess_image(image_bytes: bytes, frame: Tuple[int, int] = DETECTION_FRAME) -> bytes:
    """
    Resize an image to fit inside the detection frame and re-encode it as JPEG.

    Images smaller than the frame are not enlarged.

    Args:
        image_bytes: Raw image data
        frame: Maximum (width, height)

    Returns:
        JPEG bytes at quality 90

    Raises:
        InvalidImageError: If the image cannot be decoded
    """
    image = decode_image(image_bytes)
    image.thumbnail(frame, Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=90)
    processed = buffer.getvalue()

    logger.debug(f"Preprocessed image to {image.size[0]}x{image.size[1]} ({len(processed)} bytes)")
    return processed


def image_to_array(image_bytes: bytes) -> np.ndarray:
    """Decode image bytes into an HxWx3 uint8 RGB array."""
    return np.asarray(decode_image(image_bytes), dtype=np.uint8)


def compute_brightness(pixels: np.ndarray) -> float:
    """
    Mean per-pixel brightness on a 0-255 scale.

    Args:
        pixels: HxWx3 RGB array

    Returns:
        Average of the per-pixel channel means
    """
    return float(pixels.astype(np.float64).mean(axis=2).mean())


def compute_sharpness(pixels: np.ndarray) -> float:
    """
    Gradient-magnitude sharpness proxy.

    Sums absolute differences between each interior pixel and its right
    and lower neighbours on the red channel, normalized by the number of
    interior positions of a square sample.

    Args:
        pixels: HxWx3 RGB array, expected at the statistics sample size

    Returns:
        Average gradient magnitude; blurry images score low
    """
    red = pixels[:, :, 0].astype(np.float64)
    height, width = red.shape
    if height < 3 or width < 3:
        return 0.0

    current = red[1:height - 1, 1:width - 1]
    right = red[1:height - 1, 2:width]
    down = red[2:height, 1:width - 1]

    total = np.abs(current - right).sum() + np.abs(current - down).sum()
    return float(total / ((width - 1) * (height - 1)))


def compute_image_statistics(image_bytes: bytes) -> ImageStatistics:
    """
    Compute the frame size, brightness and sharpness of an image.

    Brightness and sharpness are measured on a fixed-size downsample so
    that their floors do not depend on the capture resolution.

    Args:
        image_bytes: Raw image data (normally already preprocessed)

    Returns:
        ImageStatistics for the quality gate

    Raises:
        InvalidImageError: If the image cannot be decoded
    """
    image = decode_image(image_bytes)
    width, height = image.size

    sample = np.asarray(image.resize(STATISTICS_SIZE, Image.Resampling.BILINEAR), dtype=np.uint8)
    brightness = compute_brightness(sample)
    sharpness = compute_sharpness(sample)

    logger.debug(f"Image statistics: {width}x{height}, brightness={brightness:.1f}, sharpness={sharpness:.1f}")
    return ImageStatistics(width=width, height=height, brightness=brightness, sharpness=sharpness)
