# Utilities module

from .image_utils import (
    compute_brightness,
    compute_image_statistics,
    compute_sharpness,
    decode_image,
    image_to_array,
    preprocess_image,
)

__all__ = [
    "compute_brightness",
    "compute_image_statistics",
    "compute_sharpness",
    "decode_image",
    "image_to_array",
    "preprocess_image",
]
