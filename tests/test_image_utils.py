"""
Tests for image utility functions.
"""

import io

import numpy as np
import pytest
from PIL import Image

from facepay.exceptions import InvalidImageError
from facepay.utils.image_utils import (
    MAX_IMAGE_BYTES,
    compute_brightness,
    compute_image_statistics,
    compute_sharpness,
    decode_image,
    image_to_array,
    preprocess_image,
)

from conftest import make_image


class TestImageUtils:
    """Test cases for image utility functions."""

    def test_decode_image_returns_rgb(self):
        image = decode_image(make_image(fmt="PNG"))

        assert image.mode == "RGB"
        assert image.size == (640, 480)

    def test_decode_image_empty(self):
        with pytest.raises(InvalidImageError):
            decode_image(b"")

    def test_decode_image_garbage(self):
        with pytest.raises(InvalidImageError):
            decode_image(b"definitely not an image")

    def test_decode_image_too_large(self):
        with pytest.raises(InvalidImageError):
            decode_image(b"\x00" * (MAX_IMAGE_BYTES + 1))

    def test_decode_image_rejects_unsupported_format(self):
        buffer = io.BytesIO()
        Image.new("RGB", (32, 32), (128, 128, 128)).save(buffer, format="GIF")

        with pytest.raises(InvalidImageError, match="Only JPEG, PNG, and WebP"):
            decode_image(buffer.getvalue())

    def test_preprocess_fits_detection_frame(self):
        processed = preprocess_image(make_image(width=1280, height=960))

        image = Image.open(io.BytesIO(processed))
        assert image.format == "JPEG"
        assert image.size == (640, 480)

    def test_preprocess_does_not_enlarge(self):
        processed = preprocess_image(make_image(width=320, height=240))

        assert Image.open(io.BytesIO(processed)).size == (320, 240)

    def test_image_to_array_shape(self):
        pixels = image_to_array(make_image(width=64, height=48, fmt="PNG"))

        assert pixels.shape == (48, 64, 3)
        assert pixels.dtype == np.uint8

    def test_compute_brightness(self):
        pixels = np.zeros((10, 10, 3), dtype=np.uint8)
        pixels[:, :, 0] = 30
        pixels[:, :, 1] = 60
        pixels[:, :, 2] = 90

        assert compute_brightness(pixels) == pytest.approx(60.0)

    def test_flat_image_has_no_sharpness(self):
        pixels = np.full((100, 100, 3), 128, dtype=np.uint8)

        assert compute_sharpness(pixels) == 0.0

    def test_sharpness_uses_interior_gradients(self):
        # Alternating red columns: every interior pixel differs from its right neighbour by 100
        pixels = np.zeros((100, 100, 3), dtype=np.uint8)
        pixels[:, ::2, 0] = 100

        expected = 100.0 * 98 * 98 / (99 * 99)
        assert compute_sharpness(pixels) == pytest.approx(expected)

    def test_sharpness_of_tiny_image(self):
        assert compute_sharpness(np.zeros((2, 2, 3), dtype=np.uint8)) == 0.0

    def test_statistics_of_sharp_image(self):
        statistics = compute_image_statistics(make_image(fmt="PNG"))

        assert (statistics.width, statistics.height) == (640, 480)
        assert 110.0 < statistics.brightness < 146.0
        assert statistics.sharpness > 10.0

    def test_statistics_of_flat_image(self):
        statistics = compute_image_statistics(make_image(level=100, square=0, fmt="PNG"))

        assert statistics.brightness == pytest.approx(100.0)
        assert statistics.sharpness < 10.0
