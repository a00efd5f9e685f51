"""Quality gate for enrollment images."""

import logging
from typing import Optional

from facepay.models.internal_models import (
    BoundingBox,
    CheckResult,
    ImageStatistics,
    QualityVerdict,
)

logger = logging.getLogger(__name__)

HIGH_QUALITY_CONFIDENCE = 0.8
CENTER_TOLERANCE = 0.3
BRIGHTNESS_RANGE = (50.0, 200.0)
SHARPNESS_FLOOR = 10.0


class QualityGate:
    """Pure classification of a single detected face in a captured frame."""

    def __init__(
        self,
        min_confidence: float = HIGH_QUALITY_CONFIDENCE,
        center_tolerance: float = CENTER_TOLERANCE,
        brightness_range: tuple = BRIGHTNESS_RANGE,
        sharpness_floor: float = SHARPNESS_FLOOR
    ):
        self.min_confidence = min_confidence
        self.center_tolerance = center_tolerance
        self.brightness_range = brightness_range
        self.sharpness_floor = sharpness_floor

    def is_centered(self, box: BoundingBox, frame_width: int, frame_height: int) -> bool:
        """Whether the face center lies within the tolerance of the frame center on both axes."""
        face_x, face_y = box.center
        max_offset_x = frame_width * self.center_tolerance
        max_offset_y = frame_height * self.center_tolerance
        return (
            abs(face_x - frame_width / 2) <= max_offset_x
            and abs(face_y - frame_height / 2) <= max_offset_y
        )

    def check_brightness(self, brightness: float) -> CheckResult:
        low, high = self.brightness_range
        is_good = low <= brightness <= high
        return CheckResult(
            value=brightness,
            is_good=is_good,
            message="Good brightness" if is_good else "Poor brightness",
        )

    def check_blur(self, sharpness: float) -> CheckResult:
        is_good = sharpness > self.sharpness_floor
        return CheckResult(
            value=sharpness,
            is_good=is_good,
            message="Image is sharp" if is_good else "Image is too blurry",
        )

    def evaluate(
        self,
        box: Optional[BoundingBox],
        confidence: Optional[float],
        statistics: Optional[ImageStatistics],
        detection_error: Optional[str] = None
    ) -> QualityVerdict:
        """
        Classify a capture.

        A missing box means detection failed upstream (no face, or more
        than one face); the verdict is then rejected without computing
        brightness or blur.

        Args:
            box: Bounding box of the single detected face, or None
            confidence: Detector confidence for that face
            statistics: Frame size and pixel statistics
            detection_error: Reason detection failed, if it did

        Returns:
            QualityVerdict with sub-scores and the overall decision
        """
        if box is None or confidence is None or statistics is None:
            logger.info(f"Quality gate rejected capture without a single detected face: {detection_error}")
            return QualityVerdict(
                is_detected=False,
                is_acceptable=False,
                error=detection_error or "No face detected",
            )

        is_high_quality = confidence >= self.min_confidence
        is_centered = self.is_centered(box, statistics.width, statistics.height)
        brightness = self.check_brightness(statistics.brightness)
        blur = self.check_blur(statistics.sharpness)

        is_acceptable = is_high_quality and is_centered and brightness.is_good and blur.is_good

        logger.info(
            f"Quality gate verdict: acceptable={is_acceptable}, confidence={confidence:.3f}, "
            f"centered={is_centered}, brightness={brightness.value:.1f}, sharpness={blur.value:.1f}"
        )

        return QualityVerdict(
            is_detected=True,
            is_acceptable=is_acceptable,
            confidence=confidence,
            is_high_quality=is_high_quality,
            is_centered=is_centered,
            face_area=box.area,
            brightness=brightness,
            blur=blur,
        )
