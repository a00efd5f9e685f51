"""
Face embedding extraction.

The engine only depends on the ``FaceExtractor`` protocol. The InsightFace
implementation below is installed with the ``models`` extra and loaded on
first use.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

import numpy as np

from facepay.config import settings
from facepay.exceptions import (
    ModelUnavailableError,
    MultipleFacesDetectedError,
    NoFaceDetectedError,
)
from facepay.models.internal_models import BoundingBox, FaceExtraction
from facepay.utils.image_utils import image_to_array

logger = logging.getLogger(__name__)


class FaceExtractor(Protocol):
    """Capability that turns an image into a single face embedding."""

    def extract(self, image_bytes: bytes) -> FaceExtraction:
        """
        Raises:
            NoFaceDetectedError: If no face is found
            MultipleFacesDetectedError: If more than one face is found
            ModelUnavailableError: If the model cannot run
        """
        ...

    def get_model_info(self) -> dict:
        """Report whether the model is loaded and which bundle it runs."""
        ...


class InsightFaceExtractor:
    """Face extractor backed by an InsightFace model bundle."""

    def __init__(
        self,
        model_bundle: Optional[str] = None,
        model_cache_dir: Optional[str] = None,
        detection_confidence: Optional[float] = None
    ):
        """
        Initialize the extractor.

        Args:
            model_bundle: InsightFace bundle name. Defaults to settings.
            model_cache_dir: Directory to cache the model files. If None, uses system temp dir.
            detection_confidence: Minimum detector score for a face to count.
        """
        self.model_bundle = model_bundle or settings.face_model_bundle
        self.model_cache_dir = model_cache_dir or os.path.join(tempfile.gettempdir(), "insightface_models")
        self.detection_confidence = (
            detection_confidence if detection_confidence is not None else settings.face_detection_confidence
        )
        self.model = None
        self._model_loaded = False

        Path(self.model_cache_dir).mkdir(parents=True, exist_ok=True)

    def _load_model(self) -> None:
        """Load the InsightFace analysis pipeline in CPU-only mode."""
        if self._model_loaded:
            return

        try:
            logger.info(f"Loading InsightFace bundle {self.model_bundle}...")

            from insightface.app import FaceAnalysis

            model = FaceAnalysis(
                name=self.model_bundle,
                root=self.model_cache_dir,
                allowed_modules=["detection", "recognition"],
                providers=["CPUExecutionProvider"]
            )
            model.prepare(ctx_id=-1, det_size=(640, 640), det_thresh=self.detection_confidence)

            self.model = model
            self._model_loaded = True
            logger.info("InsightFace model loaded successfully")

        except Exception as e:
            logger.error(f"Failed to load InsightFace model: {e}")
            raise ModelUnavailableError(f"Model loading failed: {e}")

    def extract(self, image_bytes: bytes) -> FaceExtraction:
        """
        Detect exactly one face and compute its embedding.

        Args:
            image_bytes: Raw image data

        Returns:
            FaceExtraction with the normalized embedding, detector score and box

        Raises:
            InvalidImageError: If the image cannot be decoded
            NoFaceDetectedError: If no face passes the detection threshold
            MultipleFacesDetectedError: If more than one face passes it
            ModelUnavailableError: If the model cannot be loaded or run
        """
        pixels = image_to_array(image_bytes)
        self._load_model()

        try:
            # InsightFace expects BGR
            faces = self.model.get(np.ascontiguousarray(pixels[:, :, ::-1]))
        except Exception as e:
            logger.error(f"Face analysis failed: {e}")
            raise ModelUnavailableError(f"Face analysis failed: {e}")

        faces = [f for f in faces if float(f.det_score) >= self.detection_confidence]
        if not faces:
            raise NoFaceDetectedError("No faces detected in the image")
        if len(faces) > 1:
            raise MultipleFacesDetectedError("Multiple faces detected. Please use an image with only one face")

        face = faces[0]
        x1, y1, x2, y2 = (float(v) for v in face.bbox)
        embedding = np.asarray(face.normed_embedding, dtype=np.float64)

        logger.debug(f"Extracted embedding with shape {embedding.shape}, score {float(face.det_score):.3f}")
        return FaceExtraction(
            embedding=embedding,
            detector_confidence=float(face.det_score),
            bounding_box=BoundingBox(x=x1, y=y1, width=x2 - x1, height=y2 - y1),
        )

    def get_model_info(self) -> dict:
        return {
            "model_loaded": self._model_loaded,
            "model_cache_dir": self.model_cache_dir,
            "device": "cpu",
            "model_name": self.model_bundle
        }


# Global instance for reuse across requests
_face_extractor: Optional[InsightFaceExtractor] = None


def get_face_extractor() -> InsightFaceExtractor:
    """
    Get the global face extractor instance.

    Returns:
        InsightFaceExtractor: The global extractor instance
    """
    global _face_extractor
    if _face_extractor is None:
        _face_extractor = InsightFaceExtractor()
    return _face_extractor
