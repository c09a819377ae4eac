"""
Face and body landmark detectors.

Detectors return normalized landmarks, or None when nothing was found. A
detector that crashes raises DetectionError.
"""

import logging
from pathlib import Path
from typing import List, Optional, Protocol

import cv2
import numpy as np

from framelapse.config import settings
from framelapse.models.landmarks import BodyLandmarks, BoundingBox, FaceLandmarks, LandmarkPoint
from framelapse.services.errors import DetectionError
from framelapse.services.imaging import ImageData

logger = logging.getLogger(__name__)

# Eye and nose placement inside a face box when the eye cascade misses
ESTIMATED_EYE_X = (0.30, 0.70)
ESTIMATED_EYE_Y = 0.38
ESTIMATED_NOSE_Y = 0.62

DETECTED_EYES_CONFIDENCE = 0.95
ESTIMATED_EYES_CONFIDENCE = 0.75


class FaceDetector(Protocol):
    @property
    def is_available(self) -> bool:
        ...

    def detect(self, image: ImageData) -> Optional[FaceLandmarks]:
        ...


class BodyPoseDetector(Protocol):
    @property
    def is_available(self) -> bool:
        ...

    def detect(self, image: ImageData) -> Optional[BodyLandmarks]:
        ...


class HaarFaceDetector:
    """
    Face and eye detection with the Haar cascades bundled with OpenCV.

    The largest face wins. Eyes are searched in the upper half of the face
    box; when fewer than two are found they are placed geometrically and the
    detection confidence is lowered.
    """

    def __init__(self, cascade_dir: Optional[Path] = None):
        self.cascade_dir = Path(cascade_dir or cv2.data.haarcascades)
        self.config = settings
        self._face_cascade: Optional[cv2.CascadeClassifier] = None
        self._eye_cascade: Optional[cv2.CascadeClassifier] = None

    def _load(self) -> None:
        if self._face_cascade is not None:
            return
        self._face_cascade = cv2.CascadeClassifier(str(self.cascade_dir / self.config.face_cascade_file))
        self._eye_cascade = cv2.CascadeClassifier(str(self.cascade_dir / self.config.eye_cascade_file))

    @property
    def is_available(self) -> bool:
        self._load()
        return not self._face_cascade.empty()

    def detect(self, image: ImageData) -> Optional[FaceLandmarks]:
        self._load()
        if self._face_cascade.empty():
            raise DetectionError("Face cascade could not be loaded", code="DETECTOR_NOT_LOADED")

        gray = image.grayscale()
        height, width = gray.shape[:2]
        try:
            faces = self._face_cascade.detectMultiScale(
                gray,
                scaleFactor=self.config.face_scale_factor,
                minNeighbors=self.config.face_min_neighbors,
                minSize=(self.config.face_min_size_px, self.config.face_min_size_px),
            )
        except cv2.error as e:
            raise DetectionError(f"Face detection failed: {e}") from e

        if len(faces) == 0:
            logger.debug("No face found")
            return None

        x, y, w, h = max(faces, key=lambda f: f[2] * f[3])
        eyes = self._detect_eyes(gray[y:y + h // 2 + h // 8, x:x + w])

        if len(eyes) >= 2:
            left_px, right_px = sorted(eyes[:2], key=lambda p: p[0])
            left = (x + left_px[0], y + left_px[1])
            right = (x + right_px[0], y + right_px[1])
            confidence = DETECTED_EYES_CONFIDENCE
        else:
            left = (x + ESTIMATED_EYE_X[0] * w, y + ESTIMATED_EYE_Y * h)
            right = (x + ESTIMATED_EYE_X[1] * w, y + ESTIMATED_EYE_Y * h)
            confidence = ESTIMATED_EYES_CONFIDENCE

        left_eye = LandmarkPoint(x=left[0] / width, y=left[1] / height)
        right_eye = LandmarkPoint(x=right[0] / width, y=right[1] / height)
        nose = LandmarkPoint(x=(x + 0.5 * w) / width, y=(y + ESTIMATED_NOSE_Y * h) / height)

        return FaceLandmarks(
            points=[left_eye, right_eye, nose],
            left_eye_center=left_eye,
            right_eye_center=right_eye,
            nose_tip=nose,
            bounding_box=BoundingBox(
                left=x / width,
                top=y / height,
                right=(x + w) / width,
                bottom=(y + h) / height,
            ),
            confidence=confidence,
        )

    def _detect_eyes(self, face_roi: np.ndarray) -> List[tuple]:
        """Eye centers (ROI pixels), largest first."""
        if self._eye_cascade is None or self._eye_cascade.empty() or face_roi.size == 0:
            return []
        try:
            eyes = self._eye_cascade.detectMultiScale(face_roi, scaleFactor=1.1, minNeighbors=5)
        except cv2.error as e:
            logger.debug(f"Eye cascade failed, falling back to estimate: {e}")
            return []
        eyes = sorted(eyes, key=lambda e: e[2] * e[3], reverse=True)
        return [(ex + ew / 2.0, ey + eh / 2.0) for ex, ey, ew, eh in eyes]


class UnavailableBodyPoseDetector:
    """Placeholder used when no pose model is installed."""

    @property
    def is_available(self) -> bool:
        return False

    def detect(self, image: ImageData) -> Optional[BodyLandmarks]:
        raise DetectionError("Body pose detection is not available", code="DETECTOR_UNAVAILABLE")
