"""
Quality checks on detected face and body landmarks.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from framelapse.models.landmarks import BodyLandmarks, FaceLandmarks

MIN_EYE_SEPARATION = 0.02
MIN_SHOULDER_SEPARATION = 0.05
MIN_BODY_BOX_SIZE = 0.1


@dataclass
class ValidationResult:
    is_valid: bool
    issues: List[str] = field(default_factory=list)
    confidence: float = 0.0
    reference_distance: float = 0.0


class AlignmentValidator:
    """Checks that a face detection is good enough to align on."""

    def __init__(self, min_face_size_ratio: float = 0.1):
        self.min_face_size_ratio = min_face_size_ratio

    def validate(
        self,
        landmarks: FaceLandmarks,
        min_confidence: float = 0.0,
        goal_eye_distance: Optional[float] = None,
        eye_validity_ratio: float = 0.0,
    ) -> ValidationResult:
        """
        Args:
            landmarks: Normalized face landmarks
            min_confidence: Detections below this are rejected
            goal_eye_distance: Expected normalized eye distance, when known
            eye_validity_ratio: Eye pairs closer than this share of the goal
                distance are rejected

        Returns:
            ValidationResult with one issue per failed check
        """
        issues = []
        left = landmarks.left_eye_center
        right = landmarks.right_eye_center

        if landmarks.confidence < min_confidence or not landmarks.points or left.x < 0 or right.x < 0:
            issues.append(f"Low detection confidence ({landmarks.confidence:.0%})")

        distance = landmarks.eye_distance
        eyes_ok = distance > MIN_EYE_SEPARATION and right.x - left.x > 0
        if eyes_ok and goal_eye_distance and distance < eye_validity_ratio * goal_eye_distance:
            eyes_ok = False
        if not eyes_ok:
            issues.append("Invalid eye detection: eyes too close or swapped")

        box = landmarks.bounding_box
        if (
            box.width <= self.min_face_size_ratio
            or box.height <= self.min_face_size_ratio
            or box.left < 0
            or box.top < 0
        ):
            issues.append("Face too small or partially visible")

        return ValidationResult(
            is_valid=not issues,
            issues=issues,
            confidence=landmarks.confidence,
            reference_distance=distance,
        )


class BodyAlignmentValidator:
    """Checks that a body pose detection is good enough to align on."""

    def validate(self, landmarks: BodyLandmarks, min_confidence: float = 0.5) -> ValidationResult:
        issues = []
        if landmarks.confidence < min_confidence:
            issues.append(f"Low detection confidence ({landmarks.confidence:.0%})")

        left = landmarks.left_shoulder
        right = landmarks.right_shoulder
        distance = landmarks.shoulder_distance
        if distance <= MIN_SHOULDER_SEPARATION or right.x - left.x <= 0:
            issues.append("Invalid shoulder detection")

        box = landmarks.bounding_box
        if box.width <= MIN_BODY_BOX_SIZE or box.height <= MIN_BODY_BOX_SIZE:
            issues.append("Body too small or partially visible")

        key_points = [left, right, landmarks.left_hip, landmarks.right_hip]
        if not all(p.is_inside_image() for p in key_points):
            issues.append("Key body landmarks not visible")

        return ValidationResult(
            is_valid=not issues,
            issues=issues,
            confidence=landmarks.confidence,
            reference_distance=distance,
        )
