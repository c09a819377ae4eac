"""
Landmark models produced by the face, body and landscape detectors.

All positions here are normalized to [0, 1] relative to the image they were
detected on. Pixel-space work goes through framelapse.services.geometry.
"""

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

MIN_KEYPOINTS_FOR_MATCHING = 10
RECOMMENDED_KEYPOINTS = 500
MAX_KEYPOINTS = 2000


class LandmarkPoint(BaseModel):
    """A point in normalized image space."""
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    z: float = 0.0

    def is_inside_image(self) -> bool:
        return 0.0 <= self.x <= 1.0 and 0.0 <= self.y <= 1.0


class BoundingBox(BaseModel):
    """Axis-aligned box in normalized image space."""
    model_config = ConfigDict(frozen=True)

    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def center_x(self) -> float:
        return (self.left + self.right) / 2.0

    @property
    def center_y(self) -> float:
        return (self.top + self.bottom) / 2.0


FULL_FRAME = BoundingBox(left=0.0, top=0.0, right=1.0, bottom=1.0)


def _midpoint(a: LandmarkPoint, b: LandmarkPoint) -> LandmarkPoint:
    return LandmarkPoint(x=(a.x + b.x) / 2.0, y=(a.y + b.y) / 2.0, z=(a.z + b.z) / 2.0)


def _distance(a: LandmarkPoint, b: LandmarkPoint) -> float:
    return float(np.hypot(a.x - b.x, a.y - b.y))


# ============================================================
# FACE
# ============================================================

class FaceLandmarks(BaseModel):
    """Face detection: eye centers, nose tip and face box."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["face"] = "face"
    points: List[LandmarkPoint] = Field(default_factory=list)
    left_eye_center: LandmarkPoint
    right_eye_center: LandmarkPoint
    nose_tip: LandmarkPoint
    bounding_box: BoundingBox
    confidence: float = 1.0

    def reference_point_left(self) -> LandmarkPoint:
        return self.left_eye_center

    def reference_point_right(self) -> LandmarkPoint:
        return self.right_eye_center

    @property
    def eye_distance(self) -> float:
        return _distance(self.left_eye_center, self.right_eye_center)


# ============================================================
# BODY
# ============================================================

class BodyKeypointType(str, Enum):
    """Pose keypoints reported by body detectors."""
    NOSE = "NOSE"
    LEFT_EYE = "LEFT_EYE"
    RIGHT_EYE = "RIGHT_EYE"
    LEFT_EAR = "LEFT_EAR"
    RIGHT_EAR = "RIGHT_EAR"
    LEFT_SHOULDER = "LEFT_SHOULDER"
    RIGHT_SHOULDER = "RIGHT_SHOULDER"
    LEFT_ELBOW = "LEFT_ELBOW"
    RIGHT_ELBOW = "RIGHT_ELBOW"
    LEFT_WRIST = "LEFT_WRIST"
    RIGHT_WRIST = "RIGHT_WRIST"
    LEFT_HIP = "LEFT_HIP"
    RIGHT_HIP = "RIGHT_HIP"
    LEFT_KNEE = "LEFT_KNEE"
    RIGHT_KNEE = "RIGHT_KNEE"
    LEFT_ANKLE = "LEFT_ANKLE"
    RIGHT_ANKLE = "RIGHT_ANKLE"


class BodyKeypoint(BaseModel):
    """A single pose keypoint with its own confidence and visibility."""
    model_config = ConfigDict(frozen=True)

    type: BodyKeypointType
    position: LandmarkPoint
    confidence: float
    is_visible: bool = True


class BodyLandmarks(BaseModel):
    """Body pose detection. Shoulders are the alignment reference."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["body"] = "body"
    keypoints: List[BodyKeypoint] = Field(default_factory=list)
    left_shoulder: LandmarkPoint
    right_shoulder: LandmarkPoint
    left_hip: LandmarkPoint
    right_hip: LandmarkPoint
    neck_center: LandmarkPoint
    bounding_box: BoundingBox
    confidence: float

    def reference_point_left(self) -> LandmarkPoint:
        return self.left_shoulder

    def reference_point_right(self) -> LandmarkPoint:
        return self.right_shoulder

    @property
    def shoulder_center(self) -> LandmarkPoint:
        return _midpoint(self.left_shoulder, self.right_shoulder)

    @property
    def hip_center(self) -> LandmarkPoint:
        return _midpoint(self.left_hip, self.right_hip)

    @property
    def shoulder_distance(self) -> float:
        return _distance(self.left_shoulder, self.right_shoulder)

    def keypoint(self, keypoint_type: BodyKeypointType) -> Optional[BodyKeypoint]:
        for kp in self.keypoints:
            if kp.type == keypoint_type:
                return kp
        return None


# ============================================================
# LANDSCAPE
# ============================================================

class FeatureDetectorType(str, Enum):
    """Binary-descriptor feature detectors."""
    ORB = "ORB"
    AKAZE = "AKAZE"


class FeatureKeypoint(BaseModel):
    """A feature keypoint in normalized space with detector metadata."""
    model_config = ConfigDict(frozen=True)

    position: LandmarkPoint
    response: float = 0.0
    size: float = 0.0
    angle: float = -1.0
    octave: int = 0

    def to_pixel_coordinates(self, width: int, height: int) -> tuple:
        return self.position.x * width, self.position.y * height

    @classmethod
    def from_pixel_coordinates(
        cls,
        x: float,
        y: float,
        width: int,
        height: int,
        response: float = 0.0,
        size: float = 0.0,
        angle: float = -1.0,
        octave: int = 0,
    ) -> "FeatureKeypoint":
        return cls(
            position=LandmarkPoint(x=x / width, y=y / height),
            response=response,
            size=size,
            angle=angle,
            octave=octave,
        )


class LandscapeLandmarks(BaseModel):
    """
    Feature keypoints for a landscape frame.

    Descriptors are kept alongside the keypoints (one row per keypoint) so a
    stored reference frame can be matched against without re-detection.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["landscape"] = "landscape"
    keypoints: List[FeatureKeypoint] = Field(default_factory=list)
    detector_type: FeatureDetectorType = FeatureDetectorType.ORB
    keypoint_count: int = 0
    bounding_box: BoundingBox = FULL_FRAME
    quality_score: float = 0.0
    descriptors: Optional[List[List[int]]] = None

    def reference_point_left(self) -> LandmarkPoint:
        left = [kp.position for kp in self.keypoints if kp.position.x < 0.5]
        if not left:
            return LandmarkPoint(x=0.25, y=0.5)
        return _centroid(left)

    def reference_point_right(self) -> LandmarkPoint:
        right = [kp.position for kp in self.keypoints if kp.position.x >= 0.5]
        if not right:
            return LandmarkPoint(x=0.75, y=0.5)
        return _centroid(right)

    def reference_centroid(self) -> LandmarkPoint:
        if not self.keypoints:
            return LandmarkPoint(x=0.5, y=0.5)
        return _centroid([kp.position for kp in self.keypoints])

    def has_enough_keypoints(self) -> bool:
        return self.keypoint_count >= MIN_KEYPOINTS_FOR_MATCHING

    def has_descriptors(self) -> bool:
        return bool(self.descriptors) and len(self.descriptors) == len(self.keypoints)

    def descriptor_array(self) -> Optional[np.ndarray]:
        if not self.has_descriptors():
            return None
        return np.array(self.descriptors, dtype=np.uint8)

    def get_top_keypoints(self, n: int) -> List[FeatureKeypoint]:
        return sorted(self.keypoints, key=lambda kp: kp.response, reverse=True)[:n]

    def get_keypoints_in_region(
        self, left: float, top: float, right: float, bottom: float
    ) -> List[FeatureKeypoint]:
        return [
            kp for kp in self.keypoints
            if left <= kp.position.x <= right and top <= kp.position.y <= bottom
        ]


def _centroid(points: List[LandmarkPoint]) -> LandmarkPoint:
    return LandmarkPoint(
        x=sum(p.x for p in points) / len(points),
        y=sum(p.y for p in points) / len(points),
    )


Landmarks = Annotated[
    Union[FaceLandmarks, BodyLandmarks, LandscapeLandmarks],
    Field(discriminator="kind"),
]
