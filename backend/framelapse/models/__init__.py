"""
Pydantic models for landmarks, settings, stabilization records and frames.
"""

from framelapse.models.landmarks import (
    LandmarkPoint,
    BoundingBox,
    FaceLandmarks,
    BodyKeypointType,
    BodyKeypoint,
    BodyLandmarks,
    FeatureDetectorType,
    FeatureKeypoint,
    LandscapeLandmarks,
    Landmarks,
)
from framelapse.models.settings import (
    StabilizationMode,
    StabilizationSettings,
    AlignmentSettings,
    BodyAlignmentSettings,
    LandscapeStabilizationSettings,
    LandscapeAlignmentSettings,
)
from framelapse.models.stabilization import (
    StabilizationStage,
    EarlyStopReason,
    StabilizationScore,
    StabilizationPass,
    AlignmentDiagnostics,
    StabilizationResult,
    StabilizationProgress,
)
from framelapse.models.frame import ContentType, Calibration, Project, Frame

__all__ = [
    "LandmarkPoint",
    "BoundingBox",
    "FaceLandmarks",
    "BodyKeypointType",
    "BodyKeypoint",
    "BodyLandmarks",
    "FeatureDetectorType",
    "FeatureKeypoint",
    "LandscapeLandmarks",
    "Landmarks",
    "StabilizationMode",
    "StabilizationSettings",
    "AlignmentSettings",
    "BodyAlignmentSettings",
    "LandscapeStabilizationSettings",
    "LandscapeAlignmentSettings",
    "StabilizationStage",
    "EarlyStopReason",
    "StabilizationScore",
    "StabilizationPass",
    "AlignmentDiagnostics",
    "StabilizationResult",
    "StabilizationProgress",
    "ContentType",
    "Calibration",
    "Project",
    "Frame",
]
