"""
Per-run alignment and stabilization settings.

All models are immutable and validated on construction; out-of-range values
raise pydantic.ValidationError before any pipeline work starts.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from framelapse.models.landmarks import FeatureDetectorType

MAX_PASSES_FAST = 4
MAX_PASSES_SLOW = 10

LANDSCAPE_MAX_PASSES_FAST = 1
LANDSCAPE_MAX_PASSES_SLOW = 10


class StabilizationMode(str, Enum):
    """How much effort the multi-pass stabilizer spends per frame."""
    FAST = "FAST"    # Translation-only passes
    SLOW = "SLOW"    # Rotation, scale and translation stages


# ============================================================
# FACE / BODY STABILIZATION
# ============================================================

class StabilizationSettings(BaseModel):
    """Thresholds for the face/body multi-pass stabilizer."""
    model_config = ConfigDict(frozen=True)

    mode: StabilizationMode = StabilizationMode.FAST

    # Residual eye tilt (px) at which rotation refinement stops
    rotation_stop_threshold: float = Field(default=0.1, gt=0)
    # Residual reference distance error (px) at which scale refinement stops
    scale_error_threshold: float = Field(default=1.0, gt=0)
    # Minimum inter-pass score improvement before translation counts as converged
    convergence_threshold: float = Field(default=0.05, gt=0)
    # Scores below this count as a successful alignment
    success_score_threshold: float = Field(default=20.0, gt=0)
    # Scores below this need no further correction
    no_action_score_threshold: float = Field(default=0.5, ge=0)
    # Faces narrower than this fraction of the image are rejected
    min_face_size_ratio: float = Field(default=0.1, ge=0, le=1)
    # Reference pairs closer than this fraction of the goal distance are rejected
    eye_validity_ratio: float = Field(default=0.75, ge=0, le=1)
    # Same-direction overshoot (px, per point) that still triggers a correction
    overshoot_min_magnitude: float = Field(default=0.5, ge=0)
    # Passes allowed per SLOW refinement stage
    passes_per_stage: int = Field(default=3, ge=1, le=5)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "StabilizationSettings":
        if self.no_action_score_threshold >= self.success_score_threshold:
            raise ValueError("no_action_score_threshold must be below success_score_threshold")
        return self

    @property
    def max_passes(self) -> int:
        if self.mode == StabilizationMode.FAST:
            return MAX_PASSES_FAST
        return 1 + 3 * self.passes_per_stage


class AlignmentSettings(BaseModel):
    """Face alignment target geometry."""
    model_config = ConfigDict(frozen=True)

    min_confidence: float = Field(default=0.7, ge=0, le=1)
    # Eye distance as a fraction of the output width
    target_eye_distance: float = Field(default=0.3, ge=0.1, le=0.9)
    output_size: int = Field(default=512, ge=128, le=2048)
    # Positive values move the eye line above the canvas center
    vertical_offset: float = Field(default=0.1, ge=-0.5, le=0.5)
    stabilization: StabilizationSettings = Field(default_factory=StabilizationSettings)


class BodyAlignmentSettings(BaseModel):
    """Body alignment target geometry."""
    model_config = ConfigDict(frozen=True)

    min_confidence: float = Field(default=0.5, ge=0, le=1)
    target_shoulder_distance: float = Field(default=0.4, ge=0.2, le=0.9)
    output_size: int = Field(default=512, ge=128, le=2048)
    vertical_offset: float = Field(default=-0.1, ge=-0.5, le=0.5)
    # Fraction of the canvas taken by head-to-waist; shifts the shoulders up
    head_to_waist_ratio: float = Field(default=0.7, ge=0.3, le=1.0)
    stabilization: StabilizationSettings = Field(default_factory=StabilizationSettings)


# ============================================================
# LANDSCAPE STABILIZATION
# ============================================================

class LandscapeStabilizationSettings(BaseModel):
    """Thresholds for the landscape (homography) multi-pass stabilizer."""
    model_config = ConfigDict(frozen=True)

    mode: StabilizationMode = StabilizationMode.FAST

    # --- Match quality stage ---
    min_match_quality_percentile: float = Field(default=0.5, gt=0, le=1)
    inlier_ratio_improvement_threshold: float = Field(default=0.01, ge=0, le=1)

    # --- RANSAC threshold stage ---
    mean_reprojection_error_threshold: float = Field(default=1.0, gt=0)
    initial_ransac_threshold: float = Field(default=5.0, gt=0)
    min_ransac_threshold: float = Field(default=1.5, gt=0)
    ransac_reduction_factor: float = Field(default=0.6, gt=0, lt=1)

    # --- Perspective stability stage ---
    min_determinant: float = Field(default=0.5, gt=0)
    max_determinant: float = Field(default=2.0, gt=0)
    max_rotation_degrees: float = Field(default=45.0, gt=0, le=180)
    min_scale: float = Field(default=0.5, gt=0)
    max_scale: float = Field(default=2.0, gt=0)
    determinant_change_threshold: float = Field(default=0.01, gt=0)
    perspective_blend_factor: float = Field(default=0.5, ge=0, le=1)

    # --- Outcome ---
    success_confidence_threshold: float = Field(default=0.7, ge=0, le=1)
    convergence_threshold: float = Field(default=0.05, gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "LandscapeStabilizationSettings":
        if self.min_ransac_threshold > self.initial_ransac_threshold:
            raise ValueError("min_ransac_threshold must not exceed initial_ransac_threshold")
        if self.max_determinant <= self.min_determinant:
            raise ValueError("max_determinant must be greater than min_determinant")
        if self.max_scale <= self.min_scale:
            raise ValueError("max_scale must be greater than min_scale")
        return self

    @property
    def max_passes(self) -> int:
        if self.mode == StabilizationMode.FAST:
            return LANDSCAPE_MAX_PASSES_FAST
        return LANDSCAPE_MAX_PASSES_SLOW

    @classmethod
    def fast(cls) -> "LandscapeStabilizationSettings":
        return cls(mode=StabilizationMode.FAST)

    @classmethod
    def slow(cls) -> "LandscapeStabilizationSettings":
        return cls(mode=StabilizationMode.SLOW)

    @classmethod
    def high_quality(cls) -> "LandscapeStabilizationSettings":
        return cls(
            mode=StabilizationMode.SLOW,
            min_match_quality_percentile=0.3,
            inlier_ratio_improvement_threshold=0.005,
            mean_reprojection_error_threshold=0.5,
            min_ransac_threshold=1.0,
            success_confidence_threshold=0.8,
        )


class LandscapeAlignmentSettings(BaseModel):
    """Feature detection and matching parameters for landscape frames."""
    model_config = ConfigDict(frozen=True)

    detector_type: FeatureDetectorType = FeatureDetectorType.ORB
    max_keypoints: int = Field(default=500, ge=10, le=5000)
    min_matched_keypoints: int = Field(default=10, ge=4)
    ratio_test_threshold: float = Field(default=0.75, ge=0.5, le=0.95)
    ransac_reproj_threshold: float = Field(default=5.0, gt=0)
    output_size: int = Field(default=1080, ge=128, le=4096)
    min_confidence: float = Field(default=0.5, ge=0, le=1)
    use_cross_check: bool = True
    min_inlier_ratio: float = Field(default=0.3, ge=0, lt=1)
    stabilization: LandscapeStabilizationSettings = Field(
        default_factory=LandscapeStabilizationSettings
    )

    @classmethod
    def fast(cls) -> "LandscapeAlignmentSettings":
        return cls(
            detector_type=FeatureDetectorType.ORB,
            max_keypoints=200,
            min_matched_keypoints=8,
            ratio_test_threshold=0.8,
            use_cross_check=False,
        )

    @classmethod
    def high_quality(cls) -> "LandscapeAlignmentSettings":
        return cls(
            detector_type=FeatureDetectorType.AKAZE,
            max_keypoints=1000,
            min_matched_keypoints=20,
            ratio_test_threshold=0.7,
            use_cross_check=True,
            min_inlier_ratio=0.5,
            stabilization=LandscapeStabilizationSettings.high_quality(),
        )
