"""
Tests for settings, stabilization records, progress events and landmarks.
"""

import sys

import pytest
from pydantic import ValidationError

from framelapse.models.frame import Calibration
from framelapse.models.landmarks import BodyLandmarks, FeatureKeypoint, LandmarkPoint, LandscapeLandmarks
from framelapse.models.settings import (
    AlignmentSettings,
    LandscapeAlignmentSettings,
    LandscapeStabilizationSettings,
    StabilizationMode,
    StabilizationSettings,
)
from framelapse.models.stabilization import (
    EarlyStopReason,
    StabilizationPass,
    StabilizationProgress,
    StabilizationResult,
    StabilizationScore,
    StabilizationStage,
)


class TestSettings:
    """Validation and presets."""

    def test_max_passes_by_mode(self):
        """FAST runs at most 4 passes, SLOW 1 + 3 per stage."""
        assert StabilizationSettings().max_passes == 4
        assert StabilizationSettings(mode=StabilizationMode.SLOW).max_passes == 10
        assert StabilizationSettings(mode=StabilizationMode.SLOW, passes_per_stage=2).max_passes == 7
        assert LandscapeStabilizationSettings.fast().max_passes == 1
        assert LandscapeStabilizationSettings.slow().max_passes == 10

    def test_thresholds_must_be_ordered(self):
        """The no-action threshold has to sit below the success threshold."""
        with pytest.raises(ValidationError):
            StabilizationSettings(no_action_score_threshold=25.0)

    def test_out_of_range_values(self):
        """Out of range values fail on construction."""
        with pytest.raises(ValidationError):
            AlignmentSettings(target_eye_distance=0.05)
        with pytest.raises(ValidationError):
            AlignmentSettings(output_size=64)
        with pytest.raises(ValidationError):
            LandscapeAlignmentSettings(ratio_test_threshold=0.99)

    def test_landscape_bounds(self):
        """Landscape min/max pairs must be consistent."""
        with pytest.raises(ValidationError):
            LandscapeStabilizationSettings(min_ransac_threshold=6.0)
        with pytest.raises(ValidationError):
            LandscapeStabilizationSettings(min_determinant=2.0, max_determinant=1.0)

    def test_high_quality_preset(self):
        """The high quality preset uses AKAZE with SLOW stabilization."""
        settings = LandscapeAlignmentSettings.high_quality()
        assert settings.detector_type.value == "AKAZE"
        assert settings.stabilization.mode == StabilizationMode.SLOW

    def test_settings_are_immutable(self):
        """Settings cannot be changed after construction."""
        settings = StabilizationSettings()
        with pytest.raises(ValidationError):
            settings.mode = StabilizationMode.SLOW


class TestStabilizationRecords:
    """Tests for scores, passes and results."""

    def test_score_thresholds(self):
        """Scores below 0.5 need no correction; below 20 count as success."""
        assert not StabilizationScore(value=0.4).needs_correction
        assert StabilizationScore(value=0.5).needs_correction
        assert StabilizationScore(value=19.9).is_success
        assert not StabilizationScore(value=20.0).is_success

    def test_pass_improvement(self):
        """Improvement is the drop in score."""
        p = StabilizationPass(
            pass_number=2, stage=StabilizationStage.TRANSLATION_REFINE, score_before=12.0, score_after=3.0
        )
        assert p.improvement == 9.0
        assert p.improved

    def test_result_summary(self):
        """Derived result metrics."""
        passes = [
            StabilizationPass(pass_number=1, stage=StabilizationStage.INITIAL, score_before=40.0,
                              score_after=40.0, duration_ms=10),
            StabilizationPass(pass_number=2, stage=StabilizationStage.TRANSLATION_REFINE, score_before=40.0,
                              score_after=10.0, duration_ms=30),
        ]
        result = StabilizationResult(
            success=True,
            final_score=10.0,
            passes_executed=2,
            passes=passes,
            mode=StabilizationMode.FAST,
            early_stop_reason=EarlyStopReason.SCORE_BELOW_THRESHOLD,
            initial_score=40.0,
        )
        assert result.total_improvement == 30.0
        assert result.improvement_percent == 75.0
        assert result.average_pass_duration_ms == 20.0
        assert result.terminated_early

    def test_failed_result(self):
        """A failed run has the maximal score and no success."""
        result = StabilizationResult.failed(StabilizationMode.SLOW, EarlyStopReason.FACE_DETECTION_FAILED)
        assert not result.success
        assert result.final_score == sys.float_info.max
        assert result.passes_executed == 0
        assert result.total_improvement == 0.0


class TestProgress:
    """Progress event construction."""

    def test_initial_event(self):
        """The first event is at 0% with the starting message."""
        event = StabilizationProgress.initial(10, StabilizationMode.SLOW)
        assert event.current_pass == 0
        assert event.progress_percent == 0.0
        assert event.message == "Starting stabilization..."

    def test_pass_event(self):
        """Pass events carry a stage message and a percentage."""
        event = StabilizationProgress.for_pass(
            3, 10, StabilizationStage.ROTATION_REFINE, 12.5, StabilizationMode.SLOW
        )
        assert event.message == "Refining rotation (pass 3)..."
        assert event.progress_percent_int == 30
        assert event.current_score == 12.5

    def test_completed_event(self):
        """Completion reports 100% and the outcome."""
        failed = StabilizationResult.failed(StabilizationMode.FAST, EarlyStopReason.FACE_DETECTION_FAILED)
        event = StabilizationProgress.completed(failed, 4)
        assert event.progress_percent == 100.0
        assert event.message == "Stabilization failed"


class TestLandmarks:
    """Tests for landmark helpers."""

    def test_landscape_reference_points_split_at_center(self):
        """Left and right reference points are centroids of each half."""
        landmarks = LandscapeLandmarks(
            keypoints=[
                FeatureKeypoint(position=LandmarkPoint(x=0.2, y=0.4)),
                FeatureKeypoint(position=LandmarkPoint(x=0.4, y=0.6)),
                FeatureKeypoint(position=LandmarkPoint(x=0.8, y=0.5)),
            ],
            keypoint_count=3,
        )
        left = landmarks.reference_point_left()
        assert left.x == pytest.approx(0.3) and left.y == pytest.approx(0.5)
        assert landmarks.reference_point_right().x == pytest.approx(0.8)
        assert not landmarks.has_enough_keypoints()
        assert landmarks.descriptor_array() is None

    def test_keypoint_pixel_conversion(self):
        """Pixel coordinates are normalized by the image size."""
        kp = FeatureKeypoint.from_pixel_coordinates(64.0, 32.0, 128, 128, response=3.0)
        assert kp.position.x == 0.5 and kp.position.y == 0.25
        assert kp.to_pixel_coordinates(256, 256) == (128.0, 64.0)

    def test_body_distance(self):
        """Shoulder distance is measured in normalized units."""
        body = BodyLandmarks(
            left_shoulder=LandmarkPoint(x=0.3, y=0.4),
            right_shoulder=LandmarkPoint(x=0.7, y=0.4),
            left_hip=LandmarkPoint(x=0.35, y=0.7),
            right_hip=LandmarkPoint(x=0.65, y=0.7),
            neck_center=LandmarkPoint(x=0.5, y=0.35),
            bounding_box={"left": 0.2, "top": 0.2, "right": 0.8, "bottom": 0.9},
            confidence=0.9,
        )
        assert body.shoulder_distance == pytest.approx(0.4)
        assert body.hip_center.y == pytest.approx(0.7)

    def test_calibration_offsets(self):
        """Calibration offsets move both points and are bounded."""
        calibration = Calibration(
            left=LandmarkPoint(x=0.4, y=0.4), right=LandmarkPoint(x=0.6, y=0.4), offset_x=-0.05
        )
        assert calibration.adjusted_left().x == pytest.approx(0.35)
        assert calibration.adjusted_right().y == pytest.approx(0.4)
        with pytest.raises(ValidationError):
            Calibration(left=LandmarkPoint(x=0.4, y=0.4), right=LandmarkPoint(x=0.6, y=0.4), offset_y=0.5)
