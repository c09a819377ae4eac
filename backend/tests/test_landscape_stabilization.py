"""
Tests for the landscape multi-pass stabilizer.
"""

import numpy as np
import pytest

from fakes import FakeFeatureMatcher, FakeImageProcessor, make_keypoints
from framelapse.models.settings import LandscapeAlignmentSettings, LandscapeStabilizationSettings
from framelapse.models.stabilization import EarlyStopReason, StabilizationStage
from framelapse.services.errors import InsufficientMatchesError
from framelapse.services.geometry import HomographyMatrix
from framelapse.services.imaging import ImageData
from framelapse.services.landscape import LandscapeFeatureService
from framelapse.services.landscape_stabilization import MultiPassLandscapeStabilizer
from framelapse.services.progress import ProgressRecorder

CANVAS = 256
SOURCE = make_keypoints(40, canvas=CANVAS)
REFERENCE = make_keypoints(40, offset=(5.0, 3.0), canvas=CANVAS)
SHIFT = HomographyMatrix.translation(5.0, 3.0)


class FlakyMatcher(FakeFeatureMatcher):
    """Estimates once, then RANSAC stops finding a model."""

    def compute_homography(self, *args):
        result = super().compute_homography(*args)
        if len(self.homography_thresholds) > 1:
            return None
        return result


def settings(slow: bool = False) -> LandscapeAlignmentSettings:
    stab = LandscapeStabilizationSettings.slow() if slow else LandscapeStabilizationSettings.fast()
    return LandscapeAlignmentSettings(output_size=CANVAS, stabilization=stab)


def run(matcher, slow=False, source=SOURCE, reference=REFERENCE, on_progress=None):
    processor = FakeImageProcessor()
    stabilizer = MultiPassLandscapeStabilizer(LandscapeFeatureService(matcher), processor)
    image = ImageData(pixels=np.zeros((90, 160, 3), dtype=np.uint8), source_path="source.jpg")
    outcome = stabilizer.stabilize(image, source, reference, settings(slow), on_progress=on_progress)
    return outcome, processor


class TestFastMode:
    """Single-pass landscape alignment."""

    def test_single_pass(self):
        """One match + RANSAC pass with a match/inlier based confidence."""
        matcher = FakeFeatureMatcher(homography=SHIFT)
        outcome, processor = run(matcher)
        result = outcome.result
        assert result.passes_executed == 1
        assert result.passes[0].stage == StabilizationStage.INITIAL
        assert result.early_stop_reason == EarlyStopReason.MAX_PASSES_REACHED
        assert outcome.confidence == pytest.approx(0.76)
        assert result.success
        assert result.final_score == pytest.approx(24.0)
        assert matcher.homography_thresholds == [5.0]
        assert outcome.image.width == CANVAS and outcome.image.height == CANVAS
        assert processor.homography_calls == 1

    def test_not_enough_matches_raises(self):
        """Too few matches surface as an error; no homography is attempted."""
        matcher = FakeFeatureMatcher(match_limit=5)
        with pytest.raises(InsufficientMatchesError):
            run(matcher)
        assert matcher.homography_thresholds == []


class TestSlowMode:
    """Match quality, RANSAC threshold and perspective stages."""

    def test_converges_through_every_stage(self):
        """An exact translation converges in each stage and succeeds."""
        matcher = FakeFeatureMatcher(homography=SHIFT)
        outcome, _ = run(matcher, slow=True)
        result = outcome.result

        assert [p.stage for p in result.passes] == [
            StabilizationStage.INITIAL,
            StabilizationStage.MATCH_QUALITY_REFINE,
            StabilizationStage.RANSAC_THRESHOLD_REFINE,
            StabilizationStage.PERSPECTIVE_STABILITY_REFINE,
        ]
        assert result.stage_stop_reasons == [
            EarlyStopReason.INLIER_RATIO_CONVERGED,
            EarlyStopReason.REPROJECTION_ERROR_CONVERGED,
        ]
        assert result.early_stop_reason == EarlyStopReason.PERSPECTIVE_CONVERGED
        assert result.success
        assert result.inlier_ratio == 1.0
        assert result.mean_reprojection_error < 1e-6
        assert outcome.confidence == pytest.approx(1.0)
        assert outcome.homography == SHIFT
        assert matcher.homography_thresholds == [pytest.approx(5.0), pytest.approx(5.0), pytest.approx(3.0)]

    def test_low_inlier_ratio_is_not_success(self):
        """Half the matches as inliers stays below the success ratio."""
        matcher = FakeFeatureMatcher(homography=SHIFT, inlier_fn=lambda m, t: len(m) // 2)
        outcome, _ = run(matcher, slow=True)
        assert not outcome.result.success
        assert outcome.confidence == 0.5
        assert outcome.result.final_score == pytest.approx(50.0)
        assert outcome.image is not None

    def test_implausible_rotation_blended(self):
        """A 60 degree estimate is pulled to 30 degrees by the perspective stage."""
        matcher = FakeFeatureMatcher(homography=HomographyMatrix.rotation(60.0))
        outcome, _ = run(matcher, slow=True)
        result = outcome.result
        assert result.passes[-1].stage == StabilizationStage.PERSPECTIVE_STABILITY_REFINE
        assert result.early_stop_reason == EarlyStopReason.PERSPECTIVE_CONVERGED
        assert outcome.homography.approximate_rotation_degrees() == pytest.approx(30.0)
        assert result.passes_executed <= 10

    def test_refinement_failure_keeps_initial_estimate(self):
        """A failed match quality pass ends the run with the initial homography."""
        matcher = FlakyMatcher(homography=SHIFT)
        outcome, _ = run(matcher, slow=True)
        result = outcome.result
        assert result.early_stop_reason == EarlyStopReason.FEATURE_DETECTION_FAILED
        assert result.passes_executed == 1
        assert outcome.homography == SHIFT
        assert outcome.image is not None

    def test_cancel_after_initial_pass(self):
        """Cancelling stops between passes and produces no image."""
        outcome, processor = run(
            FakeFeatureMatcher(homography=SHIFT), slow=True, on_progress=ProgressRecorder(cancel_after=2)
        )
        assert outcome.cancelled
        assert outcome.image is None
        assert outcome.result.passes_executed == 1
        assert not outcome.result.success
        assert processor.homography_calls == 0

    def test_cancel_before_fast_pass(self):
        """FAST mode checks for cancellation before its only pass."""
        matcher = FakeFeatureMatcher(homography=SHIFT)
        outcome, _ = run(matcher, on_progress=ProgressRecorder(cancel_after=1))
        assert outcome.cancelled
        assert matcher.match_calls == 0
