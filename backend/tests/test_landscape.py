"""
Tests for validated landscape feature steps: detect, match, homography.
"""

import numpy as np
import pytest

from fakes import FakeFeatureMatcher, make_keypoints
from framelapse.models.landmarks import FeatureDetectorType, LandscapeLandmarks
from framelapse.services.errors import (
    CapabilityUnavailableError,
    DegenerateGeometryError,
    InsufficientMatchesError,
    InvalidInputError,
    NoDetectionError,
)
from framelapse.services.features import FeatureMatch
from framelapse.services.geometry import HomographyMatrix
from framelapse.services.imaging import ImageData
from framelapse.services.landscape import LandscapeFeatureService


@pytest.fixture
def image():
    return ImageData(pixels=np.zeros((120, 160, 3), dtype=np.uint8), source_path="frame.jpg")


def service(**kwargs) -> LandscapeFeatureService:
    return LandscapeFeatureService(FakeFeatureMatcher(**kwargs))


class TestDetectFeatures:
    """Tests for LandscapeFeatureService.detect_features."""

    def test_returns_landmarks(self, image):
        """Enough keypoints are passed through."""
        landmarks = service().detect_features(image)
        assert landmarks.keypoint_count == 40
        assert landmarks.has_descriptors()

    def test_no_keypoints(self, image):
        """An empty detection is a NoDetectionError."""
        svc = service(default_landmarks=LandscapeLandmarks(keypoint_count=0))
        with pytest.raises(NoDetectionError) as exc_info:
            svc.detect_features(image)
        assert exc_info.value.code == "NO_FEATURES_DETECTED"

    def test_too_few_keypoints(self, image):
        """Fewer than ten keypoints cannot be matched."""
        svc = service(default_landmarks=make_keypoints(6))
        with pytest.raises(InsufficientMatchesError):
            svc.detect_features(image)

    def test_max_keypoints_below_minimum(self, image):
        """max_keypoints must allow at least ten keypoints."""
        with pytest.raises(InvalidInputError):
            service().detect_features(image, FeatureDetectorType.ORB, max_keypoints=5)

    def test_unavailable_backend(self, image):
        """Missing backend is reported as a capability problem."""
        with pytest.raises(CapabilityUnavailableError):
            service(available=False).detect_features(image)


class TestMatchFeatures:
    """Tests for LandscapeFeatureService.match_features."""

    def test_five_keypoints_rejected_before_matching(self):
        """Only 5 matchable keypoints: explicit not-enough-matches error, matcher untouched."""
        matcher = FakeFeatureMatcher()
        svc = LandscapeFeatureService(matcher)
        with pytest.raises(InsufficientMatchesError) as exc_info:
            svc.match_features(make_keypoints(5), make_keypoints(40))
        assert "Not enough matches" in exc_info.value.message
        assert matcher.match_calls == 0
        assert matcher.homography_thresholds == []

    def test_too_few_matches(self):
        """Matches below min_match_count are an error."""
        svc = service(match_limit=6)
        with pytest.raises(InsufficientMatchesError) as exc_info:
            svc.match_features(make_keypoints(40), make_keypoints(40))
        assert exc_info.value.details["matches"] == 6

    def test_empty_side(self):
        """A side without keypoints is a NoDetectionError."""
        with pytest.raises(NoDetectionError):
            service().match_features(LandscapeLandmarks(keypoint_count=0), make_keypoints(40))

    def test_ratio_out_of_range(self):
        """Ratio threshold must lie in [0.5, 0.95]."""
        with pytest.raises(InvalidInputError):
            service().match_features(make_keypoints(40), make_keypoints(40), ratio_test_threshold=0.99)

    def test_min_match_count_floor(self):
        """min_match_count below 4 is rejected."""
        with pytest.raises(InvalidInputError):
            service().match_features(make_keypoints(40), make_keypoints(40), min_match_count=3)

    def test_matches_returned(self):
        """Valid input returns the backend matches."""
        matches = service().match_features(make_keypoints(40), make_keypoints(30))
        assert len(matches) == 30


class TestComputeHomography:
    """Tests for LandscapeFeatureService.compute_homography."""

    def _args(self, count=20):
        src = make_keypoints(count).keypoints
        ref = make_keypoints(count, offset=(4.0, 2.0)).keypoints
        matches = [FeatureMatch(i, i, 0.0) for i in range(count)]
        return src, ref, matches

    def test_valid_homography(self):
        """A plausible homography with enough inliers is returned."""
        src, ref, matches = self._args()
        estimate = service(homography=HomographyMatrix.translation(4.0, 2.0)).compute_homography(
            src, ref, matches, 256, 256
        )
        assert estimate.match_count == 20
        assert estimate.inlier_ratio == 1.0

    def test_determinant_far_below_floor(self):
        """det 0.0025 is rejected even though RANSAC produced a matrix."""
        src, ref, matches = self._args()
        svc = service(homography=HomographyMatrix.scale(0.05))
        with pytest.raises(DegenerateGeometryError) as exc_info:
            svc.compute_homography(src, ref, matches, 256, 256)
        assert exc_info.value.code == "HOMOGRAPHY_DETERMINANT_OUT_OF_BOUNDS"
        assert "determinant out of" in exc_info.value.message
        assert exc_info.value.details["determinant"] == pytest.approx(0.0025)

    def test_singular_homography(self):
        """A singular matrix is rejected."""
        src, ref, matches = self._args()
        svc = service(homography=HomographyMatrix(h11=0.0, h22=0.0, h33=1.0))
        with pytest.raises(DegenerateGeometryError) as exc_info:
            svc.compute_homography(src, ref, matches, 256, 256)
        assert exc_info.value.code == "HOMOGRAPHY_SINGULAR"

    def test_too_many_outliers(self):
        """Inlier ratio below 0.2 is rejected."""
        src, ref, matches = self._args()
        svc = service(inlier_fn=lambda m, t: 3)
        with pytest.raises(DegenerateGeometryError) as exc_info:
            svc.compute_homography(src, ref, matches, 256, 256)
        assert exc_info.value.code == "INSUFFICIENT_INLIERS"

    def test_input_validation(self):
        """Empty keypoints, few matches, bad threshold and bad indices are rejected."""
        src, ref, matches = self._args()
        svc = service()
        with pytest.raises(InvalidInputError):
            svc.compute_homography([], ref, matches, 256, 256)
        with pytest.raises(InsufficientMatchesError):
            svc.compute_homography(src, ref, matches[:3], 256, 256)
        with pytest.raises(InvalidInputError):
            svc.compute_homography(src, ref, matches, 256, 256, ransac_threshold=0.0)
        with pytest.raises(InvalidInputError):
            svc.compute_homography(src, ref, matches + [FeatureMatch(99, 0, 0.0)], 256, 256)
