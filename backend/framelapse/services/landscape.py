"""
Validated landscape feature steps: detect, match, estimate homography.

These wrap a FeatureMatcher backend and turn its raw output into either a
usable value or a specific StabilizationError.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from framelapse.models.landmarks import (
    MIN_KEYPOINTS_FOR_MATCHING,
    FeatureDetectorType,
    FeatureKeypoint,
    LandscapeLandmarks,
)
from framelapse.services.errors import (
    CapabilityUnavailableError,
    DegenerateGeometryError,
    InsufficientMatchesError,
    InvalidInputError,
    NoDetectionError,
)
from framelapse.services.features import (
    MIN_MATCHES_FOR_HOMOGRAPHY,
    FeatureMatch,
    FeatureMatcher,
    OpenCVFeatureMatcher,
)
from framelapse.services.geometry import HomographyMatrix
from framelapse.services.imaging import ImageData

logger = logging.getLogger(__name__)

DEFAULT_RATIO_TEST_THRESHOLD = 0.75
DEFAULT_MIN_MATCH_COUNT = 10
DEFAULT_RANSAC_THRESHOLD = 5.0

MIN_RATIO_TEST_THRESHOLD = 0.5
MAX_RATIO_TEST_THRESHOLD = 0.95

# Acceptable |det(H)| for a frame-to-frame homography
MIN_HOMOGRAPHY_DETERMINANT = 0.01
MAX_HOMOGRAPHY_DETERMINANT = 100.0
MIN_INLIER_RATIO = 0.2


@dataclass(frozen=True)
class HomographyEstimate:
    homography: HomographyMatrix
    inlier_count: int
    match_count: int

    @property
    def inlier_ratio(self) -> float:
        if self.match_count == 0:
            return 0.0
        return self.inlier_count / self.match_count


class LandscapeFeatureService:
    """Feature detection, matching and homography with input/output validation."""

    def __init__(self, matcher: Optional[FeatureMatcher] = None):
        self.matcher = matcher or OpenCVFeatureMatcher()

    @property
    def is_available(self) -> bool:
        return self.matcher.is_available

    def _require_available(self) -> None:
        if not self.matcher.is_available:
            raise CapabilityUnavailableError("Feature matching is not available on this system")

    def detect_features(
        self,
        image: ImageData,
        detector_type: FeatureDetectorType = FeatureDetectorType.ORB,
        max_keypoints: int = 500,
    ) -> LandscapeLandmarks:
        """
        Detect keypoints on an image.

        Raises:
            InvalidInputError: Empty image or max_keypoints below the minimum
            CapabilityUnavailableError: Backend unavailable
            NoDetectionError: No keypoints at all
            InsufficientMatchesError: Fewer keypoints than matching needs
        """
        if image.width <= 0 or image.height <= 0:
            raise InvalidInputError(
                "Image has invalid dimensions",
                details={"width": image.width, "height": image.height},
            )
        if max_keypoints < MIN_KEYPOINTS_FOR_MATCHING:
            raise InvalidInputError(
                f"max_keypoints must be at least {MIN_KEYPOINTS_FOR_MATCHING}",
                details={"max_keypoints": max_keypoints},
            )
        self._require_available()

        landmarks = self.matcher.detect_features(image, detector_type, max_keypoints)
        if landmarks.keypoint_count == 0:
            raise NoDetectionError("No features detected in image", code="NO_FEATURES_DETECTED")
        if not landmarks.has_enough_keypoints():
            raise InsufficientMatchesError(
                f"Not enough keypoints: found {landmarks.keypoint_count}, "
                f"need at least {MIN_KEYPOINTS_FOR_MATCHING}",
                details={"keypoint_count": landmarks.keypoint_count},
            )
        logger.debug(f"Detected {landmarks.keypoint_count} {detector_type.value} keypoints")
        return landmarks

    def match_features(
        self,
        source: LandscapeLandmarks,
        reference: LandscapeLandmarks,
        ratio_test_threshold: float = DEFAULT_RATIO_TEST_THRESHOLD,
        use_cross_check: bool = True,
        min_match_count: int = DEFAULT_MIN_MATCH_COUNT,
    ) -> List[FeatureMatch]:
        """
        Match source keypoints against reference keypoints.

        Raises:
            NoDetectionError: Either side has no keypoints
            InsufficientMatchesError: Too few keypoints or matches; no
                homography should be attempted
            InvalidInputError: Ratio threshold or min_match_count out of range
            DetectionError: Descriptors from different detectors
            CapabilityUnavailableError: Backend unavailable
        """
        if source.keypoint_count == 0 or reference.keypoint_count == 0:
            raise NoDetectionError(
                "No features detected in one or both images",
                code="NO_FEATURES_DETECTED",
                details={"source": source.keypoint_count, "reference": reference.keypoint_count},
            )
        if not source.has_enough_keypoints() or not reference.has_enough_keypoints():
            raise InsufficientMatchesError(
                f"Not enough matches: need at least {MIN_KEYPOINTS_FOR_MATCHING} keypoints per image",
                details={"source": source.keypoint_count, "reference": reference.keypoint_count},
            )
        if not MIN_RATIO_TEST_THRESHOLD <= ratio_test_threshold <= MAX_RATIO_TEST_THRESHOLD:
            raise InvalidInputError(
                f"Ratio test threshold must be between {MIN_RATIO_TEST_THRESHOLD} "
                f"and {MAX_RATIO_TEST_THRESHOLD}",
                details={"ratio_test_threshold": ratio_test_threshold},
            )
        if min_match_count < MIN_MATCHES_FOR_HOMOGRAPHY:
            raise InvalidInputError(
                f"min_match_count must be at least {MIN_MATCHES_FOR_HOMOGRAPHY}",
                details={"min_match_count": min_match_count},
            )
        self._require_available()

        matches = self.matcher.match_features(source, reference, ratio_test_threshold, use_cross_check)
        if len(matches) < min_match_count:
            raise InsufficientMatchesError(
                "Not enough feature matches between images",
                details={"matches": len(matches), "required": min_match_count},
            )
        return matches

    def compute_homography(
        self,
        source_keypoints: List[FeatureKeypoint],
        reference_keypoints: List[FeatureKeypoint],
        matches: List[FeatureMatch],
        width: int,
        height: int,
        ransac_threshold: float = DEFAULT_RANSAC_THRESHOLD,
    ) -> HomographyEstimate:
        """
        Estimate the source-to-reference homography on a width x height canvas.

        Raises:
            InvalidInputError: Empty keypoints, bad threshold or match indices
            InsufficientMatchesError: Fewer than 4 matches
            CapabilityUnavailableError: Backend unavailable
            DegenerateGeometryError: RANSAC failed, singular result,
                determinant out of bounds, or too many outliers
        """
        if not source_keypoints:
            raise InvalidInputError("Source keypoints are empty")
        if not reference_keypoints:
            raise InvalidInputError("Reference keypoints are empty")
        if len(matches) < MIN_MATCHES_FOR_HOMOGRAPHY:
            raise InsufficientMatchesError(
                "Not enough matches for homography computation",
                details={"matches": len(matches), "required": MIN_MATCHES_FOR_HOMOGRAPHY},
            )
        if ransac_threshold <= 0:
            raise InvalidInputError(
                "RANSAC threshold must be positive",
                details={"ransac_threshold": ransac_threshold},
            )
        for match in matches:
            if not 0 <= match.source_index < len(source_keypoints):
                raise InvalidInputError(
                    "Match source index out of bounds",
                    details={"index": match.source_index, "size": len(source_keypoints)},
                )
            if not 0 <= match.reference_index < len(reference_keypoints):
                raise InvalidInputError(
                    "Match reference index out of bounds",
                    details={"index": match.reference_index, "size": len(reference_keypoints)},
                )
        self._require_available()

        estimate = self.matcher.compute_homography(
            source_keypoints, reference_keypoints, matches, ransac_threshold, width, height
        )
        if estimate is None:
            raise DegenerateGeometryError("HOMOGRAPHY_FAILED", "Failed to compute homography")
        homography, inlier_count = estimate

        if not homography.is_valid():
            raise DegenerateGeometryError(
                "HOMOGRAPHY_SINGULAR",
                "Computed homography is singular",
                details={"determinant": homography.determinant},
            )
        determinant = homography.determinant
        if not MIN_HOMOGRAPHY_DETERMINANT <= abs(determinant) <= MAX_HOMOGRAPHY_DETERMINANT:
            raise DegenerateGeometryError(
                "HOMOGRAPHY_DETERMINANT_OUT_OF_BOUNDS",
                "Homography determinant out of acceptable range",
                details={
                    "determinant": determinant,
                    "min": MIN_HOMOGRAPHY_DETERMINANT,
                    "max": MAX_HOMOGRAPHY_DETERMINANT,
                },
            )

        result = HomographyEstimate(homography, inlier_count, len(matches))
        if result.inlier_ratio < MIN_INLIER_RATIO:
            raise DegenerateGeometryError(
                "INSUFFICIENT_INLIERS",
                "Too many outliers in feature matches",
                details={"inlier_ratio": result.inlier_ratio, "minimum": MIN_INLIER_RATIO},
            )
        logger.debug(
            f"Homography: {inlier_count}/{len(matches)} inliers, det={determinant:.4f}, "
            f"thr={ransac_threshold:.2f}"
        )
        return result
