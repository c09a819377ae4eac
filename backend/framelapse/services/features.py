"""
Feature detection, matching and homography estimation with OpenCV.

Keypoints are stored normalized; homographies are estimated in the pixel
space of a caller-supplied canvas (width x height), so a homography computed
for the output canvas can be handed straight to the warp.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np

from framelapse.models.landmarks import (
    BoundingBox,
    FeatureDetectorType,
    FeatureKeypoint,
    LandscapeLandmarks,
)
from framelapse.services.errors import DetectionError
from framelapse.services.geometry import HomographyMatrix
from framelapse.services.imaging import ImageData

logger = logging.getLogger(__name__)

MIN_MATCHES_FOR_HOMOGRAPHY = 4


@dataclass(frozen=True)
class FeatureMatch:
    """A correspondence between a source keypoint and a reference keypoint."""
    source_index: int
    reference_index: int
    distance: float


class FeatureMatcher(Protocol):
    """Landscape feature backend."""

    @property
    def is_available(self) -> bool:
        ...

    def detect_features(
        self,
        image: ImageData,
        detector_type: FeatureDetectorType,
        max_keypoints: int,
    ) -> LandscapeLandmarks:
        ...

    def match_features(
        self,
        source: LandscapeLandmarks,
        reference: LandscapeLandmarks,
        ratio_test_threshold: float,
        use_cross_check: bool,
    ) -> List[FeatureMatch]:
        ...

    def compute_homography(
        self,
        source_keypoints: List[FeatureKeypoint],
        reference_keypoints: List[FeatureKeypoint],
        matches: List[FeatureMatch],
        ransac_threshold: float,
        width: int,
        height: int,
    ) -> Optional[Tuple[HomographyMatrix, int]]:
        ...


def matched_pixel_points(
    source_keypoints: List[FeatureKeypoint],
    reference_keypoints: List[FeatureKeypoint],
    matches: List[FeatureMatch],
    width: int,
    height: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Matched point arrays (N x 1 x 2, float32) scaled onto a width x height canvas."""
    src = np.float32([
        source_keypoints[m.source_index].to_pixel_coordinates(width, height) for m in matches
    ]).reshape(-1, 1, 2)
    ref = np.float32([
        reference_keypoints[m.reference_index].to_pixel_coordinates(width, height) for m in matches
    ]).reshape(-1, 1, 2)
    return src, ref


class OpenCVFeatureMatcher:
    """ORB/AKAZE detection, brute-force Hamming matching and RANSAC homography."""

    @property
    def is_available(self) -> bool:
        return hasattr(cv2, "ORB_create") and hasattr(cv2, "findHomography")

    def _create_feature_detector(
        self, detector_type: FeatureDetectorType, max_keypoints: int
    ) -> cv2.Feature2D:
        """Create a feature detector by type."""
        if detector_type == FeatureDetectorType.AKAZE:
            return cv2.AKAZE_create()
        return cv2.ORB_create(nfeatures=max_keypoints)

    def detect_features(
        self,
        image: ImageData,
        detector_type: FeatureDetectorType,
        max_keypoints: int,
    ) -> LandscapeLandmarks:
        """Detect keypoints and binary descriptors; keeps the strongest max_keypoints."""
        gray = image.grayscale()
        height, width = gray.shape[:2]

        try:
            detector = self._create_feature_detector(detector_type, max_keypoints)
            keypoints, descriptors = detector.detectAndCompute(gray, None)
        except cv2.error as e:
            raise DetectionError(
                f"{detector_type.value} feature detection failed: {e}",
                details={"detector": detector_type.value},
            ) from e

        if descriptors is None or not keypoints:
            logger.debug(f"{detector_type.value}: No descriptors found")
            return LandscapeLandmarks(detector_type=detector_type, keypoint_count=0)

        order = sorted(range(len(keypoints)), key=lambda i: keypoints[i].response, reverse=True)
        order = order[:max_keypoints]

        feature_keypoints = [
            FeatureKeypoint.from_pixel_coordinates(
                keypoints[i].pt[0],
                keypoints[i].pt[1],
                width,
                height,
                response=float(keypoints[i].response),
                size=float(keypoints[i].size),
                angle=float(keypoints[i].angle),
                octave=int(keypoints[i].octave),
            )
            for i in order
        ]
        kept_descriptors = descriptors[order]

        xs = [kp.position.x for kp in feature_keypoints]
        ys = [kp.position.y for kp in feature_keypoints]
        responses = [kp.response for kp in feature_keypoints]

        logger.debug(f"{detector_type.value}: {len(feature_keypoints)} keypoints on {width}x{height}")
        return LandscapeLandmarks(
            keypoints=feature_keypoints,
            detector_type=detector_type,
            keypoint_count=len(feature_keypoints),
            bounding_box=BoundingBox(left=min(xs), top=min(ys), right=max(xs), bottom=max(ys)),
            quality_score=float(np.mean(responses)) if responses else 0.0,
            descriptors=kept_descriptors.tolist(),
        )

    def match_features(
        self,
        source: LandscapeLandmarks,
        reference: LandscapeLandmarks,
        ratio_test_threshold: float,
        use_cross_check: bool,
    ) -> List[FeatureMatch]:
        """
        Lowe ratio test on k=2 nearest neighbours, optionally keeping only
        matches that are also the best reference-to-source match.
        """
        desc_src = source.descriptor_array()
        desc_ref = reference.descriptor_array()
        if desc_src is None or desc_ref is None or len(desc_src) < 2 or len(desc_ref) < 2:
            return []

        bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        try:
            knn = bf.knnMatch(desc_src, desc_ref, k=2)
            reverse = bf.match(desc_ref, desc_src) if use_cross_check else []
        except cv2.error as e:
            raise DetectionError(
                f"Feature matching failed: {e}",
                details={
                    "source_detector": source.detector_type.value,
                    "reference_detector": reference.detector_type.value,
                    "source_descriptor_size": int(desc_src.shape[1]),
                    "reference_descriptor_size": int(desc_ref.shape[1]),
                },
            ) from e

        good: List[FeatureMatch] = []
        for match_pair in knn:
            if len(match_pair) < 2:
                continue
            m, n = match_pair
            if m.distance < ratio_test_threshold * n.distance:
                good.append(FeatureMatch(m.queryIdx, m.trainIdx, float(m.distance)))

        if use_cross_check and good:
            best_for_reference = {r.queryIdx: r.trainIdx for r in reverse}
            good = [m for m in good if best_for_reference.get(m.reference_index) == m.source_index]

        logger.debug(f"Matched {len(good)} features (ratio={ratio_test_threshold}, cross_check={use_cross_check})")
        return good

    def compute_homography(
        self,
        source_keypoints: List[FeatureKeypoint],
        reference_keypoints: List[FeatureKeypoint],
        matches: List[FeatureMatch],
        ransac_threshold: float,
        width: int,
        height: int,
    ) -> Optional[Tuple[HomographyMatrix, int]]:
        """Source-to-reference homography on a width x height canvas, or None if RANSAC fails."""
        if len(matches) < MIN_MATCHES_FOR_HOMOGRAPHY:
            return None

        pts_src, pts_ref = matched_pixel_points(source_keypoints, reference_keypoints, matches, width, height)
        matrix, inliers = cv2.findHomography(
            pts_src, pts_ref,
            method=cv2.RANSAC,
            ransacReprojThreshold=ransac_threshold,
        )
        if matrix is None:
            logger.debug("RANSAC failed")
            return None

        num_inliers = int(np.sum(inliers)) if inliers is not None else 0
        return HomographyMatrix.from_array(matrix), num_inliers
