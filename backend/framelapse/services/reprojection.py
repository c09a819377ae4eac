"""
Reprojection error of feature matches under a homography.
"""

from dataclasses import dataclass, field
from typing import List

import numpy as np

from framelapse.models.landmarks import FeatureKeypoint
from framelapse.services.features import FeatureMatch
from framelapse.services.geometry import POINT_AT_INFINITY, HomographyMatrix

DEFAULT_INLIER_THRESHOLD = 5.0


@dataclass(frozen=True)
class ReprojectionErrorResult:
    mean_error: float
    median_error: float
    max_error: float
    inlier_count: int
    total_matches: int
    errors: List[float] = field(default_factory=list)

    @property
    def inlier_ratio(self) -> float:
        if self.total_matches == 0:
            return 0.0
        return self.inlier_count / self.total_matches


class ReprojectionErrorCalculator:
    """Projects source keypoints through H and measures distance to their matches."""

    def calculate(
        self,
        source_keypoints: List[FeatureKeypoint],
        reference_keypoints: List[FeatureKeypoint],
        matches: List[FeatureMatch],
        homography: HomographyMatrix,
        width: int,
        height: int,
        inlier_threshold: float = DEFAULT_INLIER_THRESHOLD,
    ) -> ReprojectionErrorResult:
        """
        Args:
            source_keypoints, reference_keypoints: Normalized keypoints
            matches: Correspondences to evaluate
            homography: Source-to-reference transform on a width x height canvas
            inlier_threshold: Max error (px) for a match to count as an inlier

        Returns:
            ReprojectionErrorResult; points projected to infinity are skipped
        """
        errors: List[float] = []
        for match in matches:
            sx, sy = source_keypoints[match.source_index].to_pixel_coordinates(width, height)
            rx, ry = reference_keypoints[match.reference_index].to_pixel_coordinates(width, height)
            px, py = homography.transform_point(sx, sy)
            if px == POINT_AT_INFINITY:
                continue
            errors.append(float(np.hypot(px - rx, py - ry)))

        if not errors:
            return ReprojectionErrorResult(
                mean_error=0.0,
                median_error=0.0,
                max_error=0.0,
                inlier_count=0,
                total_matches=len(matches),
            )

        values = np.asarray(errors)
        return ReprojectionErrorResult(
            mean_error=float(values.mean()),
            median_error=float(np.median(values)),
            max_error=float(values.max()),
            inlier_count=int(np.sum(values <= inlier_threshold)),
            total_matches=len(matches),
            errors=errors,
        )
