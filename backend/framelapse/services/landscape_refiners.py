"""
Single-axis refiners for landscape (homography) stabilization.

- MatchQualityRefiner: keeps the strongest share of matches and re-estimates H
- RansacThresholdRefiner: tightens the RANSAC reprojection threshold
- PerspectiveStabilityRefiner: pulls implausible homographies toward identity

Homographies live in the pixel space of the output canvas (width x height).
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

from framelapse.models.landmarks import FeatureKeypoint
from framelapse.models.settings import LandscapeStabilizationSettings
from framelapse.services.errors import (
    CapabilityUnavailableError,
    DegenerateGeometryError,
    InsufficientMatchesError,
    InvalidInputError,
)
from framelapse.services.features import MIN_MATCHES_FOR_HOMOGRAPHY, FeatureMatch, FeatureMatcher
from framelapse.services.geometry import POINT_AT_INFINITY, HomographyMatrix
from framelapse.services.reprojection import ReprojectionErrorCalculator

logger = logging.getLogger(__name__)

# Share of matches kept, by overall pass number
MATCH_PERCENTILE_SCHEDULE = {1: 1.0, 2: 0.85, 3: 0.70, 4: 0.55}
MATCH_PERCENTILE_FLOOR = 0.40


def match_percentile_for_pass(pass_number: int, min_percentile: float = 0.0) -> float:
    if pass_number <= 1:
        return 1.0
    scheduled = MATCH_PERCENTILE_SCHEDULE.get(pass_number, MATCH_PERCENTILE_FLOOR)
    return max(scheduled, min_percentile)


def _estimate(
    matcher: FeatureMatcher,
    source_keypoints: List[FeatureKeypoint],
    reference_keypoints: List[FeatureKeypoint],
    matches: List[FeatureMatch],
    threshold: float,
    width: int,
    height: int,
):
    if not source_keypoints or not reference_keypoints:
        raise InvalidInputError("Keypoints are empty")
    if len(matches) < MIN_MATCHES_FOR_HOMOGRAPHY:
        raise InsufficientMatchesError(
            "Not enough matches for homography computation",
            details={"matches": len(matches), "required": MIN_MATCHES_FOR_HOMOGRAPHY},
        )
    if not matcher.is_available:
        raise CapabilityUnavailableError("Feature matching is not available on this system")

    estimate = matcher.compute_homography(
        source_keypoints, reference_keypoints, matches, threshold, width, height
    )
    if estimate is None:
        raise DegenerateGeometryError("HOMOGRAPHY_FAILED", "Failed to compute homography")
    return estimate


# ============================================================
# MATCH QUALITY
# ============================================================

@dataclass(frozen=True)
class MatchQualityRefinement:
    homography: HomographyMatrix
    matches: List[FeatureMatch]
    inlier_count: int
    inlier_ratio: float
    percentile: float
    converged: bool


class MatchQualityRefiner:
    """Ranks matches by combined keypoint response and keeps the top share."""

    def __init__(self, matcher: FeatureMatcher):
        self.matcher = matcher

    def refine(
        self,
        source_keypoints: List[FeatureKeypoint],
        reference_keypoints: List[FeatureKeypoint],
        matches: List[FeatureMatch],
        previous_inlier_ratio: float,
        pass_number: int,
        settings: LandscapeStabilizationSettings,
        width: int,
        height: int,
    ) -> MatchQualityRefinement:
        """
        Args:
            matches: The full initial match set; filtering always starts from it
            previous_inlier_ratio: Inlier ratio of the previous pass
            pass_number: Overall pass number, selects the percentile kept

        Returns:
            MatchQualityRefinement; converged when the inlier ratio improved by
            less than inlier_ratio_improvement_threshold
        """
        percentile = match_percentile_for_pass(pass_number, settings.min_match_quality_percentile)
        ranked = sorted(
            matches,
            key=lambda m: source_keypoints[m.source_index].response
            * reference_keypoints[m.reference_index].response,
            reverse=True,
        )
        keep = max(MIN_MATCHES_FOR_HOMOGRAPHY, int(math.ceil(len(ranked) * percentile)))
        filtered = ranked[:keep]

        homography, inlier_count = _estimate(
            self.matcher,
            source_keypoints,
            reference_keypoints,
            filtered,
            settings.initial_ransac_threshold,
            width,
            height,
        )
        inlier_ratio = inlier_count / len(filtered) if filtered else 0.0
        improvement = inlier_ratio - previous_inlier_ratio
        converged = improvement < settings.inlier_ratio_improvement_threshold

        logger.debug(
            f"Match quality pass {pass_number}: kept {len(filtered)}/{len(matches)} "
            f"({percentile:.0%}), inlier ratio {previous_inlier_ratio:.3f} -> {inlier_ratio:.3f}"
        )
        return MatchQualityRefinement(
            homography=homography,
            matches=filtered,
            inlier_count=inlier_count,
            inlier_ratio=inlier_ratio,
            percentile=percentile,
            converged=converged,
        )


# ============================================================
# RANSAC THRESHOLD
# ============================================================

@dataclass(frozen=True)
class RansacThresholdRefinement:
    homography: HomographyMatrix
    threshold: float
    inlier_count: int
    inlier_ratio: float
    mean_reprojection_error: float
    converged: bool


class RansacThresholdRefiner:
    """Re-estimates H with a progressively tighter reprojection threshold."""

    def __init__(self, matcher: FeatureMatcher, calculator: Optional[ReprojectionErrorCalculator] = None):
        self.matcher = matcher
        self.calculator = calculator or ReprojectionErrorCalculator()

    def refine(
        self,
        source_keypoints: List[FeatureKeypoint],
        reference_keypoints: List[FeatureKeypoint],
        matches: List[FeatureMatch],
        previous_threshold: float,
        settings: LandscapeStabilizationSettings,
        width: int,
        height: int,
    ) -> RansacThresholdRefinement:
        threshold = max(
            previous_threshold * settings.ransac_reduction_factor,
            settings.min_ransac_threshold,
        )
        homography, inlier_count = _estimate(
            self.matcher, source_keypoints, reference_keypoints, matches, threshold, width, height
        )

        errors = self.calculator.calculate(
            source_keypoints, reference_keypoints, matches, homography, width, height,
            inlier_threshold=threshold,
        )
        inlier_errors = [e for e in errors.errors if e <= threshold]
        if inlier_errors:
            mean_error = sum(inlier_errors) / len(inlier_errors)
        else:
            mean_error = threshold / 2.0

        converged = (
            mean_error < settings.mean_reprojection_error_threshold
            or threshold <= settings.min_ransac_threshold
        )
        logger.debug(
            f"RANSAC threshold {previous_threshold:.2f} -> {threshold:.2f}: "
            f"{inlier_count}/{len(matches)} inliers, mean error {mean_error:.3f}px"
        )
        return RansacThresholdRefinement(
            homography=homography,
            threshold=threshold,
            inlier_count=inlier_count,
            inlier_ratio=inlier_count / len(matches) if matches else 0.0,
            mean_reprojection_error=mean_error,
            converged=converged,
        )


# ============================================================
# PERSPECTIVE STABILITY
# ============================================================

@dataclass(frozen=True)
class PerspectiveRefinement:
    homography: HomographyMatrix
    is_valid: bool
    determinant: float
    determinant_change: float
    blended: bool
    converged: bool
    issues: List[str] = field(default_factory=list)


def perspective_issues(
    homography: HomographyMatrix,
    settings: LandscapeStabilizationSettings,
    width: int = 1,
    height: int = 1,
) -> List[str]:
    """List the ways a homography falls outside plausible frame-to-frame motion."""
    issues = []
    determinant = homography.determinant
    if not settings.min_determinant <= determinant <= settings.max_determinant:
        issues.append(f"Determinant {determinant:.3f} outside [{settings.min_determinant}, {settings.max_determinant}]")

    scale = homography.approximate_scale()
    if not settings.min_scale <= scale <= settings.max_scale:
        issues.append(f"Scale {scale:.3f} outside [{settings.min_scale}, {settings.max_scale}]")

    rotation = homography.approximate_rotation_degrees()
    if abs(rotation) > settings.max_rotation_degrees:
        issues.append(f"Rotation {rotation:.1f} exceeds {settings.max_rotation_degrees} degrees")

    if not _maps_to_convex_quad(homography, width, height):
        issues.append("Canvas corners do not map to a convex quadrilateral")
    return issues


def _maps_to_convex_quad(homography: HomographyMatrix, width: int, height: int) -> bool:
    corners = homography.transform_points([(0, 0), (width, 0), (width, height), (0, height)])
    if any(x == POINT_AT_INFINITY or not math.isfinite(x) or not math.isfinite(y) for x, y in corners):
        return False

    signs = []
    for i in range(4):
        x0, y0 = corners[i]
        x1, y1 = corners[(i + 1) % 4]
        x2, y2 = corners[(i + 2) % 4]
        cross = (x1 - x0) * (y2 - y1) - (y1 - y0) * (x2 - x1)
        if cross == 0:
            return False
        signs.append(cross > 0)
    return all(signs) or not any(signs)


class PerspectiveStabilityRefiner:
    """Blends implausible homographies toward identity."""

    def refine(
        self,
        homography: HomographyMatrix,
        previous_determinant: Optional[float],
        settings: LandscapeStabilizationSettings,
        width: int = 1,
        height: int = 1,
    ) -> PerspectiveRefinement:
        """
        Args:
            homography: Current best homography
            previous_determinant: Determinant after the previous perspective
                pass, None on the first one
            settings: Bounds and blend factor

        Returns:
            PerspectiveRefinement; converged when the output is plausible and
            its determinant moved less than determinant_change_threshold

        Raises:
            DegenerateGeometryError: The input homography is singular
        """
        if not homography.is_valid():
            raise DegenerateGeometryError(
                "HOMOGRAPHY_SINGULAR",
                "Cannot stabilize a singular homography",
                details={"determinant": homography.determinant},
            )

        issues = perspective_issues(homography, settings, width, height)
        blended = bool(issues)
        output = homography
        if blended:
            output = homography.lerp(HomographyMatrix.IDENTITY, settings.perspective_blend_factor)
            logger.debug(f"Blending homography toward identity: {'; '.join(issues)}")

        remaining = perspective_issues(output, settings, width, height)
        is_valid = output.is_valid() and not remaining
        determinant = output.determinant
        if previous_determinant is None:
            change = math.inf
        else:
            change = abs(determinant - previous_determinant)

        converged = is_valid and (
            previous_determinant is None or change < settings.determinant_change_threshold
        )
        return PerspectiveRefinement(
            homography=output,
            is_valid=is_valid,
            determinant=determinant,
            determinant_change=change,
            blended=blended,
            converged=converged,
            issues=issues,
        )
