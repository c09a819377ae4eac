"""
Multi-pass stabilization for landscape frames (homography path).

FAST mode: match -> homography (RANSAC) -> warp, one pass.

SLOW mode (up to 10 passes):
    INITIAL -> MATCH_QUALITY_REFINE x3 -> RANSAC_THRESHOLD_REFINE x3
            -> PERSPECTIVE_STABILITY_REFINE x3
    A stage that converges hands over to the next one; a stage that errors
    ends the run with the best homography so far.

Pass score is (1 - inlier_ratio) * 100, so lower is better like the
face/body score. The best homography is the one with the highest inlier
ratio; the perspective stage only replaces it with a plausible blend.

Homographies are estimated on the output canvas (normalized keypoints times
output size). The source image is scaled onto that canvas before warping.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from framelapse.models.landmarks import LandscapeLandmarks
from framelapse.models.settings import LandscapeAlignmentSettings, StabilizationMode
from framelapse.models.stabilization import (
    EarlyStopReason,
    StabilizationPass,
    StabilizationResult,
    StabilizationStage,
)
from framelapse.services.errors import StabilizationError
from framelapse.services.features import FeatureMatch
from framelapse.services.geometry import HomographyMatrix
from framelapse.services.imaging import ImageData, ImageProcessor
from framelapse.services.landscape import LandscapeFeatureService
from framelapse.services.landscape_refiners import (
    MatchQualityRefiner,
    PerspectiveStabilityRefiner,
    RansacThresholdRefiner,
)
from framelapse.services.progress import ProgressCallback, ProgressReporter
from framelapse.services.reprojection import ReprojectionErrorCalculator
from framelapse.services.scoring import landscape_fast_confidence

logger = logging.getLogger(__name__)

STAGE_PASSES = 3
INVALID_PERSPECTIVE_PENALTY = 20.0
UNSUCCESSFUL_CONFIDENCE = 0.5


def inlier_score(inlier_ratio: float) -> float:
    return (1.0 - inlier_ratio) * 100.0


@dataclass
class LandscapeStabilizationOutcome:
    image: Optional[ImageData]
    homography: HomographyMatrix
    result: StabilizationResult
    match_count: int = 0
    inlier_count: int = 0
    confidence: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self.result.early_stop_reason == EarlyStopReason.CANCELLED


@dataclass
class _LandscapeRunState:
    passes: List[StabilizationPass] = field(default_factory=list)
    stage_reasons: List[EarlyStopReason] = field(default_factory=list)
    reason: Optional[EarlyStopReason] = None
    best_homography: HomographyMatrix = HomographyMatrix.IDENTITY
    best_ratio: float = 0.0
    best_inliers: int = 0
    matches: List[FeatureMatch] = field(default_factory=list)

    @property
    def pass_count(self) -> int:
        return len(self.passes)

    def record(self, stage, score_before, score_after, converged, started) -> None:
        self.passes.append(StabilizationPass(
            pass_number=len(self.passes) + 1,
            stage=stage,
            score_before=score_before,
            score_after=score_after,
            converged=converged,
            duration_ms=int((time.perf_counter() - started) * 1000),
        ))

    def offer(self, homography: HomographyMatrix, ratio: float, inliers: int) -> None:
        if ratio >= self.best_ratio:
            self.best_homography = homography
            self.best_ratio = ratio
            self.best_inliers = inliers


class MultiPassLandscapeStabilizer:
    """Iteratively refines a landscape homography."""

    def __init__(
        self,
        feature_service: LandscapeFeatureService,
        image_processor: ImageProcessor,
        calculator: Optional[ReprojectionErrorCalculator] = None,
    ):
        self.feature_service = feature_service
        self.image_processor = image_processor
        self.calculator = calculator or ReprojectionErrorCalculator()
        self.match_quality_refiner = MatchQualityRefiner(feature_service.matcher)
        self.ransac_refiner = RansacThresholdRefiner(feature_service.matcher, self.calculator)
        self.perspective_refiner = PerspectiveStabilityRefiner()

    # ============================================================
    # MAIN ENTRY POINT
    # ============================================================

    def stabilize(
        self,
        source_image: ImageData,
        source_landmarks: LandscapeLandmarks,
        reference_landmarks: LandscapeLandmarks,
        settings: LandscapeAlignmentSettings,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> LandscapeStabilizationOutcome:
        """
        Align a landscape frame onto the reference frame's keypoints.

        Args:
            source_image: Original frame to warp
            source_landmarks: Keypoints/descriptors detected on source_image
            reference_landmarks: Keypoints/descriptors of the reference frame
            settings: Matching parameters and stabilization thresholds
            on_progress: Called once per pass; returning False cancels
            cancel_event: Alternative cancellation signal for batch runs

        Returns:
            LandscapeStabilizationOutcome

        Raises:
            InsufficientMatchesError, NoDetectionError, DegenerateGeometryError:
                The initial match or homography is unusable
        """
        stab = settings.stabilization
        reporter = ProgressReporter(on_progress, stab.max_passes, stab.mode, cancel_event)
        logger.info(
            f"Landscape stabilization starting: mode={stab.mode.value}, "
            f"source={source_landmarks.keypoint_count}kp, reference={reference_landmarks.keypoint_count}kp"
        )
        reporter.started()

        if stab.mode == StabilizationMode.FAST:
            outcome = self._run_fast(source_image, source_landmarks, reference_landmarks, settings, reporter)
        else:
            outcome = self._run_slow(source_image, source_landmarks, reference_landmarks, settings, reporter)

        reporter.completed(outcome.result)
        logger.info(
            f"Landscape stabilization finished: passes={outcome.result.passes_executed}, "
            f"score={outcome.result.final_score:.2f}, reason={outcome.result.early_stop_reason}, "
            f"success={outcome.result.success}"
        )
        return outcome

    # ============================================================
    # HELPERS
    # ============================================================

    def _warp(self, image: ImageData, homography: HomographyMatrix, size: int) -> ImageData:
        """Scale the source onto the canvas, then apply the canvas homography."""
        to_canvas = HomographyMatrix.scale(size / image.width, size / image.height)
        return self.image_processor.apply_homography_transform(image, homography @ to_canvas, size, size)

    def _cancelled(self, mode: StabilizationMode, passes: List[StabilizationPass]) -> LandscapeStabilizationOutcome:
        logger.info("Landscape stabilization cancelled")
        return LandscapeStabilizationOutcome(
            image=None,
            homography=HomographyMatrix.IDENTITY,
            result=StabilizationResult.failed(mode, EarlyStopReason.CANCELLED, passes),
        )

    def _initial_match(self, source, reference, settings):
        return self.feature_service.match_features(
            source,
            reference,
            ratio_test_threshold=settings.ratio_test_threshold,
            use_cross_check=settings.use_cross_check,
            min_match_count=settings.min_matched_keypoints,
        )

    # ============================================================
    # FAST MODE
    # ============================================================

    def _run_fast(self, source_image, source, reference, settings, reporter) -> LandscapeStabilizationOutcome:
        stab = settings.stabilization
        started = time.perf_counter()
        if reporter.cancelled:
            return self._cancelled(stab.mode, [])
        reporter.pass_started(1, StabilizationStage.INITIAL, None)

        size = settings.output_size
        matches = self._initial_match(source, reference, settings)
        estimate = self.feature_service.compute_homography(
            source.keypoints, reference.keypoints, matches, size, size,
            ransac_threshold=settings.ransac_reproj_threshold,
        )
        confidence = landscape_fast_confidence(
            estimate.match_count, estimate.inlier_count, settings.min_inlier_ratio
        )
        success = confidence >= settings.min_confidence
        score = (1.0 - confidence) * 100.0

        state = _LandscapeRunState()
        state.record(StabilizationStage.INITIAL, 100.0, score, success, started)
        image = self._warp(source_image, estimate.homography, size)

        result = StabilizationResult(
            success=success,
            final_score=score,
            passes_executed=1,
            passes=state.passes,
            mode=stab.mode,
            early_stop_reason=EarlyStopReason.MAX_PASSES_REACHED,
            total_duration_ms=int((time.perf_counter() - started) * 1000),
            initial_score=100.0,
            inlier_ratio=estimate.inlier_ratio,
        )
        return LandscapeStabilizationOutcome(
            image=image,
            homography=estimate.homography,
            result=result,
            match_count=estimate.match_count,
            inlier_count=estimate.inlier_count,
            confidence=confidence,
        )

    # ============================================================
    # SLOW MODE
    # ============================================================

    def _run_slow(self, source_image, source, reference, settings, reporter) -> LandscapeStabilizationOutcome:
        stab = settings.stabilization
        started = time.perf_counter()
        size = settings.output_size
        src_kps = source.keypoints
        ref_kps = reference.keypoints
        state = _LandscapeRunState()

        # --- Pass 1: initial match + homography ---
        if reporter.cancelled:
            return self._cancelled(stab.mode, [])
        reporter.pass_started(1, StabilizationStage.INITIAL, None)
        pass_started = time.perf_counter()
        all_matches = self._initial_match(source, reference, settings)
        estimate = self.feature_service.compute_homography(
            src_kps, ref_kps, all_matches, size, size,
            ransac_threshold=stab.initial_ransac_threshold,
        )
        state.offer(estimate.homography, estimate.inlier_ratio, estimate.inlier_count)
        state.matches = all_matches
        state.record(
            StabilizationStage.INITIAL, 100.0, inlier_score(estimate.inlier_ratio), False, pass_started
        )
        current_ratio = estimate.inlier_ratio

        def checkpoint(stage: StabilizationStage) -> bool:
            if state.pass_count >= stab.max_passes:
                return False
            if reporter.cancelled:
                state.reason = EarlyStopReason.CANCELLED
                return False
            reporter.pass_started(state.pass_count + 1, stage, inlier_score(state.best_ratio))
            return True

        # --- Match quality ---
        stage = StabilizationStage.MATCH_QUALITY_REFINE
        for _ in range(STAGE_PASSES):
            if not checkpoint(stage):
                break
            pass_started = time.perf_counter()
            try:
                refinement = self.match_quality_refiner.refine(
                    src_kps, ref_kps, all_matches, current_ratio, state.pass_count + 1, stab, size, size
                )
            except StabilizationError as e:
                logger.warning(f"Match quality refinement failed: {e.message}")
                state.reason = EarlyStopReason.FEATURE_DETECTION_FAILED
                break
            state.record(
                stage, inlier_score(current_ratio), inlier_score(refinement.inlier_ratio),
                refinement.converged, pass_started,
            )
            state.offer(refinement.homography, refinement.inlier_ratio, refinement.inlier_count)
            current_ratio = refinement.inlier_ratio
            state.matches = refinement.matches
            if refinement.converged:
                state.stage_reasons.append(EarlyStopReason.INLIER_RATIO_CONVERGED)
                break

        # --- RANSAC threshold ---
        threshold = stab.initial_ransac_threshold
        mean_error: Optional[float] = None
        stage = StabilizationStage.RANSAC_THRESHOLD_REFINE
        for _ in range(STAGE_PASSES):
            if state.reason is not None or not checkpoint(stage):
                break
            pass_started = time.perf_counter()
            try:
                refinement = self.ransac_refiner.refine(
                    src_kps, ref_kps, state.matches, threshold, stab, size, size
                )
            except StabilizationError as e:
                logger.warning(f"RANSAC threshold refinement failed: {e.message}")
                state.reason = EarlyStopReason.HOMOGRAPHY_INVALID
                break
            state.record(
                stage, inlier_score(current_ratio), inlier_score(refinement.inlier_ratio),
                refinement.converged, pass_started,
            )
            state.offer(refinement.homography, refinement.inlier_ratio, refinement.inlier_count)
            current_ratio = refinement.inlier_ratio
            threshold = refinement.threshold
            mean_error = refinement.mean_reprojection_error
            if refinement.converged:
                state.stage_reasons.append(EarlyStopReason.REPROJECTION_ERROR_CONVERGED)
                break

        # --- Perspective stability ---
        previous_determinant: Optional[float] = None
        stage = StabilizationStage.PERSPECTIVE_STABILITY_REFINE
        for _ in range(STAGE_PASSES):
            if state.reason is not None or not checkpoint(stage):
                break
            pass_started = time.perf_counter()
            try:
                refinement = self.perspective_refiner.refine(
                    state.best_homography, previous_determinant, stab, size, size
                )
            except StabilizationError as e:
                logger.warning(f"Perspective refinement failed: {e.message}")
                state.reason = EarlyStopReason.HOMOGRAPHY_INVALID
                break
            before = inlier_score(state.best_ratio)
            after = before + (0.0 if refinement.is_valid else INVALID_PERSPECTIVE_PENALTY)
            state.record(stage, before, after, refinement.converged, pass_started)
            if refinement.is_valid:
                state.best_homography = refinement.homography
            previous_determinant = refinement.determinant
            if refinement.converged:
                state.reason = EarlyStopReason.PERSPECTIVE_CONVERGED
                break

        if state.reason is None:
            state.reason = EarlyStopReason.MAX_PASSES_REACHED

        errors = self.calculator.calculate(
            src_kps, ref_kps, state.matches, state.best_homography, size, size, inlier_threshold=threshold
        )
        if errors.errors:
            mean_error = errors.mean_error

        final_score = inlier_score(state.best_ratio)
        cancelled = state.reason == EarlyStopReason.CANCELLED
        success = not cancelled and state.best_ratio >= stab.success_confidence_threshold
        if success:
            confidence = 1.0 - max(0.0, min(1.0, final_score / 100.0))
        else:
            confidence = UNSUCCESSFUL_CONFIDENCE

        result = StabilizationResult(
            success=success,
            final_score=final_score,
            passes_executed=state.pass_count,
            passes=state.passes,
            mode=stab.mode,
            early_stop_reason=state.reason,
            total_duration_ms=int((time.perf_counter() - started) * 1000),
            initial_score=state.passes[0].score_after,
            stage_stop_reasons=state.stage_reasons,
            inlier_ratio=state.best_ratio,
            mean_reprojection_error=mean_error,
        )
        image = None if cancelled else self._warp(source_image, state.best_homography, size)
        return LandscapeStabilizationOutcome(
            image=image,
            homography=state.best_homography,
            result=result,
            match_count=len(all_matches),
            inlier_count=state.best_inliers,
            confidence=confidence,
        )
