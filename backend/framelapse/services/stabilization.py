"""
Multi-pass stabilization for face and body frames.

Every pass warps the ORIGINAL image with the accumulated matrix, re-detects
the reference pair on the result and scores it against the goal points.

FAST mode (up to 4 passes):
    INITIAL -> TRANSLATION_REFINE ...
    Stops on SCORE_BELOW_THRESHOLD, NO_IMPROVEMENT, detection failure or
    MAX_PASSES_REACHED.

SLOW mode (up to 1 + 3 * passes_per_stage passes):
    INITIAL -> ROTATION_REFINE x3 -> SCALE_REFINE x3 -> TRANSLATION_REFINE x3
    Rotation and scale convergence hand over to the next stage; translation
    convergence, a good enough score or a detection failure end the run.

The best (lowest score) matrix seen so far is what the run returns, so the
result never regresses past where it started.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from framelapse.models.settings import StabilizationMode, StabilizationSettings
from framelapse.models.stabilization import (
    EarlyStopReason,
    StabilizationPass,
    StabilizationResult,
    StabilizationScore,
    StabilizationStage,
)
from framelapse.services.detection import BodyPoseDetector, FaceDetector
from framelapse.services.errors import DetectionError
from framelapse.services.geometry import AlignmentMatrix, PixelPoint, to_pixel
from framelapse.services.imaging import ImageData, ImageProcessor
from framelapse.services.progress import ProgressCallback, ProgressReporter
from framelapse.services.refiners import RotationRefiner, ScaleRefiner, TranslationRefiner
from framelapse.services.scoring import calculate_stabilization_score, detect_overshoot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PassMeasurement:
    """Reference pair detected on a warped image, in canvas pixels."""
    left: PixelPoint
    right: PixelPoint
    score: StabilizationScore

    @property
    def delta_y(self) -> float:
        return self.right.y - self.left.y

    @property
    def distance(self) -> float:
        return self.left.distance_to(self.right)


@dataclass
class StabilizationOutcome:
    """Best image and matrix found by a run, with its result record."""
    image: ImageData
    matrix: AlignmentMatrix
    result: StabilizationResult

    @property
    def cancelled(self) -> bool:
        return self.result.early_stop_reason == EarlyStopReason.CANCELLED


@dataclass
class _RunState:
    """Mutable bookkeeping for a single run."""
    matrix: AlignmentMatrix
    image: ImageData
    passes: List[StabilizationPass] = field(default_factory=list)
    stage_reasons: List[EarlyStopReason] = field(default_factory=list)
    last: Optional[PassMeasurement] = None
    best: Optional[PassMeasurement] = None
    best_matrix: Optional[AlignmentMatrix] = None
    best_image: Optional[ImageData] = None
    initial_score: Optional[float] = None
    reason: Optional[EarlyStopReason] = None

    @property
    def pass_count(self) -> int:
        return len(self.passes)

    def accept(self, measurement: PassMeasurement) -> bool:
        """Make measurement current; returns True if it is the new best."""
        self.last = measurement
        if self.initial_score is None:
            self.initial_score = measurement.score.value
        if self.best is None or measurement.score.value < self.best.score.value:
            self.best = measurement
            self.best_matrix = self.matrix
            self.best_image = self.image
            return True
        return False

    def record(
        self,
        stage: StabilizationStage,
        score_before: float,
        score_after: float,
        converged: bool,
        started: float,
    ) -> None:
        self.passes.append(StabilizationPass(
            pass_number=len(self.passes) + 1,
            stage=stage,
            score_before=score_before,
            score_after=score_after,
            converged=converged,
            duration_ms=int((time.perf_counter() - started) * 1000),
        ))


class MultiPassStabilizer:
    """Iteratively refines a face/body alignment matrix."""

    def __init__(
        self,
        detector: Union[FaceDetector, BodyPoseDetector],
        image_processor: ImageProcessor,
        failure_reason: EarlyStopReason = EarlyStopReason.FACE_DETECTION_FAILED,
        rotation_refiner: Optional[RotationRefiner] = None,
        scale_refiner: Optional[ScaleRefiner] = None,
        translation_refiner: Optional[TranslationRefiner] = None,
    ):
        self.detector = detector
        self.image_processor = image_processor
        self.failure_reason = failure_reason
        self.rotation_refiner = rotation_refiner or RotationRefiner()
        self.scale_refiner = scale_refiner or ScaleRefiner()
        self.translation_refiner = translation_refiner or TranslationRefiner()

    # ============================================================
    # MAIN ENTRY POINT
    # ============================================================

    def stabilize(
        self,
        image: ImageData,
        initial_matrix: AlignmentMatrix,
        goal_left: PixelPoint,
        goal_right: PixelPoint,
        settings: StabilizationSettings,
        width: int,
        height: int,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> StabilizationOutcome:
        """
        Run the multi-pass loop on one frame.

        Args:
            image: Original (unwarped) frame
            initial_matrix: Starting source-to-canvas matrix
            goal_left, goal_right: Goal reference points on the canvas
            settings: Mode and convergence thresholds
            width, height: Output canvas size
            on_progress: Called once per pass; returning False cancels
            cancel_event: Alternative cancellation signal for batch runs

        Returns:
            StabilizationOutcome with the best image/matrix and the run record.
            Detection failures end the run early instead of raising.
        """
        started = time.perf_counter()
        max_passes = settings.max_passes
        reporter = ProgressReporter(on_progress, max_passes, settings.mode, cancel_event)
        state = _RunState(matrix=initial_matrix, image=image)
        goal_distance = goal_left.distance_to(goal_right)

        logger.info(
            f"Stabilization starting: mode={settings.mode.value}, max_passes={max_passes}, "
            f"canvas={width}x{height}"
        )
        reporter.started()

        self._initial_pass(state, image, goal_left, goal_right, goal_distance, settings, width, height, reporter)
        if state.reason is None:
            if settings.mode == StabilizationMode.FAST:
                self._run_fast(state, image, goal_left, goal_right, goal_distance, settings, width, height, reporter)
            else:
                self._run_slow(state, image, goal_left, goal_right, goal_distance, settings, width, height, reporter)

        result = self._build_result(state, settings, goal_distance, started)
        reporter.completed(result)

        logger.info(
            f"Stabilization finished: passes={result.passes_executed}, "
            f"score={result.final_score:.3f}, reason={result.early_stop_reason}, success={result.success}"
        )
        best_image = state.best_image or state.image
        best_matrix = state.best_matrix or state.matrix
        return StabilizationOutcome(image=best_image, matrix=best_matrix, result=result)

    # ============================================================
    # PASS HELPERS
    # ============================================================

    def _measure(
        self,
        image: ImageData,
        goal_left: PixelPoint,
        goal_right: PixelPoint,
        goal_distance: float,
        settings: StabilizationSettings,
    ) -> Optional[PassMeasurement]:
        """Detect and score on a warped image. None means the detection is unusable."""
        try:
            landmarks = self.detector.detect(image)
        except DetectionError as e:
            logger.warning(f"Detection failed during stabilization: {e.message}")
            return None
        if landmarks is None:
            return None

        left = to_pixel(landmarks.reference_point_left(), image.width, image.height)
        right = to_pixel(landmarks.reference_point_right(), image.width, image.height)
        if goal_distance > 0 and left.distance_to(right) < settings.eye_validity_ratio * goal_distance:
            logger.debug(
                f"Rejecting detection: reference distance {left.distance_to(right):.1f}px "
                f"below {settings.eye_validity_ratio:.0%} of goal {goal_distance:.1f}px"
            )
            return None

        score = calculate_stabilization_score(left, right, goal_left, goal_right, image.height, settings)
        return PassMeasurement(left=left, right=right, score=score)

    def _apply(self, state: _RunState, original: ImageData, matrix: AlignmentMatrix, width: int, height: int) -> None:
        state.matrix = matrix
        state.image = self.image_processor.apply_affine_transform(original, matrix, width, height)

    def _checkpoint(
        self,
        state: _RunState,
        reporter: ProgressReporter,
        stage: StabilizationStage,
    ) -> bool:
        """Cancellation check and progress event before a pass. False stops the run."""
        if reporter.cancelled:
            state.reason = EarlyStopReason.CANCELLED
            logger.info(f"Stabilization cancelled before pass {state.pass_count + 1}")
            return False
        score = state.best.score.value if state.best else None
        reporter.pass_started(state.pass_count + 1, stage, score)
        return True

    def _initial_pass(self, state, original, goal_left, goal_right, goal_distance, settings, width, height, reporter):
        if not self._checkpoint(state, reporter, StabilizationStage.INITIAL):
            return
        pass_started = time.perf_counter()
        self._apply(state, original, state.matrix, width, height)
        measurement = self._measure(state.image, goal_left, goal_right, goal_distance, settings)
        if measurement is None:
            state.reason = self.failure_reason
            return

        state.accept(measurement)
        converged = not measurement.score.needs_correction
        state.record(
            StabilizationStage.INITIAL,
            measurement.score.value,
            measurement.score.value,
            converged,
            pass_started,
        )
        logger.debug(f"Pass 1 (INITIAL): score={measurement.score.value:.3f}")
        if converged:
            state.reason = EarlyStopReason.SCORE_BELOW_THRESHOLD

    def _refine_and_measure(
        self,
        state: _RunState,
        original: ImageData,
        matrix: AlignmentMatrix,
        stage: StabilizationStage,
        goal_left: PixelPoint,
        goal_right: PixelPoint,
        goal_distance: float,
        settings: StabilizationSettings,
        width: int,
        height: int,
        pass_started: float,
    ) -> Optional[Tuple[PassMeasurement, bool]]:
        """
        Apply a refined matrix, re-detect and record the pass.

        Returns (measurement, improved_best) or None when detection failed,
        in which case the run's stop reason has been set.
        """
        score_before = state.last.score.value
        self._apply(state, original, matrix, width, height)
        measurement = self._measure(state.image, goal_left, goal_right, goal_distance, settings)
        if measurement is None:
            state.reason = self.failure_reason
            return None

        improved = state.accept(measurement)
        converged = not measurement.score.needs_correction
        state.record(stage, score_before, measurement.score.value, converged, pass_started)
        logger.debug(
            f"Pass {state.pass_count} ({stage.value}): score {score_before:.3f} -> "
            f"{measurement.score.value:.3f}"
        )
        if converged:
            state.reason = EarlyStopReason.SCORE_BELOW_THRESHOLD
        return measurement, improved

    def _record_converged(self, state: _RunState, stage: StabilizationStage, pass_started: float) -> None:
        value = state.last.score.value
        state.record(stage, value, value, True, pass_started)

    # ============================================================
    # FAST MODE
    # ============================================================

    def _run_fast(self, state, original, goal_left, goal_right, goal_distance, settings, width, height, reporter):
        stage = StabilizationStage.TRANSLATION_REFINE
        while state.pass_count < settings.max_passes:
            if not self._checkpoint(state, reporter, stage):
                return
            pass_started = time.perf_counter()

            last = state.last
            overshoot = detect_overshoot(last.left, last.right, goal_left, goal_right, last.score, settings)
            refinement = self.translation_refiner.refine(state.matrix, overshoot)

            outcome = self._refine_and_measure(
                state, original, refinement.matrix, stage,
                goal_left, goal_right, goal_distance, settings, width, height, pass_started,
            )
            if outcome is None or state.reason is not None:
                return
            _, improved = outcome
            if not improved:
                state.reason = EarlyStopReason.NO_IMPROVEMENT
                return

        state.reason = EarlyStopReason.MAX_PASSES_REACHED

    # ============================================================
    # SLOW MODE
    # ============================================================

    def _run_slow(self, state, original, goal_left, goal_right, goal_distance, settings, width, height, reporter):
        target_angle = math.atan2(goal_right.y - goal_left.y, goal_right.x - goal_left.x)
        common = (goal_left, goal_right, goal_distance, settings, width, height)

        # --- Rotation ---
        stage = StabilizationStage.ROTATION_REFINE
        for _ in range(settings.passes_per_stage):
            if not self._checkpoint(state, reporter, stage):
                return
            pass_started = time.perf_counter()
            refinement = self.rotation_refiner.refine(
                state.matrix, state.last.left, state.last.right, settings, target_angle
            )
            if refinement.converged:
                self._record_converged(state, stage, pass_started)
                state.stage_reasons.append(EarlyStopReason.ROTATION_CONVERGED)
                break
            if self._refine_and_measure(state, original, refinement.matrix, stage, *common, pass_started) is None:
                return
            if state.reason is not None:
                return

        # --- Scale ---
        stage = StabilizationStage.SCALE_REFINE
        for _ in range(settings.passes_per_stage):
            if not self._checkpoint(state, reporter, stage):
                return
            pass_started = time.perf_counter()
            refinement = self.scale_refiner.refine(
                state.matrix, state.last.left, state.last.right, goal_distance, settings
            )
            if refinement.converged:
                self._record_converged(state, stage, pass_started)
                state.stage_reasons.append(EarlyStopReason.SCALE_CONVERGED)
                break
            if self._refine_and_measure(state, original, refinement.matrix, stage, *common, pass_started) is None:
                return
            if state.reason is not None:
                return

        # --- Translation ---
        stage = StabilizationStage.TRANSLATION_REFINE
        for _ in range(settings.passes_per_stage):
            if not self._checkpoint(state, reporter, stage):
                return
            pass_started = time.perf_counter()
            last = state.last
            overshoot = detect_overshoot(last.left, last.right, goal_left, goal_right, last.score, settings)
            refinement = self.translation_refiner.refine(state.matrix, overshoot)
            if refinement.converged:
                self._record_converged(state, stage, pass_started)
                state.reason = EarlyStopReason.TRANSLATION_CONVERGED
                return

            previous_value = last.score.value
            outcome = self._refine_and_measure(state, original, refinement.matrix, stage, *common, pass_started)
            if outcome is None or state.reason is not None:
                return
            measurement, _ = outcome
            if previous_value - measurement.score.value < settings.convergence_threshold:
                state.reason = EarlyStopReason.TRANSLATION_CONVERGED
                return

        state.reason = EarlyStopReason.MAX_PASSES_REACHED

    # ============================================================
    # RESULT
    # ============================================================

    def _build_result(
        self,
        state: _RunState,
        settings: StabilizationSettings,
        goal_distance: float,
        started: float,
    ) -> StabilizationResult:
        total_ms = int((time.perf_counter() - started) * 1000)
        if state.best is None:
            return StabilizationResult.failed(
                settings.mode,
                reason=state.reason,
                passes=state.passes,
                total_duration_ms=total_ms,
            )

        best = state.best
        success = best.score.is_success and state.reason != EarlyStopReason.CANCELLED
        return StabilizationResult(
            success=success,
            final_score=best.score.value,
            passes_executed=state.pass_count,
            passes=state.passes,
            mode=settings.mode,
            early_stop_reason=state.reason,
            total_duration_ms=total_ms,
            initial_score=state.initial_score,
            final_reference_delta_y=best.delta_y,
            final_reference_distance=best.distance,
            goal_reference_distance=goal_distance,
            stage_stop_reasons=state.stage_reasons,
        )


def stabilizer_for_face(detector: FaceDetector, image_processor: ImageProcessor) -> MultiPassStabilizer:
    return MultiPassStabilizer(detector, image_processor, EarlyStopReason.FACE_DETECTION_FAILED)


def stabilizer_for_body(detector: BodyPoseDetector, image_processor: ImageProcessor) -> MultiPassStabilizer:
    return MultiPassStabilizer(detector, image_processor, EarlyStopReason.BODY_DETECTION_FAILED)
