"""
Stabilization run records: stages, stop reasons, scores, passes and results.

These are immutable value objects created fresh for each alignment run and
persisted with the frame they belong to.
"""

import sys
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from framelapse.models.settings import StabilizationMode

NO_ACTION_THRESHOLD = 0.5
SUCCESS_THRESHOLD = 20.0


class StabilizationStage(str, Enum):
    """What a pass was doing. Drives progress messages and bookkeeping."""
    INITIAL = "INITIAL"
    ROTATION_REFINE = "ROTATION_REFINE"
    SCALE_REFINE = "SCALE_REFINE"
    TRANSLATION_REFINE = "TRANSLATION_REFINE"
    MATCH_QUALITY_REFINE = "MATCH_QUALITY_REFINE"
    RANSAC_THRESHOLD_REFINE = "RANSAC_THRESHOLD_REFINE"
    PERSPECTIVE_STABILITY_REFINE = "PERSPECTIVE_STABILITY_REFINE"


class EarlyStopReason(str, Enum):
    """Why a run (or a stage of a run) stopped."""
    SCORE_BELOW_THRESHOLD = "SCORE_BELOW_THRESHOLD"
    NO_IMPROVEMENT = "NO_IMPROVEMENT"
    ROTATION_CONVERGED = "ROTATION_CONVERGED"
    SCALE_CONVERGED = "SCALE_CONVERGED"
    TRANSLATION_CONVERGED = "TRANSLATION_CONVERGED"
    MAX_PASSES_REACHED = "MAX_PASSES_REACHED"
    FACE_DETECTION_FAILED = "FACE_DETECTION_FAILED"
    BODY_DETECTION_FAILED = "BODY_DETECTION_FAILED"
    FEATURE_DETECTION_FAILED = "FEATURE_DETECTION_FAILED"
    INLIER_RATIO_CONVERGED = "INLIER_RATIO_CONVERGED"
    REPROJECTION_ERROR_CONVERGED = "REPROJECTION_ERROR_CONVERGED"
    PERSPECTIVE_CONVERGED = "PERSPECTIVE_CONVERGED"
    HOMOGRAPHY_INVALID = "HOMOGRAPHY_INVALID"
    CANCELLED = "CANCELLED"


class StabilizationScore(BaseModel):
    """
    Misalignment score: mean reference-point distance in pixels, scaled by
    1000 / canvas height. Lower is better.
    """
    model_config = ConfigDict(frozen=True)

    value: float
    left_distance: float = 0.0
    right_distance: float = 0.0
    no_action_threshold: float = NO_ACTION_THRESHOLD
    success_threshold: float = SUCCESS_THRESHOLD

    @property
    def needs_correction(self) -> bool:
        return self.value >= self.no_action_threshold

    @property
    def is_success(self) -> bool:
        return self.value < self.success_threshold


class StabilizationPass(BaseModel):
    """One executed pass. Never modified after it is appended to the log."""
    model_config = ConfigDict(frozen=True)

    pass_number: int
    stage: StabilizationStage
    score_before: float
    score_after: float
    converged: bool = False
    duration_ms: int = 0

    @property
    def improvement(self) -> float:
        return self.score_before - self.score_after

    @property
    def improved(self) -> bool:
        return self.score_after < self.score_before


class AlignmentDiagnostics(BaseModel):
    """What happened after the transform was applied."""
    model_config = ConfigDict(frozen=True)

    aligned_landmarks_detected: bool = False
    aligned_landmarks_error: Optional[str] = None
    fallback_landmarks_generated: bool = False
    reference_frame_id: Optional[str] = None


class StabilizationResult(BaseModel):
    """Outcome of a stabilization run."""
    model_config = ConfigDict(frozen=True)

    success: bool
    final_score: float
    passes_executed: int
    passes: List[StabilizationPass] = Field(default_factory=list)
    mode: StabilizationMode
    early_stop_reason: Optional[EarlyStopReason] = None
    total_duration_ms: int = 0
    initial_score: Optional[float] = None

    # Face/body geometry at the best pass
    final_reference_delta_y: Optional[float] = None
    final_reference_distance: Optional[float] = None
    goal_reference_distance: Optional[float] = None

    # Stages that converged and handed over to the next one
    stage_stop_reasons: List[EarlyStopReason] = Field(default_factory=list)

    # Landscape metrics at the best pass
    inlier_ratio: Optional[float] = None
    mean_reprojection_error: Optional[float] = None

    diagnostics: Optional[AlignmentDiagnostics] = None

    @property
    def total_improvement(self) -> float:
        if self.initial_score is None:
            return 0.0
        return self.initial_score - self.final_score

    @property
    def improvement_percent(self) -> float:
        if not self.initial_score:
            return 0.0
        return self.total_improvement / self.initial_score * 100.0

    @property
    def average_pass_duration_ms(self) -> float:
        if not self.passes:
            return 0.0
        return sum(p.duration_ms for p in self.passes) / len(self.passes)

    @property
    def terminated_early(self) -> bool:
        return self.early_stop_reason not in (None, EarlyStopReason.MAX_PASSES_REACHED)

    def with_diagnostics(self, diagnostics: AlignmentDiagnostics) -> "StabilizationResult":
        return self.model_copy(update={"diagnostics": diagnostics})

    @classmethod
    def failed(
        cls,
        mode: StabilizationMode,
        reason: Optional[EarlyStopReason] = None,
        passes: Optional[List[StabilizationPass]] = None,
        total_duration_ms: int = 0,
    ) -> "StabilizationResult":
        """A run that never produced a measurable score."""
        passes = passes or []
        return cls(
            success=False,
            final_score=sys.float_info.max,
            passes_executed=len(passes),
            passes=passes,
            mode=mode,
            early_stop_reason=reason,
            total_duration_ms=total_duration_ms,
        )


# ============================================================
# PROGRESS EVENTS
# ============================================================

_STAGE_MESSAGES = {
    StabilizationStage.ROTATION_REFINE: "Refining rotation (pass {n})...",
    StabilizationStage.SCALE_REFINE: "Refining scale (pass {n})...",
    StabilizationStage.TRANSLATION_REFINE: "Refining position (pass {n})...",
    StabilizationStage.MATCH_QUALITY_REFINE: "Refining match quality (pass {n})...",
    StabilizationStage.RANSAC_THRESHOLD_REFINE: "Tightening alignment (pass {n})...",
    StabilizationStage.PERSPECTIVE_STABILITY_REFINE: "Stabilizing perspective (pass {n})...",
}


class StabilizationProgress(BaseModel):
    """A progress event emitted once per pass or stage transition."""
    model_config = ConfigDict(frozen=True)

    current_pass: int
    max_passes: int
    current_stage: StabilizationStage
    current_score: Optional[float] = None
    progress_percent: float = 0.0
    message: str = ""
    mode: StabilizationMode = StabilizationMode.FAST

    @property
    def progress_percent_int(self) -> int:
        return int(round(self.progress_percent))

    @classmethod
    def initial(cls, max_passes: int, mode: StabilizationMode) -> "StabilizationProgress":
        return cls(
            current_pass=0,
            max_passes=max_passes,
            current_stage=StabilizationStage.INITIAL,
            progress_percent=0.0,
            message="Starting stabilization...",
            mode=mode,
        )

    @classmethod
    def for_pass(
        cls,
        current_pass: int,
        max_passes: int,
        stage: StabilizationStage,
        score: Optional[float],
        mode: StabilizationMode,
    ) -> "StabilizationProgress":
        if stage == StabilizationStage.INITIAL:
            message = "Initial alignment..."
        else:
            message = _STAGE_MESSAGES.get(stage, "Processing (pass {n})...").format(n=current_pass)
        percent = min(100.0, current_pass / max_passes * 100.0) if max_passes > 0 else 0.0
        return cls(
            current_pass=current_pass,
            max_passes=max_passes,
            current_stage=stage,
            current_score=score,
            progress_percent=percent,
            message=message,
            mode=mode,
        )

    @classmethod
    def completed(cls, result: StabilizationResult, max_passes: int) -> "StabilizationProgress":
        last_stage = result.passes[-1].stage if result.passes else StabilizationStage.INITIAL
        return cls(
            current_pass=result.passes_executed,
            max_passes=max_passes,
            current_stage=last_stage,
            current_score=result.final_score,
            progress_percent=100.0,
            message="Stabilization complete!" if result.success else "Stabilization failed",
            mode=result.mode,
        )
