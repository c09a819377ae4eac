"""
Single-axis refiners for face/body stabilization.

Each refiner takes the current accumulated matrix and reference points freshly
detected on the image warped with it (canvas pixels), and returns a new
matrix plus a convergence verdict. The correction is applied on the canvas
side: new = correction @ current. Input matrices are never modified.
"""

import math
from dataclasses import dataclass

from framelapse.models.settings import StabilizationSettings
from framelapse.services.geometry import AlignmentMatrix, PixelPoint
from framelapse.services.scoring import OvershootCorrection


@dataclass(frozen=True)
class RotationRefinement:
    matrix: AlignmentMatrix
    converged: bool
    eye_delta_y: float
    correction_degrees: float = 0.0


@dataclass(frozen=True)
class ScaleRefinement:
    matrix: AlignmentMatrix
    converged: bool
    scale_error: float
    current_distance: float
    scale_factor: float = 1.0


@dataclass(frozen=True)
class TranslationRefinement:
    matrix: AlignmentMatrix
    converged: bool
    correction_applied: bool
    correction_x: float = 0.0
    correction_y: float = 0.0


class RotationRefiner:
    """Levels the reference pair by rotating about its midpoint."""

    def refine(
        self,
        matrix: AlignmentMatrix,
        left: PixelPoint,
        right: PixelPoint,
        settings: StabilizationSettings,
        target_angle_rad: float = 0.0,
    ) -> RotationRefinement:
        """
        Args:
            matrix: Current accumulated matrix
            left, right: Reference points detected on the warped image
            settings: Supplies rotation_stop_threshold (px)
            target_angle_rad: Desired angle of the pair; 0 is level

        Returns:
            RotationRefinement; converged when the residual tilt, expressed as
            the vertical offset between the points, is within threshold
        """
        distance = left.distance_to(right)
        current_angle = math.atan2(right.y - left.y, right.x - left.x)
        residual = current_angle - target_angle_rad
        eye_delta_y = distance * math.sin(residual)

        if abs(eye_delta_y) <= settings.rotation_stop_threshold or distance == 0:
            return RotationRefinement(matrix=matrix, converged=True, eye_delta_y=eye_delta_y)

        correction = AlignmentMatrix.rotation(-residual, about=left.midpoint(right))
        return RotationRefinement(
            matrix=correction @ matrix,
            converged=False,
            eye_delta_y=eye_delta_y,
            correction_degrees=math.degrees(-residual),
        )


class ScaleRefiner:
    """Scales uniformly about the reference midpoint toward the goal distance."""

    def refine(
        self,
        matrix: AlignmentMatrix,
        left: PixelPoint,
        right: PixelPoint,
        goal_distance: float,
        settings: StabilizationSettings,
    ) -> ScaleRefinement:
        current_distance = left.distance_to(right)
        scale_error = current_distance - goal_distance

        if abs(scale_error) <= settings.scale_error_threshold:
            return ScaleRefinement(
                matrix=matrix,
                converged=True,
                scale_error=scale_error,
                current_distance=current_distance,
            )

        factor = goal_distance / current_distance if current_distance > 0 else 1.0
        correction = AlignmentMatrix.scaling(factor, about=left.midpoint(right))
        return ScaleRefinement(
            matrix=correction @ matrix,
            converged=False,
            scale_error=scale_error,
            current_distance=current_distance,
            scale_factor=factor,
        )


class TranslationRefiner:
    """Shifts the canvas by the average overshoot when a correction is warranted."""

    def refine(self, matrix: AlignmentMatrix, overshoot: OvershootCorrection) -> TranslationRefinement:
        if not overshoot.needs_correction:
            return TranslationRefinement(matrix=matrix, converged=True, correction_applied=False)

        dx = -overshoot.average_overshoot_x
        dy = -overshoot.average_overshoot_y
        return TranslationRefinement(
            matrix=matrix.with_translation_offset(dx, dy),
            converged=False,
            correction_applied=True,
            correction_x=dx,
            correction_y=dy,
        )
