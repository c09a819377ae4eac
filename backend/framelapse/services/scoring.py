"""
Stabilization scoring, overshoot analysis and confidence mapping.
"""

from dataclasses import dataclass
from typing import Optional

from framelapse.models.settings import StabilizationSettings
from framelapse.models.stabilization import StabilizationScore
from framelapse.services.geometry import PixelPoint

SCORE_SCALE = 1000.0

# Confidence mapping breakpoints
PERFECT_SCORE = 0.5
GOOD_SCORE = 20.0
GOOD_CONFIDENCE_FLOOR = 0.7
GOOD_CONFIDENCE_SPAN = 0.29
POOR_CONFIDENCE_FLOOR = 0.3


def calculate_stabilization_score(
    detected_left: PixelPoint,
    detected_right: PixelPoint,
    goal_left: PixelPoint,
    goal_right: PixelPoint,
    canvas_height: float,
    settings: Optional[StabilizationSettings] = None,
) -> StabilizationScore:
    """
    Score how far the detected reference points are from their goals.

    value = mean(|left - goal_left|, |right - goal_right|) * 1000 / canvas_height

    Args:
        detected_left, detected_right: Detected reference points (pixels)
        goal_left, goal_right: Goal reference points (pixels)
        canvas_height: Height of the canvas the points live on
        settings: Supplies the no-action / success thresholds

    Returns:
        StabilizationScore (lower is better)
    """
    if canvas_height <= 0:
        raise ValueError(f"canvas_height must be positive, got {canvas_height}")
    settings = settings or StabilizationSettings()

    left_distance = detected_left.distance_to(goal_left)
    right_distance = detected_right.distance_to(goal_right)
    value = ((left_distance + right_distance) / 2.0 * SCORE_SCALE) / canvas_height

    return StabilizationScore(
        value=value,
        left_distance=left_distance,
        right_distance=right_distance,
        no_action_threshold=settings.no_action_score_threshold,
        success_threshold=settings.success_score_threshold,
    )


@dataclass(frozen=True)
class OvershootCorrection:
    """
    Signed per-point offsets of the detection from its goal (detected - goal).

    Positive X means the point sits right of its goal, positive Y below it.
    """
    left_overshoot_x: float
    left_overshoot_y: float
    right_overshoot_x: float
    right_overshoot_y: float
    score: StabilizationScore
    min_magnitude: float = 0.5

    @property
    def average_overshoot_x(self) -> float:
        return (self.left_overshoot_x + self.right_overshoot_x) / 2.0

    @property
    def average_overshoot_y(self) -> float:
        return (self.left_overshoot_y + self.right_overshoot_y) / 2.0

    @property
    def both_overshot_same_direction_x(self) -> bool:
        return _same_direction(self.left_overshoot_x, self.right_overshoot_x, self.min_magnitude)

    @property
    def both_overshot_same_direction_y(self) -> bool:
        return _same_direction(self.left_overshoot_y, self.right_overshoot_y, self.min_magnitude)

    @property
    def needs_correction(self) -> bool:
        return (
            self.score.needs_correction
            or self.both_overshot_same_direction_x
            or self.both_overshot_same_direction_y
        )

    def to_dict(self) -> dict:
        return {
            "left_overshoot": [self.left_overshoot_x, self.left_overshoot_y],
            "right_overshoot": [self.right_overshoot_x, self.right_overshoot_y],
            "average_overshoot": [self.average_overshoot_x, self.average_overshoot_y],
            "needs_correction": self.needs_correction,
        }


def _same_direction(a: float, b: float, min_magnitude: float) -> bool:
    if a == 0.0 or b == 0.0:
        return False
    if (a > 0) != (b > 0):
        return False
    return abs(a) >= min_magnitude and abs(b) >= min_magnitude


def detect_overshoot(
    detected_left: PixelPoint,
    detected_right: PixelPoint,
    goal_left: PixelPoint,
    goal_right: PixelPoint,
    score: StabilizationScore,
    settings: Optional[StabilizationSettings] = None,
) -> OvershootCorrection:
    """Compute signed overshoot of both reference points (pixel space)."""
    settings = settings or StabilizationSettings()
    return OvershootCorrection(
        left_overshoot_x=detected_left.x - goal_left.x,
        left_overshoot_y=detected_left.y - goal_left.y,
        right_overshoot_x=detected_right.x - goal_right.x,
        right_overshoot_y=detected_right.y - goal_right.y,
        score=score,
        min_magnitude=settings.overshoot_min_magnitude,
    )


def confidence_from_score(score: float) -> float:
    """
    Map a final stabilization score to a [0.3, 1.0] confidence.

    < 0.5        -> 1.0
    [0.5, 20)    -> 0.7 .. 0.99, rising as the score falls
    >= 20        -> 0.7 falling by 0.4 per 100 points, floored at 0.3
    """
    if score < PERFECT_SCORE:
        return 1.0
    if score < GOOD_SCORE:
        return GOOD_CONFIDENCE_FLOOR + (GOOD_SCORE - score) / GOOD_SCORE * GOOD_CONFIDENCE_SPAN
    return max(GOOD_CONFIDENCE_FLOOR - (score - GOOD_SCORE) / 100.0 * 0.4, POOR_CONFIDENCE_FLOOR)


def landscape_fast_confidence(match_count: int, inlier_count: int, min_inlier_ratio: float) -> float:
    """Confidence for a single-pass landscape alignment."""
    if match_count <= 0:
        return 0.0
    inlier_ratio = inlier_count / match_count
    match_term = min(match_count / 100.0, 1.0)
    if min_inlier_ratio >= 1.0:
        inlier_term = 1.0 if inlier_ratio >= 1.0 else 0.0
    else:
        inlier_term = (inlier_ratio - min_inlier_ratio) / (1.0 - min_inlier_ratio)
    inlier_term = max(0.0, min(1.0, inlier_term))
    return 0.4 * match_term + 0.6 * inlier_term
