"""
Initial alignment matrices for face and body frames.

The matrix maps pixels of the source photo onto the output canvas so that the
reference pair (eyes or shoulders) ends up level, at the target distance and
centered on the target point. All inputs and outputs are pixel space.

Canvas centering for non-square outputs:
    center_x = width / 2
    center_y = height * (0.5 - vertical_offset)
"""

import logging
import math
from typing import Optional, Tuple

from framelapse.models.settings import AlignmentSettings, BodyAlignmentSettings
from framelapse.services.geometry import AlignmentMatrix, PixelPoint

logger = logging.getLogger(__name__)

# Share of the head-to-waist slack used to lift the shoulder line
BODY_VERTICAL_ADJUSTMENT_FACTOR = 0.3


def default_face_goals(
    settings: AlignmentSettings,
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> Tuple[PixelPoint, PixelPoint]:
    """Goal eye positions when neither calibration nor a reference frame exists."""
    width = width or settings.output_size
    height = height or settings.output_size
    center = PixelPoint(width / 2.0, height * (0.5 - settings.vertical_offset))
    half = settings.target_eye_distance * width / 2.0
    return PixelPoint(center.x - half, center.y), PixelPoint(center.x + half, center.y)


def default_body_goals(
    settings: BodyAlignmentSettings,
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> Tuple[PixelPoint, PixelPoint]:
    """Goal shoulder positions when neither calibration nor a reference frame exists."""
    width = width or settings.output_size
    height = height or settings.output_size
    adjustment = height * (1.0 - settings.head_to_waist_ratio) * BODY_VERTICAL_ADJUSTMENT_FACTOR
    center = PixelPoint(width / 2.0, height * (0.5 - settings.vertical_offset) - adjustment)
    half = settings.target_shoulder_distance * width / 2.0
    return PixelPoint(center.x - half, center.y), PixelPoint(center.x + half, center.y)


def _pair_matrix(
    left: PixelPoint,
    right: PixelPoint,
    goal_left: PixelPoint,
    goal_right: PixelPoint,
) -> AlignmentMatrix:
    """Similarity transform taking the detected pair onto the goal pair."""
    current_distance = left.distance_to(right)
    goal_distance = goal_left.distance_to(goal_right)

    # Zero separation cannot define a scale
    scale = goal_distance / current_distance if current_distance > 0 else 1.0

    current_angle = math.atan2(right.y - left.y, right.x - left.x)
    goal_angle = math.atan2(goal_right.y - goal_left.y, goal_right.x - goal_left.x)
    rotation = goal_angle - current_angle if current_distance > 0 else 0.0

    source_mid = left.midpoint(right)
    target_mid = goal_left.midpoint(goal_right)

    matrix = (
        AlignmentMatrix.translation(target_mid.x, target_mid.y)
        @ AlignmentMatrix.rotation(rotation)
        @ AlignmentMatrix.scaling(scale)
        @ AlignmentMatrix.translation(-source_mid.x, -source_mid.y)
    )
    logger.debug(
        f"Initial matrix: scale={scale:.4f}, rotation={math.degrees(rotation):.2f}deg, "
        f"mid=({source_mid.x:.1f}, {source_mid.y:.1f}) -> ({target_mid.x:.1f}, {target_mid.y:.1f})"
    )
    return matrix


def calculate_alignment_matrix(
    left_eye: PixelPoint,
    right_eye: PixelPoint,
    settings: AlignmentSettings,
    goal_left: Optional[PixelPoint] = None,
    goal_right: Optional[PixelPoint] = None,
) -> AlignmentMatrix:
    """
    Build the face alignment matrix.

    Args:
        left_eye, right_eye: Detected eye centers in source pixels
        settings: Target eye distance, vertical offset and output size
        goal_left, goal_right: Explicit goal eye positions on the canvas;
            defaults are derived from settings when omitted

    Returns:
        AlignmentMatrix mapping source pixels to canvas pixels
    """
    if goal_left is None or goal_right is None:
        goal_left, goal_right = default_face_goals(settings)
    return _pair_matrix(left_eye, right_eye, goal_left, goal_right)


def calculate_body_alignment_matrix(
    left_shoulder: PixelPoint,
    right_shoulder: PixelPoint,
    settings: BodyAlignmentSettings,
    goal_left: Optional[PixelPoint] = None,
    goal_right: Optional[PixelPoint] = None,
) -> AlignmentMatrix:
    """Build the body alignment matrix from the shoulder pair."""
    if goal_left is None or goal_right is None:
        goal_left, goal_right = default_body_goals(settings)
    return _pair_matrix(left_shoulder, right_shoulder, goal_left, goal_right)
