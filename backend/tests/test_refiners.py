"""
Unit tests for initial alignment matrices and the face/body refiners.
"""

import math

import pytest

from framelapse.models.settings import AlignmentSettings, BodyAlignmentSettings, StabilizationSettings
from framelapse.services.geometry import AlignmentMatrix, PixelPoint
from framelapse.services.matrix import (
    calculate_alignment_matrix,
    calculate_body_alignment_matrix,
    default_body_goals,
    default_face_goals,
)
from framelapse.services.refiners import RotationRefiner, ScaleRefiner, TranslationRefiner
from framelapse.services.scoring import calculate_stabilization_score, detect_overshoot


def close(a: PixelPoint, b: PixelPoint, tol: float = 1e-6) -> bool:
    return a.distance_to(b) < tol


class TestDefaultGoals:
    """Tests for goal positions derived from settings."""

    def test_face_goals_centered(self):
        """Eyes straddle the horizontal center, raised by the vertical offset."""
        left, right = default_face_goals(AlignmentSettings())
        assert close(left, PixelPoint(179.2, 204.8)), f"left={left}"
        assert close(right, PixelPoint(332.8, 204.8)), f"right={right}"

    def test_face_goals_non_square_canvas(self):
        """Non-square canvases center on width / 2 and scale distance by width."""
        left, right = default_face_goals(AlignmentSettings(vertical_offset=0.0), width=800, height=400)
        assert close(left.midpoint(right), PixelPoint(400.0, 200.0))
        assert abs(left.distance_to(right) - 240.0) < 1e-9

    def test_body_goals_lifted_by_head_to_waist(self):
        """Shoulder line sits above the plain vertical-offset center."""
        settings = BodyAlignmentSettings()
        left, right = default_body_goals(settings)
        expected_y = 512 * 0.6 - 512 * 0.3 * 0.3
        assert abs(left.y - expected_y) < 1e-9, f"y={left.y}, expected {expected_y}"
        assert abs(right.x - left.x - 204.8) < 1e-9


class TestInitialMatrix:
    """Tests for calculate_alignment_matrix / calculate_body_alignment_matrix."""

    def test_maps_eyes_onto_goals(self):
        """Detected eyes land exactly on the goal eyes."""
        settings = AlignmentSettings()
        left_eye = PixelPoint(250.0, 190.0)
        right_eye = PixelPoint(380.0, 230.0)
        goal_left, goal_right = default_face_goals(settings)
        m = calculate_alignment_matrix(left_eye, right_eye, settings)
        assert close(m.transform_point(left_eye), goal_left), f"{m.transform_point(left_eye)}"
        assert close(m.transform_point(right_eye), goal_right), f"{m.transform_point(right_eye)}"

    def test_explicit_goals_override_defaults(self):
        """Calibration or reference goals are honored."""
        goal_left = PixelPoint(150.0, 260.0)
        goal_right = PixelPoint(350.0, 240.0)
        left = PixelPoint(10.0, 10.0)
        right = PixelPoint(60.0, 20.0)
        m = calculate_body_alignment_matrix(left, right, BodyAlignmentSettings(), goal_left, goal_right)
        assert close(m.transform_point(left), goal_left)
        assert close(m.transform_point(right), goal_right)

    def test_coincident_points_do_not_crash(self):
        """Zero separation falls back to unit scale and no rotation."""
        p = PixelPoint(100.0, 100.0)
        m = calculate_alignment_matrix(p, p, AlignmentSettings())
        assert not m.is_degenerate()
        assert abs(m.uniform_scale - 1.0) < 1e-12


class TestRotationRefiner:
    """Tests for RotationRefiner."""

    def test_level_pair_converges(self):
        """A level pair needs no rotation."""
        m = AlignmentMatrix.identity()
        r = RotationRefiner().refine(m, PixelPoint(100.0, 200.0), PixelPoint(300.0, 200.05), StabilizationSettings())
        assert r.converged
        assert r.matrix == m

    def test_tilted_pair_is_leveled(self):
        """Applying the refined correction levels the pair."""
        angle = math.radians(10)
        mid = PixelPoint(256.0, 200.0)
        left = PixelPoint(mid.x - 80 * math.cos(angle), mid.y - 80 * math.sin(angle))
        right = PixelPoint(mid.x + 80 * math.cos(angle), mid.y + 80 * math.sin(angle))

        r = RotationRefiner().refine(AlignmentMatrix.identity(), left, right, StabilizationSettings())
        assert not r.converged
        assert abs(r.eye_delta_y - 160 * math.sin(angle)) < 1e-9
        assert abs(r.correction_degrees + 10.0) < 1e-9

        new_left = r.matrix.transform_point(left)
        new_right = r.matrix.transform_point(right)
        assert abs(new_left.y - new_right.y) < 1e-9
        assert close(new_left.midpoint(new_right), mid)


class TestScaleRefiner:
    """Tests for ScaleRefiner."""

    def test_within_threshold_converges(self):
        """Distance within 1px of the goal is converged."""
        r = ScaleRefiner().refine(
            AlignmentMatrix.identity(), PixelPoint(0.0, 0.0), PixelPoint(100.5, 0.0), 100.0, StabilizationSettings()
        )
        assert r.converged
        assert r.scale_factor == 1.0

    def test_scales_toward_goal_distance(self):
        """The correction brings the distance to the goal about the midpoint."""
        left = PixelPoint(200.0, 100.0)
        right = PixelPoint(300.0, 100.0)
        r = ScaleRefiner().refine(AlignmentMatrix.identity(), left, right, 150.0, StabilizationSettings())
        assert not r.converged
        assert r.scale_factor == pytest.approx(1.5)
        new_left = r.matrix.transform_point(left)
        new_right = r.matrix.transform_point(right)
        assert new_left.distance_to(new_right) == pytest.approx(150.0)
        assert close(new_left.midpoint(new_right), PixelPoint(250.0, 100.0))


class TestTranslationRefiner:
    """Tests for TranslationRefiner."""

    def test_shifts_by_negative_average_overshoot(self):
        """Both points move back by the mean overshoot."""
        goal_left = PixelPoint(100.0, 100.0)
        goal_right = PixelPoint(200.0, 100.0)
        left = PixelPoint(110.0, 96.0)
        right = PixelPoint(210.0, 96.0)
        score = calculate_stabilization_score(left, right, goal_left, goal_right, 512)
        overshoot = detect_overshoot(left, right, goal_left, goal_right, score)

        r = TranslationRefiner().refine(AlignmentMatrix.identity(), overshoot)
        assert r.correction_applied and not r.converged
        assert close(r.matrix.transform_point(left), goal_left)
        assert close(r.matrix.transform_point(right), goal_right)

    def test_no_correction_needed_converges(self):
        """Points on their goals leave the matrix alone."""
        goal_left = PixelPoint(100.0, 100.0)
        goal_right = PixelPoint(200.0, 100.0)
        score = calculate_stabilization_score(goal_left, goal_right, goal_left, goal_right, 512)
        overshoot = detect_overshoot(goal_left, goal_right, goal_left, goal_right, score)
        r = TranslationRefiner().refine(AlignmentMatrix.identity(), overshoot)
        assert r.converged and not r.correction_applied
        assert r.matrix == AlignmentMatrix.identity()
