"""
Geometric primitives for the stabilization pipeline.

Two coordinate spaces are in play:
- Normalized space: LandmarkPoint, fractions of image width/height in [0, 1].
- Pixel space: PixelPoint, absolute pixel coordinates on a concrete canvas.

Crossing between them only happens through to_pixel() / to_normalized(),
which need the canvas size explicitly.

AlignmentMatrix is the 2x3 affine used for face/body frames, HomographyMatrix
the 3x3 projective transform used for landscape frames. Both are immutable;
composition returns a new value.
"""

import math
import sys
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from framelapse.models.landmarks import LandmarkPoint

# Returned for both coordinates when the homogeneous w collapses to zero
POINT_AT_INFINITY = sys.float_info.max


@dataclass(frozen=True)
class PixelPoint:
    """A 2D point in pixel space."""
    x: float
    y: float

    def distance_to(self, other: "PixelPoint") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def midpoint(self, other: "PixelPoint") -> "PixelPoint":
        return PixelPoint((self.x + other.x) / 2.0, (self.y + other.y) / 2.0)

    def to_array(self) -> np.ndarray:
        return np.array([self.x, self.y])


def to_pixel(point: LandmarkPoint, width: float, height: float) -> PixelPoint:
    """Convert a normalized landmark to pixel space on a width x height canvas."""
    return PixelPoint(point.x * width, point.y * height)


def to_normalized(point: PixelPoint, width: float, height: float) -> LandmarkPoint:
    """Convert a pixel point back to normalized space."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Canvas size must be positive, got {width}x{height}")
    return LandmarkPoint(x=point.x / width, y=point.y / height)


# ============================================================
# AFFINE (FACE / BODY)
# ============================================================

@dataclass(frozen=True)
class AlignmentMatrix:
    """
    A 2D affine transform.

    Maps a pixel (x, y) of the source image onto the output canvas:
        x' = scale_x * x + skew_x * y + translate_x
        y' = skew_y * x + scale_y * y + translate_y

    The 2x3 matrix form is:
        [[scale_x, skew_x, translate_x],
         [skew_y,  scale_y, translate_y]]
    """
    scale_x: float = 1.0
    skew_x: float = 0.0
    translate_x: float = 0.0
    skew_y: float = 0.0
    scale_y: float = 1.0
    translate_y: float = 0.0

    @classmethod
    def identity(cls) -> "AlignmentMatrix":
        return cls()

    @classmethod
    def translation(cls, tx: float, ty: float) -> "AlignmentMatrix":
        return cls(translate_x=tx, translate_y=ty)

    @classmethod
    def scaling(cls, factor: float, about: PixelPoint = PixelPoint(0.0, 0.0)) -> "AlignmentMatrix":
        """Uniform scale about a pivot point."""
        return cls(
            scale_x=factor,
            translate_x=about.x - factor * about.x,
            scale_y=factor,
            translate_y=about.y - factor * about.y,
        )

    @classmethod
    def rotation(cls, angle_rad: float, about: PixelPoint = PixelPoint(0.0, 0.0)) -> "AlignmentMatrix":
        """Rotation by angle_rad (positive turns +x toward +y) about a pivot point."""
        cos_t = math.cos(angle_rad)
        sin_t = math.sin(angle_rad)
        return cls(
            scale_x=cos_t,
            skew_x=-sin_t,
            translate_x=about.x - cos_t * about.x + sin_t * about.y,
            skew_y=sin_t,
            scale_y=cos_t,
            translate_y=about.y - sin_t * about.x - cos_t * about.y,
        )

    @classmethod
    def from_array(cls, matrix: np.ndarray) -> "AlignmentMatrix":
        m = np.asarray(matrix, dtype=np.float64)
        if m.shape != (2, 3):
            raise ValueError(f"Expected a 2x3 matrix, got shape {m.shape}")
        return cls(
            scale_x=float(m[0, 0]),
            skew_x=float(m[0, 1]),
            translate_x=float(m[0, 2]),
            skew_y=float(m[1, 0]),
            scale_y=float(m[1, 1]),
            translate_y=float(m[1, 2]),
        )

    def to_array(self) -> np.ndarray:
        """2x3 float64 matrix, the layout cv2.warpAffine expects."""
        return np.array([
            [self.scale_x, self.skew_x, self.translate_x],
            [self.skew_y, self.scale_y, self.translate_y],
        ], dtype=np.float64)

    def to_list(self) -> List[List[float]]:
        return [
            [self.scale_x, self.skew_x, self.translate_x],
            [self.skew_y, self.scale_y, self.translate_y],
        ]

    def compose(self, other: "AlignmentMatrix") -> "AlignmentMatrix":
        """Matrix product self * other: applies other first, then self."""
        return AlignmentMatrix(
            scale_x=self.scale_x * other.scale_x + self.skew_x * other.skew_y,
            skew_x=self.scale_x * other.skew_x + self.skew_x * other.scale_y,
            translate_x=self.scale_x * other.translate_x + self.skew_x * other.translate_y + self.translate_x,
            skew_y=self.skew_y * other.scale_x + self.scale_y * other.skew_y,
            scale_y=self.skew_y * other.skew_x + self.scale_y * other.scale_y,
            translate_y=self.skew_y * other.translate_x + self.scale_y * other.translate_y + self.translate_y,
        )

    def __matmul__(self, other: "AlignmentMatrix") -> "AlignmentMatrix":
        return self.compose(other)

    def then(self, other: "AlignmentMatrix") -> "AlignmentMatrix":
        """Apply self first, then other."""
        return other.compose(self)

    def transform_point(self, point: PixelPoint) -> PixelPoint:
        return PixelPoint(
            self.scale_x * point.x + self.skew_x * point.y + self.translate_x,
            self.skew_y * point.x + self.scale_y * point.y + self.translate_y,
        )

    def with_translation_offset(self, dx: float, dy: float) -> "AlignmentMatrix":
        """Same linear part, translation shifted by (dx, dy)."""
        return AlignmentMatrix(
            scale_x=self.scale_x,
            skew_x=self.skew_x,
            translate_x=self.translate_x + dx,
            skew_y=self.skew_y,
            scale_y=self.scale_y,
            translate_y=self.translate_y + dy,
        )

    @property
    def determinant(self) -> float:
        return self.scale_x * self.scale_y - self.skew_x * self.skew_y

    @property
    def rotation_degrees(self) -> float:
        return math.degrees(math.atan2(self.skew_y, self.scale_x))

    @property
    def uniform_scale(self) -> float:
        return math.hypot(self.scale_x, self.skew_y)

    def is_degenerate(self, epsilon: float = 1e-9) -> bool:
        return abs(self.determinant) < epsilon


# ============================================================
# PROJECTIVE (LANDSCAPE)
# ============================================================

@dataclass(frozen=True)
class HomographyMatrix:
    """
    A 3x3 projective transform, row-major:
        [[h11, h12, h13],
         [h21, h22, h23],
         [h31, h32, h33]]
    """
    h11: float = 1.0
    h12: float = 0.0
    h13: float = 0.0
    h21: float = 0.0
    h22: float = 1.0
    h23: float = 0.0
    h31: float = 0.0
    h32: float = 0.0
    h33: float = 1.0

    VALIDITY_EPSILON = 1e-6
    W_EPSILON = 1e-6

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "HomographyMatrix":
        """Build from 9 row-major values (flat sequence or 3x3 array)."""
        flat = np.asarray(values, dtype=np.float64).reshape(-1)
        if flat.size != 9:
            raise ValueError(f"Homography requires exactly 9 values, got {flat.size}")
        return cls(*(float(v) for v in flat))

    @classmethod
    def translation(cls, tx: float, ty: float) -> "HomographyMatrix":
        return cls(h13=tx, h23=ty)

    @classmethod
    def scale(cls, sx: float, sy: Optional[float] = None) -> "HomographyMatrix":
        if sy is None:
            sy = sx
        return cls(h11=sx, h22=sy)

    @classmethod
    def rotation(cls, degrees: float) -> "HomographyMatrix":
        radians = math.radians(degrees)
        cos_t = math.cos(radians)
        sin_t = math.sin(radians)
        return cls(h11=cos_t, h12=-sin_t, h21=sin_t, h22=cos_t)

    def to_array(self) -> List[float]:
        return [
            self.h11, self.h12, self.h13,
            self.h21, self.h22, self.h23,
            self.h31, self.h32, self.h33,
        ]

    def to_numpy(self) -> np.ndarray:
        """3x3 float64 matrix, the layout cv2.warpPerspective expects."""
        return np.array(self.to_array(), dtype=np.float64).reshape(3, 3)

    def transform_point(self, x: float, y: float) -> Tuple[float, float]:
        """
        Project (x, y) through the homography.

        Returns (POINT_AT_INFINITY, POINT_AT_INFINITY) when the homogeneous
        coordinate w is within W_EPSILON of zero.
        """
        w = self.h31 * x + self.h32 * y + self.h33
        if abs(w) < self.W_EPSILON:
            return POINT_AT_INFINITY, POINT_AT_INFINITY
        px = (self.h11 * x + self.h12 * y + self.h13) / w
        py = (self.h21 * x + self.h22 * y + self.h23) / w
        return px, py

    def transform_points(self, points: Iterable[Tuple[float, float]]) -> List[Tuple[float, float]]:
        return [self.transform_point(x, y) for x, y in points]

    @property
    def determinant(self) -> float:
        """Cofactor expansion along the first row."""
        return (
            self.h11 * (self.h22 * self.h33 - self.h23 * self.h32)
            - self.h12 * (self.h21 * self.h33 - self.h23 * self.h31)
            + self.h13 * (self.h21 * self.h32 - self.h22 * self.h31)
        )

    def is_valid(self) -> bool:
        return abs(self.determinant) > self.VALIDITY_EPSILON

    def is_near_identity(self, tolerance: float = 0.01) -> bool:
        identity = HomographyMatrix().to_array()
        return all(abs(a - b) <= tolerance for a, b in zip(self.to_array(), identity))

    def approximate_rotation_degrees(self) -> float:
        return math.degrees(math.atan2(self.h21, self.h11))

    def approximate_scale(self) -> float:
        return math.sqrt(self.h11 * self.h11 + self.h21 * self.h21)

    def compose(self, other: "HomographyMatrix") -> "HomographyMatrix":
        """Matrix product self * other: applies other first, then self."""
        return HomographyMatrix.from_array(self.to_numpy() @ other.to_numpy())

    def __matmul__(self, other: "HomographyMatrix") -> "HomographyMatrix":
        return self.compose(other)

    def lerp(self, other: "HomographyMatrix", t: float) -> "HomographyMatrix":
        """Coefficient-wise linear blend: t=0 gives self, t=1 gives other."""
        return HomographyMatrix(*(
            a + (b - a) * t for a, b in zip(self.to_array(), other.to_array())
        ))


HomographyMatrix.IDENTITY = HomographyMatrix()
AlignmentMatrix.IDENTITY = AlignmentMatrix()
