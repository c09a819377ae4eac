"""
Project and frame records - persisted as JSON.
"""

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from framelapse.models.landmarks import LandmarkPoint, Landmarks
from framelapse.models.stabilization import StabilizationResult


class ContentType(str, Enum):
    """What the frames of a project show."""
    FACE = "FACE"
    BODY = "BODY"
    LANDSCAPE = "LANDSCAPE"


class Calibration(BaseModel):
    """
    User-adjusted reference points for a project (eyes or shoulders).

    Points are normalized to the output canvas; the offsets shift both points
    together after the user nudges the overlay.
    """
    left: LandmarkPoint
    right: LandmarkPoint
    offset_x: float = Field(default=0.0, ge=-0.2, le=0.2)
    offset_y: float = Field(default=0.0, ge=-0.2, le=0.2)
    image_path: Optional[str] = None

    def adjusted_left(self) -> LandmarkPoint:
        return LandmarkPoint(x=self.left.x + self.offset_x, y=self.left.y + self.offset_y)

    def adjusted_right(self) -> LandmarkPoint:
        return LandmarkPoint(x=self.right.x + self.offset_x, y=self.right.y + self.offset_y)


class JsonRecord(BaseModel):
    """Base for records stored one-per-file."""

    def save(self, path: Path) -> None:
        """Save record to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    @classmethod
    def load(cls, path: Path):
        """Load record from JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        return cls.model_validate(data)


class Project(JsonRecord):
    """A timelapse project."""
    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    content_type: ContentType = ContentType.FACE
    reference_frame_id: Optional[str] = None
    calibration: Optional[Calibration] = None


class Frame(JsonRecord):
    """A single captured photo and its alignment state."""
    id: str
    project_id: str
    original_path: str
    aligned_path: Optional[str] = None
    timestamp: datetime
    captured_at: Optional[datetime] = None
    sort_order: int = 0

    # Alignment output
    confidence: Optional[float] = None
    landmarks: Optional[Landmarks] = None
    stabilization_result: Optional[StabilizationResult] = None

    @property
    def is_aligned(self) -> bool:
        return self.aligned_path is not None and self.landmarks is not None
