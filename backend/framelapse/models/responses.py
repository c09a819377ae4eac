"""
API request and response models.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from framelapse.models.frame import Calibration, ContentType, Frame, Project
from framelapse.models.settings import StabilizationMode
from framelapse.models.stabilization import StabilizationProgress, StabilizationResult


# ============================================================
# PROJECTS
# ============================================================

class CreateProjectRequest(BaseModel):
    """Body of POST /api/v1/projects."""
    name: str = Field(min_length=1, max_length=200)
    content_type: ContentType = ContentType.FACE
    calibration: Optional[Calibration] = Field(
        default=None,
        description="User-adjusted reference points; overrides the default goal positions.",
    )


class ProjectResponse(BaseModel):
    """A project and how many frames it holds."""
    id: str
    name: str
    content_type: ContentType
    created_at: datetime
    updated_at: datetime
    reference_frame_id: Optional[str] = None
    calibration: Optional[Calibration] = None
    frame_count: int = 0
    aligned_count: int = 0

    @classmethod
    def from_project(cls, project: Project, frames: List[Frame]) -> "ProjectResponse":
        return cls(
            id=project.id,
            name=project.name,
            content_type=project.content_type,
            created_at=project.created_at,
            updated_at=project.updated_at,
            reference_frame_id=project.reference_frame_id,
            calibration=project.calibration,
            frame_count=len(frames),
            aligned_count=sum(1 for f in frames if f.is_aligned),
        )


class SetReferenceFrameRequest(BaseModel):
    """Body of PUT /api/v1/projects/{project_id}/reference-frame."""
    frame_id: Optional[str] = Field(
        default=None,
        description="Frame to align landscape frames onto. Null falls back to the first frame.",
    )


# ============================================================
# FRAMES
# ============================================================

class AddFrameRequest(BaseModel):
    """Body of POST /api/v1/projects/{project_id}/frames."""
    original_path: str = Field(description="Path of the captured photo on the server")
    captured_at: Optional[datetime] = None


class FrameResponse(BaseModel):
    """A frame record without its raw landmark payload."""
    id: str
    project_id: str
    original_path: str
    aligned_path: Optional[str] = None
    timestamp: datetime
    captured_at: Optional[datetime] = None
    sort_order: int = 0
    is_aligned: bool = False
    confidence: Optional[float] = None
    landmarks_kind: Optional[str] = Field(
        default=None,
        description="'face', 'body' or 'landscape' once landmarks are stored",
    )
    stabilization_result: Optional[StabilizationResult] = None

    @classmethod
    def from_frame(cls, frame: Frame) -> "FrameResponse":
        return cls(
            id=frame.id,
            project_id=frame.project_id,
            original_path=frame.original_path,
            aligned_path=frame.aligned_path,
            timestamp=frame.timestamp,
            captured_at=frame.captured_at,
            sort_order=frame.sort_order,
            is_aligned=frame.is_aligned,
            confidence=frame.confidence,
            landmarks_kind=frame.landmarks.kind if frame.landmarks is not None else None,
            stabilization_result=frame.stabilization_result,
        )


class FrameListResponse(BaseModel):
    """Response from GET /api/v1/projects/{project_id}/frames."""
    project_id: str
    frames: List[FrameResponse]


# ============================================================
# ALIGNMENT
# ============================================================

class AlignFrameRequest(BaseModel):
    """Body of POST /api/v1/projects/{project_id}/frames/{frame_id}/align."""
    mode: Optional[StabilizationMode] = Field(
        default=None,
        description="FAST or SLOW. Defaults to the server's configured mode.",
    )
    reference_frame_id: Optional[str] = Field(
        default=None,
        description="Landscape only: frame to align onto instead of the project reference.",
    )


class AlignFrameResponse(BaseModel):
    """Aligned frame plus the progress events emitted during the run."""
    frame: FrameResponse
    progress: List[StabilizationProgress] = Field(default_factory=list)
    processing_time_ms: int


class BatchAlignRequest(BaseModel):
    """Body of POST /api/v1/projects/{project_id}/align."""
    mode: Optional[StabilizationMode] = None
    max_workers: Optional[int] = Field(default=None, ge=1, le=32)


class FrameFailureInfo(BaseModel):
    frame_id: str
    code: str
    message: str


class BatchAlignResponse(BaseModel):
    """Per-frame outcome of a whole-project alignment."""
    project_id: str
    aligned: List[str] = Field(default_factory=list, description="IDs of frames aligned by this run")
    skipped: List[str] = Field(default_factory=list, description="Already aligned or reference frames")
    failed: List[FrameFailureInfo] = Field(default_factory=list)
    cancelled: bool = False
    processing_time_ms: int


# ============================================================
# ERRORS
# ============================================================

class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: ErrorDetail
