"""
Frame registration and single-frame alignment endpoints.
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, status
from fastapi.concurrency import run_in_threadpool

from framelapse.models.responses import (
    AddFrameRequest,
    AlignFrameRequest,
    AlignFrameResponse,
    ErrorResponse,
    FrameListResponse,
    FrameResponse,
)
from framelapse.routes import common
from framelapse.services import content_alignment
from framelapse.services.errors import StabilizationError
from framelapse.services.progress import ProgressRecorder
from framelapse.services.storage import storage_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects/{project_id}/frames", tags=["frames"])


@router.post(
    "",
    response_model=FrameResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"model": ErrorResponse, "description": "Project not found"},
    },
)
async def add_frame(project_id: str, request: AddFrameRequest) -> FrameResponse:
    """Register a captured photo with a project. The photo is read at align time."""
    common.get_project_or_404(project_id)
    frame = storage_service.add_frame(project_id, request.original_path, request.captured_at)
    return FrameResponse.from_frame(frame)


@router.get(
    "",
    response_model=FrameListResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Project not found"},
    },
)
async def list_frames(project_id: str) -> FrameListResponse:
    """List the frames of a project in capture order."""
    common.get_project_or_404(project_id)
    frames = storage_service.list_frames(project_id)
    return FrameListResponse(
        project_id=project_id,
        frames=[FrameResponse.from_frame(f) for f in frames],
    )


@router.get(
    "/{frame_id}",
    response_model=FrameResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Project or frame not found"},
    },
)
async def get_frame(project_id: str, frame_id: str) -> FrameResponse:
    """Get a frame and its last stabilization result."""
    common.get_project_or_404(project_id)
    return FrameResponse.from_frame(common.get_frame_or_404(project_id, frame_id))


@router.post(
    "/{frame_id}/align",
    response_model=AlignFrameResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Project or frame not found"},
        409: {"model": ErrorResponse, "description": "No usable reference frame"},
        422: {"model": ErrorResponse, "description": "Nothing usable detected in the photo"},
        503: {"model": ErrorResponse, "description": "Detector not available"},
    },
)
async def align_frame(
    project_id: str,
    frame_id: str,
    request: Optional[AlignFrameRequest] = None,
) -> AlignFrameResponse:
    """
    Align one frame with the pipeline matching the project's content type.

    Already aligned frames are returned unchanged. The response lists every
    progress event the run emitted.
    """
    start_time = time.time()
    request = request or AlignFrameRequest()

    project = common.get_project_or_404(project_id)
    frame = common.get_frame_or_404(project_id, frame_id)
    reference = None
    if request.reference_frame_id:
        reference = common.get_frame_or_404(project_id, request.reference_frame_id)

    logger.info(
        f"Align request for frame {frame_id} ({project.content_type.value}), mode={request.mode}"
    )

    recorder = ProgressRecorder()
    try:
        aligned = await run_in_threadpool(
            content_alignment.alignment_service.align,
            frame,
            content_type=project.content_type,
            reference_frame=reference,
            mode=request.mode,
            on_progress=recorder,
        )
    except StabilizationError as e:
        raise common.http_error(e)

    return AlignFrameResponse(
        frame=FrameResponse.from_frame(aligned),
        progress=recorder.events,
        processing_time_ms=int((time.time() - start_time) * 1000),
    )
