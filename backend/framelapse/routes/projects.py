"""
Project management and whole-project alignment endpoints.
"""

import logging
import time

from fastapi import APIRouter, status
from fastapi.concurrency import run_in_threadpool

from framelapse.models.responses import (
    BatchAlignRequest,
    BatchAlignResponse,
    CreateProjectRequest,
    ErrorResponse,
    FrameFailureInfo,
    ProjectResponse,
    SetReferenceFrameRequest,
)
from framelapse.routes import common
from framelapse.services import content_alignment
from framelapse.services.errors import StabilizationError
from framelapse.services.storage import storage_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"])


@router.post(
    "",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_project(request: CreateProjectRequest) -> ProjectResponse:
    """
    Create a timelapse project.

    The content type decides which alignment pipeline its frames go through.
    """
    project = storage_service.create_project(
        request.name,
        content_type=request.content_type,
        calibration=request.calibration,
    )
    return ProjectResponse.from_project(project, [])


@router.get(
    "/{project_id}",
    response_model=ProjectResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Project not found"},
    },
)
async def get_project(project_id: str) -> ProjectResponse:
    """Get project metadata and frame counts."""
    project = common.get_project_or_404(project_id)
    frames = storage_service.list_frames(project_id)
    return ProjectResponse.from_project(project, frames)


@router.put(
    "/{project_id}/reference-frame",
    response_model=ProjectResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Project or frame not found"},
    },
)
async def set_reference_frame(project_id: str, request: SetReferenceFrameRequest) -> ProjectResponse:
    """Choose the frame landscape frames are aligned onto."""
    common.get_project_or_404(project_id)
    if request.frame_id is not None:
        common.get_frame_or_404(project_id, request.frame_id)

    project = storage_service.set_reference_frame(project_id, request.frame_id)
    frames = storage_service.list_frames(project_id)
    return ProjectResponse.from_project(project, frames)


@router.post(
    "/{project_id}/align",
    response_model=BatchAlignResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Project not found"},
    },
)
async def align_project(project_id: str, request: BatchAlignRequest) -> BatchAlignResponse:
    """
    Align every unaligned frame of a project.

    Frames run concurrently on a worker pool. Per-frame failures are reported
    in the response instead of failing the request.
    """
    start_time = time.time()
    common.get_project_or_404(project_id)

    logger.info(f"Batch align request for project {project_id}, mode={request.mode}")

    try:
        batch = await run_in_threadpool(
            content_alignment.alignment_service.align_project,
            project_id,
            max_workers=request.max_workers,
            mode=request.mode,
        )
    except StabilizationError as e:
        raise common.http_error(e)

    return BatchAlignResponse(
        project_id=project_id,
        aligned=[f.id for f in batch.aligned],
        skipped=batch.skipped,
        failed=[
            FrameFailureInfo(frame_id=f.frame_id, code=f.code, message=f.message)
            for f in batch.failed
        ],
        cancelled=batch.cancelled,
        processing_time_ms=int((time.time() - start_time) * 1000),
    )
