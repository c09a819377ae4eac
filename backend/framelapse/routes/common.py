"""
Shared route helpers: record lookup and error-to-HTTP mapping.
"""

import logging

from fastapi import HTTPException, status

from framelapse.models.frame import Frame, Project
from framelapse.services.errors import (
    AlignmentCancelledError,
    CapabilityUnavailableError,
    ImageIOError,
    NotFoundError,
    ReferenceFrameError,
    StabilizationError,
)
from framelapse.services.storage import storage_service

logger = logging.getLogger(__name__)


def get_project_or_404(project_id: str) -> Project:
    """Load project or raise 404."""
    project = storage_service.load_project(project_id)
    if project is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": "PROJECT_NOT_FOUND",
                "message": f"Project '{project_id}' does not exist",
            },
        )
    return project


def get_frame_or_404(project_id: str, frame_id: str) -> Frame:
    """Load frame or raise 404."""
    frame = storage_service.load_frame(project_id, frame_id)
    if frame is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": "FRAME_NOT_FOUND",
                "message": f"Frame '{frame_id}' does not exist in project '{project_id}'",
            },
        )
    return frame


def status_code_for(error: StabilizationError) -> int:
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (ReferenceFrameError, AlignmentCancelledError)):
        return status.HTTP_409_CONFLICT
    if isinstance(error, CapabilityUnavailableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(error, ImageIOError) and error.code == "IMAGE_SAVE_FAILED":
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    # Bad photo, nothing detected, failed validation, unusable geometry
    return status.HTTP_422_UNPROCESSABLE_ENTITY


def http_error(error: StabilizationError) -> HTTPException:
    """Convert a pipeline error into an HTTPException with code/message/details."""
    code = status_code_for(error)
    if code >= 500:
        logger.error(f"Alignment error {error.code}: {error.message}")
    else:
        logger.info(f"Alignment rejected {error.code}: {error.message}")
    return HTTPException(
        status_code=code,
        detail={
            "code": error.code,
            "message": error.message,
            "details": error.details,
        },
    )
