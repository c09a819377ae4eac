"""
Content-type dispatch and whole-project batch alignment.

Frames of a project are independent, so a batch runs them on a thread pool.
The landscape reference cache is the only shared state and is lock-protected.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from framelapse.config import settings as app_settings
from framelapse.models.frame import ContentType, Frame
from framelapse.models.settings import StabilizationMode
from framelapse.services.alignment import BodyAlignmentService, FaceAlignmentService
from framelapse.services.errors import (
    AlignmentCancelledError,
    NotFoundError,
    StabilizationError,
)
from framelapse.services.landscape_alignment import LandscapeAlignmentService
from framelapse.services.progress import ProgressCallback
from framelapse.services.storage import StorageService, storage_service

logger = logging.getLogger(__name__)


@dataclass
class FrameFailure:
    frame_id: str
    code: str
    message: str


@dataclass
class BatchAlignmentResult:
    """Per-frame outcome of a project batch."""
    aligned: List[Frame] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[FrameFailure] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aligned": [f.id for f in self.aligned],
            "skipped": list(self.skipped),
            "failed": [{"frame_id": f.frame_id, "code": f.code, "message": f.message} for f in self.failed],
            "cancelled": self.cancelled,
        }


class ContentAlignmentService:
    """Routes frames to the face, body or landscape alignment service."""

    def __init__(
        self,
        face_service: Optional[FaceAlignmentService] = None,
        body_service: Optional[BodyAlignmentService] = None,
        landscape_service: Optional[LandscapeAlignmentService] = None,
        repository: Optional[StorageService] = None,
    ):
        self.repository = repository or storage_service
        self.face_service = face_service or FaceAlignmentService(repository=self.repository)
        self.body_service = body_service or BodyAlignmentService(repository=self.repository)
        self.landscape_service = landscape_service or LandscapeAlignmentService(repository=self.repository)

    def _service_for(self, content_type: ContentType):
        if content_type == ContentType.BODY:
            return self.body_service
        if content_type == ContentType.LANDSCAPE:
            return self.landscape_service
        return self.face_service

    def align(
        self,
        frame: Frame,
        content_type: Optional[ContentType] = None,
        reference_frame: Optional[Frame] = None,
        mode: Optional[StabilizationMode] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Frame:
        """Align a frame with the service matching its content type (project default)."""
        if content_type is None:
            project = self.repository.load_project(frame.project_id)
            content_type = project.content_type if project else ContentType.FACE

        service = self._service_for(content_type)
        settings = service.default_settings(mode) if mode else None
        return service.align(
            frame,
            reference_frame=reference_frame,
            settings=settings,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )

    def align_project(
        self,
        project_id: str,
        max_workers: Optional[int] = None,
        mode: Optional[StabilizationMode] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchAlignmentResult:
        """
        Align every frame of a project concurrently.

        Per-frame failures are collected rather than raised. Setting
        cancel_event stops runs at their next pass boundary.

        Raises:
            NotFoundError: Unknown project
        """
        project = self.repository.load_project(project_id)
        if project is None:
            raise NotFoundError("PROJECT_NOT_FOUND", f"Project '{project_id}' does not exist")

        frames = self.repository.list_frames(project_id)
        batch = BatchAlignmentResult()
        pending: List[Frame] = []
        reference: Optional[Frame] = None

        if project.content_type == ContentType.LANDSCAPE and frames:
            self.landscape_service.clear_cache()
            if project.reference_frame_id:
                reference = self.repository.load_frame(project_id, project.reference_frame_id)
            reference = reference or frames[0]

        for frame in frames:
            if frame.is_aligned or (reference is not None and frame.id == reference.id):
                batch.skipped.append(frame.id)
            else:
                pending.append(frame)

        workers = max_workers or app_settings.batch_workers
        logger.info(
            f"Aligning {len(pending)} frame(s) of project {project_id} "
            f"({project.content_type.value}) with {workers} worker(s)"
        )

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(
                    self.align,
                    frame,
                    project.content_type,
                    reference,
                    mode,
                    None,
                    cancel_event,
                ): frame
                for frame in pending
            }
            for future in as_completed(futures):
                frame = futures[future]
                try:
                    batch.aligned.append(future.result())
                except AlignmentCancelledError as e:
                    batch.cancelled = True
                    batch.failed.append(FrameFailure(frame.id, e.code, e.message))
                except StabilizationError as e:
                    logger.warning(f"Frame {frame.id} failed: {e.code} - {e.message}")
                    batch.failed.append(FrameFailure(frame.id, e.code, e.message))

        logger.info(
            f"Project {project_id}: {len(batch.aligned)} aligned, {len(batch.skipped)} skipped, "
            f"{len(batch.failed)} failed"
        )
        return batch


# Global service instance
alignment_service = ContentAlignmentService()
