"""
Storage service for projects, frames and aligned images on the local filesystem.

Layout:
    {base_dir}/{project_id}/project.json
    {base_dir}/{project_id}/frames/{frame_id}.json
    {base_dir}/{project_id}/aligned/aligned_{frame_id}.{ext}
"""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from framelapse.config import settings
from framelapse.models.frame import Calibration, ContentType, Frame, Project
from framelapse.models.landmarks import Landmarks
from framelapse.models.stabilization import StabilizationResult

logger = logging.getLogger(__name__)


class StorageService:
    """Manages project and frame records and aligned image paths."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir or settings.projects_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)

    # ============================================================
    # PROJECTS
    # ============================================================

    def create_project(
        self,
        name: str,
        content_type: ContentType = ContentType.FACE,
        calibration: Optional[Calibration] = None,
    ) -> Project:
        """Create a new project with unique ID."""
        now = datetime.now(timezone.utc)
        project = Project(
            id=str(uuid.uuid4()),
            name=name,
            created_at=now,
            updated_at=now,
            content_type=content_type,
            calibration=calibration,
        )
        project_dir = self.get_project_dir(project.id)
        (project_dir / "frames").mkdir(parents=True, exist_ok=True)
        (project_dir / "aligned").mkdir(parents=True, exist_ok=True)
        self.save_project(project)

        logger.info(f"Created project {project.id} ({content_type.value})")
        return project

    def get_project_dir(self, project_id: str) -> Path:
        return self.base_dir / project_id

    def get_project_path(self, project_id: str) -> Path:
        return self.get_project_dir(project_id) / "project.json"

    def save_project(self, project: Project) -> None:
        project.save(self.get_project_path(project.id))
        logger.debug(f"Saved project {project.id}")

    def load_project(self, project_id: str) -> Optional[Project]:
        """Load project from disk. Returns None if not found."""
        path = self.get_project_path(project_id)
        if not path.exists():
            return None
        try:
            return Project.load(path)
        except Exception as e:
            logger.error(f"Failed to load project {project_id}: {e}")
            return None

    def set_reference_frame(self, project_id: str, frame_id: Optional[str]) -> Optional[Project]:
        project = self.load_project(project_id)
        if project is None:
            return None
        project = project.model_copy(update={
            "reference_frame_id": frame_id,
            "updated_at": datetime.now(timezone.utc),
        })
        self.save_project(project)
        return project

    # ============================================================
    # FRAMES
    # ============================================================

    def get_frame_path(self, project_id: str, frame_id: str) -> Path:
        return self.get_project_dir(project_id) / "frames" / f"{frame_id}.json"

    def get_aligned_path(self, project_id: str, frame_id: str) -> Path:
        extension = settings.aligned_image_extension
        return self.get_project_dir(project_id) / "aligned" / f"aligned_{frame_id}.{extension}"

    def add_frame(
        self,
        project_id: str,
        original_path: str,
        captured_at: Optional[datetime] = None,
    ) -> Frame:
        """Register a captured photo with a project."""
        frame = Frame(
            id=str(uuid.uuid4()),
            project_id=project_id,
            original_path=str(original_path),
            timestamp=datetime.now(timezone.utc),
            captured_at=captured_at,
            sort_order=len(self.list_frames(project_id)),
        )
        self.save_frame(frame)
        logger.info(f"Added frame {frame.id} to project {project_id}")
        return frame

    def save_frame(self, frame: Frame) -> None:
        frame.save(self.get_frame_path(frame.project_id, frame.id))
        logger.debug(f"Saved frame {frame.id}")

    def load_frame(self, project_id: str, frame_id: str) -> Optional[Frame]:
        """Load frame from disk. Returns None if not found."""
        path = self.get_frame_path(project_id, frame_id)
        if not path.exists():
            return None
        try:
            return Frame.load(path)
        except Exception as e:
            logger.error(f"Failed to load frame {frame_id}: {e}")
            return None

    def list_frames(self, project_id: str) -> List[Frame]:
        """All frames of a project in capture order."""
        frames_dir = self.get_project_dir(project_id) / "frames"
        if not frames_dir.exists():
            return []
        frames = []
        for path in frames_dir.glob("*.json"):
            frame = self.load_frame(project_id, path.stem)
            if frame is not None:
                frames.append(frame)
        return sorted(frames, key=lambda f: (f.sort_order, f.timestamp))

    def first_frame(self, project_id: str) -> Optional[Frame]:
        frames = self.list_frames(project_id)
        return frames[0] if frames else None

    def update_aligned_frame(
        self,
        frame: Frame,
        aligned_path: str,
        confidence: float,
        landmarks: Landmarks,
        stabilization_result: Optional[StabilizationResult],
    ) -> Frame:
        """Persist alignment output on a frame and return the updated record."""
        updated = frame.model_copy(update={
            "aligned_path": str(aligned_path),
            "confidence": confidence,
            "landmarks": landmarks,
            "stabilization_result": stabilization_result,
        })
        self.save_frame(updated)
        return updated


# Global service instance
storage_service = StorageService()
