"""
Tests for content-type dispatch and whole-project batch alignment.
"""

import threading

import numpy as np
import pytest

from fakes import FakeBodyDetector, FakeFaceDetector, FakeFeatureMatcher, FakeImageProcessor, make_scene
from framelapse.models.frame import ContentType
from framelapse.models.settings import AlignmentSettings, StabilizationMode
from framelapse.services.alignment import BodyAlignmentService, FaceAlignmentService
from framelapse.services.content_alignment import BatchAlignmentResult, ContentAlignmentService, FrameFailure
from framelapse.services.errors import NotFoundError
from framelapse.services.imaging import ImageData
from framelapse.services.landscape import LandscapeFeatureService
from framelapse.services.landscape_alignment import LandscapeAlignmentService
from framelapse.services.matrix import default_face_goals
from framelapse.services.storage import StorageService

GOAL_LEFT, GOAL_RIGHT = default_face_goals(AlignmentSettings())


def face_scene(dx: float):
    return make_scene((GOAL_LEFT.x + dx, GOAL_LEFT.y), (GOAL_RIGHT.x + dx, GOAL_RIGHT.y))


IMAGES = {
    "monday.jpg": face_scene(12.0),
    "tuesday.jpg": face_scene(-18.0),
    "empty.jpg": make_scene(None, None),
    "harbour_1.jpg": ImageData(pixels=np.zeros((90, 160, 3), dtype=np.uint8), source_path="harbour_1.jpg"),
    "harbour_2.jpg": ImageData(pixels=np.zeros((90, 160, 3), dtype=np.uint8), source_path="harbour_2.jpg"),
    "harbour_3.jpg": ImageData(pixels=np.zeros((90, 160, 3), dtype=np.uint8), source_path="harbour_3.jpg"),
}


@pytest.fixture
def repo(tmp_path):
    return StorageService(tmp_path / "projects")


@pytest.fixture
def matcher():
    return FakeFeatureMatcher()


@pytest.fixture
def service(repo, matcher):
    processor = FakeImageProcessor(images=IMAGES)
    return ContentAlignmentService(
        face_service=FaceAlignmentService(FakeFaceDetector(), processor, repo),
        body_service=BodyAlignmentService(FakeBodyDetector(), processor, repo),
        landscape_service=LandscapeAlignmentService(LandscapeFeatureService(matcher), processor, repo),
        repository=repo,
    )


def face_project(repo):
    project = repo.create_project("Selfies")
    frames = [repo.add_frame(project.id, path) for path in ("monday.jpg", "tuesday.jpg", "empty.jpg")]
    return project, frames


def landscape_project(repo):
    project = repo.create_project("Harbour", content_type=ContentType.LANDSCAPE)
    frames = [repo.add_frame(project.id, f"harbour_{i}.jpg") for i in (1, 2, 3)]
    return project, frames


class TestDispatch:
    """Tests for ContentAlignmentService.align."""

    def test_project_content_type_used(self, repo, service):
        """Face projects go to the face service."""
        _, frames = face_project(repo)
        aligned = service.align(frames[0])
        assert aligned.landmarks.kind == "face"

    def test_explicit_content_type(self, repo, service):
        """An explicit content type overrides the project's."""
        _, frames = face_project(repo)
        aligned = service.align(frames[0], content_type=ContentType.BODY)
        assert aligned.landmarks.kind == "body"

    def test_mode_override(self, repo, service):
        """A requested mode replaces the configured default mode."""
        _, frames = face_project(repo)
        aligned = service.align(frames[1], mode=StabilizationMode.SLOW)
        assert aligned.stabilization_result.mode == StabilizationMode.SLOW


class TestBatch:
    """Tests for ContentAlignmentService.align_project."""

    def test_failures_collected(self, repo, service):
        """One bad frame fails on its own while the rest align."""
        project, frames = face_project(repo)

        batch = service.align_project(project.id, max_workers=2)

        assert sorted(f.id for f in batch.aligned) == sorted([frames[0].id, frames[1].id])
        assert batch.failed == [FrameFailure(frames[2].id, "NO_FACE_DETECTED", "No face detected in image")]
        assert batch.skipped == []
        assert not batch.cancelled

    def test_aligned_frames_skipped_on_rerun(self, repo, service):
        """Frames aligned by an earlier batch are not processed again."""
        project, frames = face_project(repo)
        service.align_project(project.id)

        batch = service.align_project(project.id)

        assert sorted(batch.skipped) == sorted([frames[0].id, frames[1].id])
        assert batch.aligned == []
        assert [f.frame_id for f in batch.failed] == [frames[2].id]

    def test_landscape_reference_skipped(self, repo, service, matcher):
        """The landscape reference frame is skipped and detected only once."""
        project, frames = landscape_project(repo)

        batch = service.align_project(project.id, max_workers=3)

        assert batch.skipped == [frames[0].id]
        assert len(batch.aligned) == 2
        assert all(
            f.stabilization_result.diagnostics.reference_frame_id == frames[0].id for f in batch.aligned
        )
        assert matcher.detect_calls == 3

    def test_landscape_project_reference(self, repo, service):
        """A configured reference frame is the one skipped."""
        project, frames = landscape_project(repo)
        repo.set_reference_frame(project.id, frames[1].id)

        batch = service.align_project(project.id)

        assert batch.skipped == [frames[1].id]
        assert sorted(f.id for f in batch.aligned) == sorted([frames[0].id, frames[2].id])

    def test_unknown_project(self, service):
        """A missing project is an error, not an empty batch."""
        with pytest.raises(NotFoundError) as exc_info:
            service.align_project("does-not-exist")
        assert exc_info.value.code == "PROJECT_NOT_FOUND"

    def test_cancel_event(self, repo, service):
        """A set cancel event cancels every pending frame."""
        project, frames = face_project(repo)
        event = threading.Event()
        event.set()

        batch = service.align_project(project.id, cancel_event=event)

        assert batch.cancelled
        assert batch.aligned == []
        assert {f.code for f in batch.failed} == {"CANCELLED", "NO_FACE_DETECTED"}

    def test_to_dict(self):
        """Batch results serialize to frame ids and failure records."""
        batch = BatchAlignmentResult(skipped=["a"], failed=[FrameFailure("b", "NO_FACE_DETECTED", "No face")])
        assert batch.to_dict() == {
            "aligned": [],
            "skipped": ["a"],
            "failed": [{"frame_id": "b", "code": "NO_FACE_DETECTED", "message": "No face"}],
            "cancelled": False,
        }
