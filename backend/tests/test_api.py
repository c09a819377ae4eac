"""
Integration tests for the API endpoints.
"""

import numpy as np
import pytest
from fastapi.testclient import TestClient

from fakes import FakeFaceDetector, FakeFeatureMatcher, FakeImageProcessor, make_scene
from framelapse.main import app
from framelapse.models.settings import AlignmentSettings
from framelapse.services import content_alignment
from framelapse.services.alignment import BodyAlignmentService, FaceAlignmentService
from framelapse.services.imaging import ImageData
from framelapse.services.landscape import LandscapeFeatureService
from framelapse.services.landscape_alignment import LandscapeAlignmentService
from framelapse.services.matrix import default_face_goals
from framelapse.services.storage import storage_service

API = "/api/v1"
GOAL_LEFT, GOAL_RIGHT = default_face_goals(AlignmentSettings())

IMAGES = {
    "smile.jpg": make_scene((GOAL_LEFT.x, GOAL_LEFT.y), (GOAL_RIGHT.x, GOAL_RIGHT.y)),
    "blank.jpg": make_scene(None, None),
    "field.jpg": ImageData(pixels=np.zeros((90, 160, 3), dtype=np.uint8), source_path="field.jpg"),
}


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Test client backed by a temporary store and in-memory detectors."""
    monkeypatch.setattr(storage_service, "base_dir", tmp_path)
    processor = FakeImageProcessor(images=IMAGES)
    service = content_alignment.ContentAlignmentService(
        face_service=FaceAlignmentService(FakeFaceDetector(), processor, storage_service),
        body_service=BodyAlignmentService(image_processor=processor, repository=storage_service),
        landscape_service=LandscapeAlignmentService(
            LandscapeFeatureService(FakeFeatureMatcher()), processor, storage_service
        ),
        repository=storage_service,
    )
    monkeypatch.setattr(content_alignment, "alignment_service", service)
    return TestClient(app)


def create_project(client, content_type="FACE", **extra) -> dict:
    response = client.post(f"{API}/projects", json={"name": "Timelapse", "content_type": content_type, **extra})
    assert response.status_code == 201, response.text
    return response.json()


def add_frame(client, project_id: str, path: str) -> dict:
    response = client.post(f"{API}/projects/{project_id}/frames", json={"original_path": path})
    assert response.status_code == 201, response.text
    return response.json()


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_check(self, client):
        """Test that health endpoint returns healthy status."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["status"] == "healthy"
        assert "version" in data


class TestRootEndpoint:
    """Tests for root endpoint."""

    def test_root_returns_info(self, client):
        """Test that root returns API info."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert data["docs"] == f"{API}/docs"


class TestProjectEndpoints:
    """Tests for project endpoints."""

    def test_create_and_get(self, client):
        """A created project can be fetched with its frame counts."""
        project = create_project(client, "LANDSCAPE")
        add_frame(client, project["id"], "field.jpg")

        response = client.get(f"{API}/projects/{project['id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["content_type"] == "LANDSCAPE"
        assert data["frame_count"] == 1
        assert data["aligned_count"] == 0

    def test_create_with_calibration(self, client):
        """Calibration points are stored with the project."""
        calibration = {"left": {"x": 0.4, "y": 0.45}, "right": {"x": 0.6, "y": 0.45}}
        project = create_project(client, calibration=calibration)
        assert project["calibration"]["left"]["x"] == 0.4

    def test_empty_name_rejected(self, client):
        """Request validation happens before anything is stored."""
        response = client.post(f"{API}/projects", json={"name": ""})
        assert response.status_code == 422

    def test_get_nonexistent_project(self, client):
        """Test getting a project that doesn't exist."""
        response = client.get(f"{API}/projects/nonexistent")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "PROJECT_NOT_FOUND"

    def test_set_reference_frame(self, client):
        """The reference frame can be chosen and must exist."""
        project = create_project(client, "LANDSCAPE")
        frame = add_frame(client, project["id"], "field.jpg")
        url = f"{API}/projects/{project['id']}/reference-frame"

        response = client.put(url, json={"frame_id": frame["id"]})
        assert response.status_code == 200
        assert response.json()["reference_frame_id"] == frame["id"]

        response = client.put(url, json={"frame_id": "missing"})
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "FRAME_NOT_FOUND"


class TestFrameEndpoints:
    """Tests for frame registration and listing."""

    def test_add_and_list(self, client):
        """Frames are listed in the order they were added."""
        project = create_project(client)
        first = add_frame(client, project["id"], "smile.jpg")
        second = add_frame(client, project["id"], "blank.jpg")

        response = client.get(f"{API}/projects/{project['id']}/frames")

        assert response.status_code == 200
        ids = [f["id"] for f in response.json()["frames"]]
        assert ids == [first["id"], second["id"]]
        assert first["is_aligned"] is False

    def test_get_nonexistent_frame(self, client):
        """Unknown frame ids return FRAME_NOT_FOUND."""
        project = create_project(client)
        response = client.get(f"{API}/projects/{project['id']}/frames/nope")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "FRAME_NOT_FOUND"


class TestAlignEndpoint:
    """Tests for single-frame alignment."""

    def test_align_face_frame(self, client):
        """A good frame aligns and the response carries every progress event."""
        project = create_project(client)
        frame = add_frame(client, project["id"], "smile.jpg")

        response = client.post(f"{API}/projects/{project['id']}/frames/{frame['id']}/align", json={"mode": "FAST"})

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["frame"]["is_aligned"] is True
        assert data["frame"]["landmarks_kind"] == "face"
        assert data["frame"]["confidence"] == pytest.approx(1.0)
        messages = [e["message"] for e in data["progress"]]
        assert messages == ["Starting stabilization...", "Initial alignment...", "Stabilization complete!"]
        assert data["frame"]["stabilization_result"]["early_stop_reason"] == "SCORE_BELOW_THRESHOLD"

    def test_no_face_is_unprocessable(self, client):
        """A photo without a face maps to 422 with the error code."""
        project = create_project(client)
        frame = add_frame(client, project["id"], "blank.jpg")

        response = client.post(f"{API}/projects/{project['id']}/frames/{frame['id']}/align", json={})

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "NO_FACE_DETECTED"
        assert detail["details"]["frame_id"] == frame["id"]

    def test_self_reference_conflict(self, client):
        """The only landscape frame cannot be aligned onto itself."""
        project = create_project(client, "LANDSCAPE")
        frame = add_frame(client, project["id"], "field.jpg")

        response = client.post(f"{API}/projects/{project['id']}/frames/{frame['id']}/align", json={})

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "SELF_REFERENCE"

    def test_unavailable_detector(self, client):
        """Body alignment without a pose backend is 503."""
        project = create_project(client, "BODY")
        frame = add_frame(client, project["id"], "smile.jpg")

        response = client.post(f"{API}/projects/{project['id']}/frames/{frame['id']}/align", json={})

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "CAPABILITY_UNAVAILABLE"

    def test_invalid_mode(self, client):
        """Unknown modes are rejected by request validation."""
        project = create_project(client)
        frame = add_frame(client, project["id"], "smile.jpg")
        response = client.post(
            f"{API}/projects/{project['id']}/frames/{frame['id']}/align", json={"mode": "TURBO"}
        )
        assert response.status_code == 422


class TestBatchAlignEndpoint:
    """Tests for whole-project alignment."""

    def test_batch_reports_each_frame(self, client):
        """Aligned and failed frames are listed separately."""
        project = create_project(client)
        good = add_frame(client, project["id"], "smile.jpg")
        bad = add_frame(client, project["id"], "blank.jpg")

        response = client.post(f"{API}/projects/{project['id']}/align", json={"max_workers": 2})

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["aligned"] == [good["id"]]
        assert [f["frame_id"] for f in data["failed"]] == [bad["id"]]
        assert data["failed"][0]["code"] == "NO_FACE_DETECTED"
        assert data["cancelled"] is False

        project_data = client.get(f"{API}/projects/{project['id']}").json()
        assert project_data["aligned_count"] == 1

    def test_batch_unknown_project(self, client):
        """Test batch alignment of a project that doesn't exist."""
        response = client.post(f"{API}/projects/nonexistent/align", json={})
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "PROJECT_NOT_FOUND"

    def test_batch_worker_limit(self, client):
        """max_workers outside 1..32 is rejected."""
        project = create_project(client)
        response = client.post(f"{API}/projects/{project['id']}/align", json={"max_workers": 0})
        assert response.status_code == 422
