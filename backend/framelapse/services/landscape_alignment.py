"""
Landscape frame alignment against a reference frame's feature keypoints.
"""

import logging
import threading
from typing import Optional

from framelapse.config import settings as app_settings
from framelapse.models.frame import Frame
from framelapse.models.landmarks import FeatureDetectorType, LandscapeLandmarks
from framelapse.models.settings import (
    LandscapeAlignmentSettings,
    LandscapeStabilizationSettings,
    StabilizationMode,
)
from framelapse.models.stabilization import AlignmentDiagnostics
from framelapse.services.errors import (
    AlignmentCancelledError,
    CapabilityUnavailableError,
    ReferenceFrameError,
)
from framelapse.services.imaging import ImageProcessor, OpenCVImageProcessor
from framelapse.services.landscape import LandscapeFeatureService
from framelapse.services.landscape_stabilization import MultiPassLandscapeStabilizer
from framelapse.services.progress import ProgressCallback
from framelapse.services.reference_cache import ReferenceLandmarkCache
from framelapse.services.storage import StorageService, storage_service

logger = logging.getLogger(__name__)


class LandscapeAlignmentService:
    """Aligns landscape frames with a feature-matched homography."""

    def __init__(
        self,
        feature_service: Optional[LandscapeFeatureService] = None,
        image_processor: Optional[ImageProcessor] = None,
        repository: Optional[StorageService] = None,
        cache: Optional[ReferenceLandmarkCache] = None,
    ):
        self.feature_service = feature_service or LandscapeFeatureService()
        self.image_processor = image_processor or OpenCVImageProcessor()
        self.repository = repository or storage_service
        self.cache = cache or ReferenceLandmarkCache()
        self.stabilizer = MultiPassLandscapeStabilizer(self.feature_service, self.image_processor)

    def default_settings(self, mode: Optional[StabilizationMode] = None) -> LandscapeAlignmentSettings:
        mode = mode or StabilizationMode(app_settings.default_stabilization_mode)
        return LandscapeAlignmentSettings(
            detector_type=FeatureDetectorType(app_settings.feature_detector),
            max_keypoints=app_settings.feature_max_keypoints,
            output_size=app_settings.landscape_output_size,
            stabilization=LandscapeStabilizationSettings(mode=mode),
        )

    def align(
        self,
        frame: Frame,
        reference_frame: Optional[Frame] = None,
        settings: Optional[LandscapeAlignmentSettings] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Frame:
        """
        Align one landscape frame.

        Args:
            frame: Frame to align
            reference_frame: Frame to align onto; defaults to the project's
                reference frame, then its first frame
            settings: Matching and stabilization settings
            on_progress: Called once per pass; returning False cancels
            cancel_event: Alternative cancellation signal for batch runs

        Returns:
            The updated, persisted frame

        Raises:
            CapabilityUnavailableError: Feature matching unavailable
            ReferenceFrameError: No reference frame, or frame is its own reference
            ImageIOError: Photo cannot be loaded or aligned image cannot be saved
            NoDetectionError / InsufficientMatchesError: Too few features or matches
            DegenerateGeometryError: Homography unusable
            AlignmentCancelledError: Run cancelled through the callback
        """
        if frame.is_aligned:
            logger.debug(f"Frame {frame.id} already aligned, skipping")
            return frame
        if not self.feature_service.is_available:
            raise CapabilityUnavailableError("Feature matching is not available on this system")

        settings = settings or self.default_settings()
        reference = self.resolve_reference_frame(frame, reference_frame)
        reference_landmarks = self.get_reference_landmarks(reference, settings)

        image = self.image_processor.load_image(frame.original_path)
        source_landmarks = self.feature_service.detect_features(
            image, settings.detector_type, settings.max_keypoints
        )

        outcome = self.stabilizer.stabilize(
            image,
            source_landmarks,
            reference_landmarks,
            settings,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )
        if outcome.cancelled:
            raise AlignmentCancelledError(details={
                "frame_id": frame.id,
                "passes_executed": outcome.result.passes_executed,
            })

        aligned_path = self.repository.get_aligned_path(frame.project_id, frame.id)
        self.image_processor.save_image(outcome.image, str(aligned_path))

        result = outcome.result.with_diagnostics(AlignmentDiagnostics(
            aligned_landmarks_detected=True,
            reference_frame_id=reference.id,
        ))
        logger.info(
            f"Aligned landscape frame {frame.id} to {reference.id}: "
            f"{outcome.inlier_count}/{outcome.match_count} inliers, confidence={outcome.confidence:.2f}"
        )
        return self.repository.update_aligned_frame(
            frame, str(aligned_path), outcome.confidence, source_landmarks, result
        )

    def resolve_reference_frame(self, frame: Frame, reference_frame: Optional[Frame]) -> Frame:
        """Given frame, else the project's reference frame, else its first frame."""
        reference = reference_frame
        if reference is None:
            project = self.repository.load_project(frame.project_id)
            if project is not None and project.reference_frame_id:
                reference = self.repository.load_frame(frame.project_id, project.reference_frame_id)
            if reference is None:
                reference = self.repository.first_frame(frame.project_id)

        if reference is None:
            raise ReferenceFrameError(
                "NO_REFERENCE_FRAME",
                "No reference frame found",
                details={"project_id": frame.project_id},
            )
        if reference.id == frame.id:
            raise ReferenceFrameError(
                "SELF_REFERENCE",
                "Cannot align frame to itself",
                details={"frame_id": frame.id},
            )
        return reference

    def get_reference_landmarks(
        self, reference: Frame, settings: LandscapeAlignmentSettings
    ) -> LandscapeLandmarks:
        """
        Cached landmarks, else stored landmarks from the same detector with
        descriptors, else fresh detection.
        """
        def load() -> LandscapeLandmarks:
            stored = reference.landmarks
            if (
                isinstance(stored, LandscapeLandmarks)
                and stored.has_enough_keypoints()
                and stored.has_descriptors()
                and stored.detector_type == settings.detector_type
            ):
                return stored
            logger.debug(f"Detecting features on reference frame {reference.id}")
            image = self.image_processor.load_image(reference.original_path)
            return self.feature_service.detect_features(
                image, settings.detector_type, settings.max_keypoints
            )

        key = (reference.id, settings.detector_type, settings.max_keypoints)
        return self.cache.get_or_load(key, load)

    def clear_cache(self) -> None:
        self.cache.clear()
