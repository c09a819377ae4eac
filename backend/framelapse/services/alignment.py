"""
Face and body frame alignment.

Pipeline per frame:
1. Skip frames that are already aligned
2. Load the photo and detect the reference pair (eyes or shoulders)
3. Validate detection quality
4. Resolve goal points: project calibration -> reference frame -> defaults
5. Build the initial matrix and run the multi-pass stabilizer
6. Save the aligned image and re-detect on it for future reference use
7. Map the final score to a confidence and persist the frame
"""

import logging
import threading
from typing import Optional, Tuple, Union

from framelapse.config import settings as app_settings
from framelapse.models.frame import Frame, Project
from framelapse.models.landmarks import (
    FULL_FRAME,
    BodyLandmarks,
    FaceLandmarks,
    LandmarkPoint,
)
from framelapse.models.settings import (
    AlignmentSettings,
    BodyAlignmentSettings,
    StabilizationMode,
    StabilizationSettings,
)
from framelapse.models.stabilization import AlignmentDiagnostics, EarlyStopReason
from framelapse.services.detection import (
    BodyPoseDetector,
    FaceDetector,
    HaarFaceDetector,
    UnavailableBodyPoseDetector,
)
from framelapse.services.errors import (
    AlignmentCancelledError,
    AlignmentValidationError,
    CapabilityUnavailableError,
    DetectionError,
    NoDetectionError,
)
from framelapse.services.geometry import AlignmentMatrix, PixelPoint, to_normalized, to_pixel
from framelapse.services.imaging import ImageData, ImageProcessor, OpenCVImageProcessor
from framelapse.services.matrix import (
    calculate_alignment_matrix,
    calculate_body_alignment_matrix,
    default_body_goals,
    default_face_goals,
)
from framelapse.services.progress import ProgressCallback
from framelapse.services.scoring import confidence_from_score
from framelapse.services.stabilization import MultiPassStabilizer
from framelapse.services.storage import StorageService, storage_service
from framelapse.services.validation import (
    AlignmentValidator,
    BodyAlignmentValidator,
    ValidationResult,
)

logger = logging.getLogger(__name__)

AnatomicalSettings = Union[AlignmentSettings, BodyAlignmentSettings]
AnatomicalLandmarks = Union[FaceLandmarks, BodyLandmarks]


class AnatomicalAlignmentService:
    """
    Shared flow for content aligned on a left/right reference pair.

    Subclasses supply the detector, the settings type, validation, default
    goals, the initial matrix and the fallback landmarks.
    """
    content_label = "subject"
    landmarks_kind = ""
    failure_reason = EarlyStopReason.FACE_DETECTION_FAILED

    def __init__(
        self,
        detector,
        image_processor: Optional[ImageProcessor] = None,
        repository: Optional[StorageService] = None,
    ):
        self.detector = detector
        self.image_processor = image_processor or OpenCVImageProcessor()
        self.repository = repository or storage_service
        self.stabilizer = MultiPassStabilizer(detector, self.image_processor, self.failure_reason)

    # --- hooks ---

    def default_settings(self, mode: Optional[StabilizationMode] = None) -> AnatomicalSettings:
        raise NotImplementedError

    def validate(self, landmarks: AnatomicalLandmarks, settings: AnatomicalSettings) -> ValidationResult:
        raise NotImplementedError

    def default_goals(self, settings: AnatomicalSettings) -> Tuple[PixelPoint, PixelPoint]:
        raise NotImplementedError

    def initial_matrix(
        self,
        left: PixelPoint,
        right: PixelPoint,
        settings: AnatomicalSettings,
        goal_left: PixelPoint,
        goal_right: PixelPoint,
    ) -> AlignmentMatrix:
        raise NotImplementedError

    def fallback_landmarks(self, left: LandmarkPoint, right: LandmarkPoint) -> AnatomicalLandmarks:
        raise NotImplementedError

    # ============================================================
    # MAIN ENTRY POINT
    # ============================================================

    def align(
        self,
        frame: Frame,
        reference_frame: Optional[Frame] = None,
        settings: Optional[AnatomicalSettings] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Frame:
        """
        Align one frame.

        Args:
            frame: Frame to align
            reference_frame: Frame whose stored landmarks define the goal
                points; the project's reference frame is used when omitted
            settings: Target geometry and stabilization settings
            on_progress: Called once per pass; returning False cancels
            cancel_event: Alternative cancellation signal for batch runs

        Returns:
            The updated, persisted frame

        Raises:
            CapabilityUnavailableError: Detector unavailable
            ImageIOError: Photo cannot be loaded or aligned image cannot be saved
            NoDetectionError: Nothing detected on the photo
            AlignmentValidationError: Detection or aligned result too poor
            AlignmentCancelledError: Run cancelled through the callback
        """
        if frame.is_aligned:
            logger.debug(f"Frame {frame.id} already aligned, skipping")
            return frame
        if not self.detector.is_available:
            raise CapabilityUnavailableError(
                f"{self.content_label.capitalize()} detection is not available on this system"
            )

        settings = settings or self.default_settings()
        size = settings.output_size

        image = self.image_processor.load_image(frame.original_path)
        landmarks = self.detector.detect(image)
        if landmarks is None:
            raise NoDetectionError(
                f"No {self.content_label} detected in image",
                code=f"NO_{self.content_label.upper()}_DETECTED",
                details={"frame_id": frame.id},
            )

        validation = self.validate(landmarks, settings)
        if not validation.is_valid:
            raise AlignmentValidationError(
                f"{self.content_label.capitalize()} detection quality too low",
                validation.issues,
                details={"frame_id": frame.id},
            )

        project = self.repository.load_project(frame.project_id)
        goal_left, goal_right = self.resolve_goals(frame, project, reference_frame, settings)

        left = to_pixel(landmarks.reference_point_left(), image.width, image.height)
        right = to_pixel(landmarks.reference_point_right(), image.width, image.height)
        matrix = self.initial_matrix(left, right, settings, goal_left, goal_right)

        outcome = self.stabilizer.stabilize(
            image,
            matrix,
            goal_left,
            goal_right,
            settings.stabilization,
            size,
            size,
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

        aligned_landmarks, diagnostics = self.redetect(outcome.image, goal_left, goal_right, settings)
        diagnostics = diagnostics.model_copy(update={
            "reference_frame_id": reference_frame.id if reference_frame else None,
        })
        result = outcome.result.with_diagnostics(diagnostics)
        confidence = confidence_from_score(result.final_score)

        logger.info(
            f"Aligned {self.content_label} frame {frame.id}: score={result.final_score:.3f}, "
            f"confidence={confidence:.2f}, passes={result.passes_executed}"
        )
        return self.repository.update_aligned_frame(
            frame, str(aligned_path), confidence, aligned_landmarks, result
        )

    # ============================================================
    # GOALS AND RE-DETECTION
    # ============================================================

    def resolve_goals(
        self,
        frame: Frame,
        project: Optional[Project],
        reference_frame: Optional[Frame],
        settings: AnatomicalSettings,
    ) -> Tuple[PixelPoint, PixelPoint]:
        """Goal points on the canvas: calibration, then reference landmarks, then defaults."""
        size = settings.output_size
        if project is not None and project.calibration is not None:
            calibration = project.calibration
            logger.debug(f"Using project calibration for frame {frame.id}")
            return (
                to_pixel(calibration.adjusted_left(), size, size),
                to_pixel(calibration.adjusted_right(), size, size),
            )

        if reference_frame is None and project is not None and project.reference_frame_id:
            if project.reference_frame_id != frame.id:
                reference_frame = self.repository.load_frame(project.id, project.reference_frame_id)

        if reference_frame is not None and reference_frame.id != frame.id:
            reference = reference_frame.landmarks
            if reference is not None and reference.kind == self.landmarks_kind:
                logger.debug(f"Using reference frame {reference_frame.id} landmarks as goals")
                return (
                    to_pixel(reference.reference_point_left(), size, size),
                    to_pixel(reference.reference_point_right(), size, size),
                )

        return self.default_goals(settings)

    def redetect(
        self,
        aligned: ImageData,
        goal_left: PixelPoint,
        goal_right: PixelPoint,
        settings: AnatomicalSettings,
    ) -> Tuple[AnatomicalLandmarks, AlignmentDiagnostics]:
        """
        Detect on the aligned image for future reference use.

        A failed detection is not fatal: degenerate zero-confidence landmarks
        at the goal positions are stored instead. A detection that fails
        validation means the alignment itself is unusable.
        """
        try:
            landmarks = self.detector.detect(aligned)
            error = None if landmarks is not None else f"No {self.content_label} detected in aligned image"
        except DetectionError as e:
            landmarks = None
            error = e.message

        if landmarks is None:
            logger.warning(f"Re-detection on aligned image failed: {error}")
            size = settings.output_size
            fallback = self.fallback_landmarks(
                to_normalized(goal_left, size, size),
                to_normalized(goal_right, size, size),
            )
            return fallback, AlignmentDiagnostics(
                aligned_landmarks_detected=False,
                aligned_landmarks_error=error,
                fallback_landmarks_generated=True,
            )

        validation = self.validate(landmarks, settings)
        if not validation.is_valid:
            raise AlignmentValidationError(
                f"Alignment quality too low: {', '.join(validation.issues)}",
                validation.issues,
                code="ALIGNMENT_QUALITY_TOO_LOW",
            )
        return landmarks, AlignmentDiagnostics(aligned_landmarks_detected=True)


# ============================================================
# FACE
# ============================================================

class FaceAlignmentService(AnatomicalAlignmentService):
    """Aligns face frames on the eye centers."""
    content_label = "face"
    landmarks_kind = "face"
    failure_reason = EarlyStopReason.FACE_DETECTION_FAILED

    def __init__(
        self,
        detector: Optional[FaceDetector] = None,
        image_processor: Optional[ImageProcessor] = None,
        repository: Optional[StorageService] = None,
    ):
        super().__init__(detector or HaarFaceDetector(), image_processor, repository)

    def default_settings(self, mode: Optional[StabilizationMode] = None) -> AlignmentSettings:
        mode = mode or StabilizationMode(app_settings.default_stabilization_mode)
        return AlignmentSettings(
            output_size=app_settings.face_output_size,
            stabilization=StabilizationSettings(mode=mode),
        )

    def validate(self, landmarks: FaceLandmarks, settings: AlignmentSettings) -> ValidationResult:
        validator = AlignmentValidator(settings.stabilization.min_face_size_ratio)
        return validator.validate(landmarks, min_confidence=settings.min_confidence)

    def default_goals(self, settings: AlignmentSettings) -> Tuple[PixelPoint, PixelPoint]:
        return default_face_goals(settings)

    def initial_matrix(self, left, right, settings, goal_left, goal_right) -> AlignmentMatrix:
        return calculate_alignment_matrix(left, right, settings, goal_left, goal_right)

    def fallback_landmarks(self, left: LandmarkPoint, right: LandmarkPoint) -> FaceLandmarks:
        nose = LandmarkPoint(x=0.5, y=0.6)
        return FaceLandmarks(
            points=[left, right, nose],
            left_eye_center=left,
            right_eye_center=right,
            nose_tip=nose,
            bounding_box=FULL_FRAME,
            confidence=0.0,
        )


# ============================================================
# BODY
# ============================================================

class BodyAlignmentService(AnatomicalAlignmentService):
    """Aligns body frames on the shoulders."""
    content_label = "body"
    landmarks_kind = "body"
    failure_reason = EarlyStopReason.BODY_DETECTION_FAILED

    def __init__(
        self,
        detector: Optional[BodyPoseDetector] = None,
        image_processor: Optional[ImageProcessor] = None,
        repository: Optional[StorageService] = None,
    ):
        super().__init__(detector or UnavailableBodyPoseDetector(), image_processor, repository)

    def default_settings(self, mode: Optional[StabilizationMode] = None) -> BodyAlignmentSettings:
        mode = mode or StabilizationMode(app_settings.default_stabilization_mode)
        return BodyAlignmentSettings(
            output_size=app_settings.body_output_size,
            stabilization=StabilizationSettings(mode=mode),
        )

    def validate(self, landmarks: BodyLandmarks, settings: BodyAlignmentSettings) -> ValidationResult:
        return BodyAlignmentValidator().validate(landmarks, min_confidence=settings.min_confidence)

    def default_goals(self, settings: BodyAlignmentSettings) -> Tuple[PixelPoint, PixelPoint]:
        return default_body_goals(settings)

    def initial_matrix(self, left, right, settings, goal_left, goal_right) -> AlignmentMatrix:
        return calculate_body_alignment_matrix(left, right, settings, goal_left, goal_right)

    def fallback_landmarks(self, left: LandmarkPoint, right: LandmarkPoint) -> BodyLandmarks:
        return BodyLandmarks(
            keypoints=[],
            left_shoulder=left,
            right_shoulder=right,
            left_hip=LandmarkPoint(x=left.x, y=left.y + 0.25),
            right_hip=LandmarkPoint(x=right.x, y=right.y + 0.25),
            neck_center=LandmarkPoint(x=(left.x + right.x) / 2.0, y=(left.y + right.y) / 2.0 - 0.05),
            bounding_box=FULL_FRAME,
            confidence=0.0,
        )
