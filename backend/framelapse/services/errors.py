"""
Error taxonomy for the stabilization pipeline.

Every error carries a machine-readable code, a human-readable message and a
details dict. The HTTP layer maps these onto {"code", "message"} responses.
"""

from typing import List, Optional


class StabilizationError(Exception):
    """Base error for alignment and stabilization failures."""
    def __init__(self, code: str, message: str, details: dict = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class CapabilityUnavailableError(StabilizationError):
    """Detector or matcher is not available in this build."""
    def __init__(self, message: str, details: dict = None):
        super().__init__("CAPABILITY_UNAVAILABLE", message, details)


class ImageIOError(StabilizationError):
    """Image could not be loaded or saved."""
    def __init__(self, code: str, message: str, details: dict = None):
        super().__init__(code, message, details)


class DetectionError(StabilizationError):
    """The detector itself failed while processing an image."""
    def __init__(self, message: str, details: dict = None, code: str = "DETECTION_FAILED"):
        super().__init__(code, message, details)


class NoDetectionError(StabilizationError):
    """The detector ran but found nothing usable."""
    def __init__(self, message: str, details: dict = None, code: str = "NO_DETECTION"):
        super().__init__(code, message, details)


class InsufficientMatchesError(NoDetectionError):
    """Too few keypoints or feature matches to attempt a homography."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, details, code="INSUFFICIENT_MATCHES")


class AlignmentValidationError(StabilizationError):
    """Detected landmarks failed quality validation."""
    def __init__(
        self,
        message: str,
        issues: List[str],
        code: str = "VALIDATION_FAILED",
        details: dict = None,
    ):
        self.issues = list(issues)
        merged = dict(details or {})
        merged["issues"] = self.issues
        super().__init__(code, message, merged)


class DegenerateGeometryError(StabilizationError):
    """Detection succeeded but the computed geometry is unstable."""
    def __init__(self, code: str, message: str, details: dict = None):
        super().__init__(code, message, details)


class InvalidInputError(StabilizationError):
    """Arguments passed to a pipeline step are out of range."""
    def __init__(self, message: str, details: dict = None):
        super().__init__("INVALID_INPUT", message, details)


class NotFoundError(StabilizationError):
    """A project or frame record does not exist."""
    def __init__(self, code: str, message: str, details: dict = None):
        super().__init__(code, message, details)


class ReferenceFrameError(StabilizationError):
    """No usable reference frame for landscape alignment."""
    def __init__(self, code: str, message: str, details: dict = None):
        super().__init__(code, message, details)


class AlignmentCancelledError(StabilizationError):
    """The caller cancelled the run through the progress callback."""
    def __init__(self, message: str = "Alignment cancelled", details: Optional[dict] = None):
        super().__init__("CANCELLED", message, details)
