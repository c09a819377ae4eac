"""
Stabilization and alignment services.
"""

from framelapse.services.geometry import AlignmentMatrix, HomographyMatrix, PixelPoint
from framelapse.services.errors import StabilizationError
from framelapse.services.imaging import ImageData, OpenCVImageProcessor
from framelapse.services.detection import HaarFaceDetector
from framelapse.services.features import OpenCVFeatureMatcher
from framelapse.services.landscape import LandscapeFeatureService
from framelapse.services.stabilization import MultiPassStabilizer
from framelapse.services.landscape_stabilization import MultiPassLandscapeStabilizer
from framelapse.services.reference_cache import ReferenceLandmarkCache
from framelapse.services.storage import StorageService
from framelapse.services.alignment import FaceAlignmentService, BodyAlignmentService
from framelapse.services.landscape_alignment import LandscapeAlignmentService
from framelapse.services.content_alignment import (
    ContentAlignmentService,
    BatchAlignmentResult,
    alignment_service,
)

__all__ = [
    "AlignmentMatrix",
    "HomographyMatrix",
    "PixelPoint",
    "StabilizationError",
    "ImageData",
    "OpenCVImageProcessor",
    "HaarFaceDetector",
    "OpenCVFeatureMatcher",
    "LandscapeFeatureService",
    "MultiPassStabilizer",
    "MultiPassLandscapeStabilizer",
    "ReferenceLandmarkCache",
    "StorageService",
    "FaceAlignmentService",
    "BodyAlignmentService",
    "LandscapeAlignmentService",
    "ContentAlignmentService",
    "BatchAlignmentResult",
    "alignment_service",
]
