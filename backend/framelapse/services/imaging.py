"""
Image loading, warping and saving.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import cv2
import numpy as np

from framelapse.config import settings
from framelapse.services.errors import ImageIOError
from framelapse.services.geometry import AlignmentMatrix, HomographyMatrix

logger = logging.getLogger(__name__)


@dataclass
class ImageData:
    """Decoded image pixels (BGR or grayscale)."""
    pixels: np.ndarray
    source_path: Optional[str] = None

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def grayscale(self) -> np.ndarray:
        if self.pixels.ndim == 2:
            return self.pixels
        return cv2.cvtColor(self.pixels, cv2.COLOR_BGR2GRAY)


class ImageProcessor(Protocol):
    """Image load/warp/save backend."""

    def load_image(self, path: str) -> ImageData:
        ...

    def apply_affine_transform(
        self, image: ImageData, matrix: AlignmentMatrix, width: int, height: int
    ) -> ImageData:
        ...

    def apply_homography_transform(
        self, image: ImageData, matrix: HomographyMatrix, width: int, height: int
    ) -> ImageData:
        ...

    def save_image(self, image: ImageData, path: str) -> None:
        ...


class OpenCVImageProcessor:
    """ImageProcessor backed by cv2 codecs and warps."""

    def __init__(self, jpeg_quality: Optional[int] = None):
        self.jpeg_quality = jpeg_quality or settings.aligned_jpeg_quality

    def load_image(self, path: str) -> ImageData:
        """Decode an image file. Raises ImageIOError if it cannot be read."""
        pixels = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if pixels is None:
            raise ImageIOError(
                code="IMAGE_LOAD_FAILED",
                message="Failed to load image",
                details={"path": str(path)},
            )
        return ImageData(pixels=pixels, source_path=str(path))

    def apply_affine_transform(
        self, image: ImageData, matrix: AlignmentMatrix, width: int, height: int
    ) -> ImageData:
        warped = cv2.warpAffine(
            image.pixels,
            matrix.to_array(),
            (width, height),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(0, 0, 0),
        )
        return ImageData(pixels=warped, source_path=image.source_path)

    def apply_homography_transform(
        self, image: ImageData, matrix: HomographyMatrix, width: int, height: int
    ) -> ImageData:
        warped = cv2.warpPerspective(
            image.pixels,
            matrix.to_numpy(),
            (width, height),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(0, 0, 0),
        )
        return ImageData(pixels=warped, source_path=image.source_path)

    def save_image(self, image: ImageData, path: str) -> None:
        """Encode and write an image. Raises ImageIOError on failure."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        params = []
        if target.suffix.lower() in (".jpg", ".jpeg"):
            params = [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality]
        try:
            ok = cv2.imwrite(str(target), image.pixels, params)
        except cv2.error as e:
            raise ImageIOError(
                code="IMAGE_SAVE_FAILED",
                message="Failed to save aligned image",
                details={"path": str(target), "error": str(e)},
            ) from e
        if not ok:
            raise ImageIOError(
                code="IMAGE_SAVE_FAILED",
                message="Failed to save aligned image",
                details={"path": str(target)},
            )
        logger.debug(f"Saved image {target} ({image.width}x{image.height})")
