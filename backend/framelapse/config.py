"""
Application configuration settings.
"""

from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # API Settings
    api_v1_prefix: str = "/api/v1"
    debug: bool = False

    # File Storage
    data_dir: Path = Path("./data")

    # Aligned output encoding
    aligned_image_extension: str = "jpg"
    aligned_jpeg_quality: int = 95

    # ============================================================
    # STABILIZATION DEFAULTS
    # ============================================================

    # --- Mode ---
    # FAST: up to 4 translation passes; SLOW: rotation/scale/translation stages
    default_stabilization_mode: str = "FAST"

    # --- Output canvas ---
    face_output_size: int = 512       # Square canvas for face frames (px)
    body_output_size: int = 512       # Square canvas for body frames (px)
    landscape_output_size: int = 1080  # Square canvas for landscape frames (px)

    # --- Face detection (OpenCV Haar cascades) ---
    face_cascade_file: str = "haarcascade_frontalface_default.xml"
    eye_cascade_file: str = "haarcascade_eye.xml"
    face_min_size_px: int = 48        # Smallest face the cascade will report
    face_scale_factor: float = 1.1
    face_min_neighbors: int = 5

    # --- Landscape features ---
    feature_detector: str = "ORB"     # ORB or AKAZE
    feature_max_keypoints: int = 500

    # ============================================================
    # BATCH PROCESSING
    # ============================================================

    # Worker threads for whole-project alignment
    batch_workers: int = 4

    @property
    def projects_dir(self) -> Path:
        return self.data_dir / "projects"

    class Config:
        env_prefix = "FRAMELAPSE_"
        env_file = ".env"
        extra = "ignore"


# Global settings instance
settings = Settings()
