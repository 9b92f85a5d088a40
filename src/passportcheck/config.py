"""Configuration for the compliance pipeline.

Values come from environment variables (optionally a .env file) and are
validated once; `get_config()` returns the shared instance.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
VALID_DETECTORS = ["mediapipe", "haar"]
VALID_METHODS = ["auto", "chroma", "edge", "luminance"]
VALID_OUTPUT_FORMATS = ["JPEG", "PNG"]


@dataclass(frozen=True)
class Config:
    """Pipeline configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        detector: Face detector backend ("haar" or "mediapipe")
        min_detection_confidence: Minimum confidence for the single face (0.0-1.0)
        max_upscale: Upscaling factor above which a quality warning is raised
        pipeline_timeout: Seconds before a stuck request is aborted
        segmentation_workers: Size of the shared segmentation worker pool
        segmentation_method: Default background method when a request gives none
        output_format: Encoding of the normalized image (JPEG or PNG)
        jpeg_quality: JPEG quality for the normalized image (1-100)
    """

    log_level: str = "INFO"
    detector: str = "haar"
    min_detection_confidence: float = 0.8
    max_upscale: float = 2.0
    pipeline_timeout: float = 5.0
    segmentation_workers: int = max(1, os.cpu_count() or 1)
    segmentation_method: str = "auto"
    output_format: str = "JPEG"
    jpeg_quality: int = 95

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Raises:
            ValueError: If an environment variable holds an invalid value.
        """
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        if log_level not in VALID_LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {VALID_LOG_LEVELS}, got {log_level}")

        detector = os.getenv("DETECTOR", "haar").lower()
        if detector not in VALID_DETECTORS:
            raise ValueError(f"DETECTOR must be one of {VALID_DETECTORS}, got {detector}")

        min_conf = float(os.getenv("MIN_DETECTION_CONFIDENCE", "0.8"))
        if not 0.0 <= min_conf <= 1.0:
            raise ValueError(f"MIN_DETECTION_CONFIDENCE must be between 0.0 and 1.0, got {min_conf}")

        max_upscale = float(os.getenv("MAX_UPSCALE", "2.0"))
        if max_upscale < 1.0:
            raise ValueError(f"MAX_UPSCALE must be >= 1.0, got {max_upscale}")

        timeout = float(os.getenv("PIPELINE_TIMEOUT", "5.0"))
        if timeout <= 0:
            raise ValueError(f"PIPELINE_TIMEOUT must be > 0, got {timeout}")

        workers = int(os.getenv("SEGMENTATION_WORKERS", str(max(1, os.cpu_count() or 1))))
        if workers < 1:
            raise ValueError(f"SEGMENTATION_WORKERS must be >= 1, got {workers}")

        method = os.getenv("SEGMENTATION_METHOD", "auto").lower()
        if method not in VALID_METHODS:
            raise ValueError(f"SEGMENTATION_METHOD must be one of {VALID_METHODS}, got {method}")

        output_format = os.getenv("OUTPUT_FORMAT", "JPEG").upper()
        if output_format == "JPG":
            output_format = "JPEG"
        if output_format not in VALID_OUTPUT_FORMATS:
            raise ValueError(f"OUTPUT_FORMAT must be one of {VALID_OUTPUT_FORMATS}, got {output_format}")

        jpeg_quality = int(os.getenv("JPEG_QUALITY", "95"))
        if not 1 <= jpeg_quality <= 100:
            raise ValueError(f"JPEG_QUALITY must be between 1 and 100, got {jpeg_quality}")

        return cls(
            log_level=log_level,
            detector=detector,
            min_detection_confidence=min_conf,
            max_upscale=max_upscale,
            pipeline_timeout=timeout,
            segmentation_workers=workers,
            segmentation_method=method,
            output_format=output_format,
            jpeg_quality=jpeg_quality,
        )


# Global config instance (lazy-loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get global config instance (loaded from the environment on first use)."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config
