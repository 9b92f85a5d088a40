"""Shared test helpers: synthetic portraits, stub detectors, relaxed specs.

Synthetic images are small and flat, so the file size, resolution, sharpness
and brightness minimums of the real country table are switched off with
`relaxed()` wherever a test is not about those rules.
"""

import struct
import time
import zlib
from dataclasses import replace
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from passportcheck.app.pipeline import PassportPhotoPipeline
from passportcheck.config import Config
from passportcheck.core.models import BBox, CountrySpec, FaceGeometry, Point
from passportcheck.core.specs import SpecRegistry, default_registry
from passportcheck.face.locator import FaceLocator

# BGR
OFF_WHITE = (245, 245, 245)
GREEN_SCREEN = (0, 255, 0)
SKIN = (90, 110, 160)
JACKET = (70, 60, 50)

# Default 600x600 portrait geometry (x1, y1, x2, y2)
FACE_BOX = (190, 150, 410, 450)
SHOULDERS = (120, 520, 480, 600)


def relaxed(spec: CountrySpec, **overrides) -> CountrySpec:
    values = dict(
        min_file_size=0,
        min_resolution=0,
        min_sharpness=0.0,
        brightness_range=(0.0, 255.0),
    )
    values.update(overrides)
    return replace(spec, **values)


def us_spec(**overrides) -> CountrySpec:
    return relaxed(default_registry().lookup("US"), **overrides)


def draw_portrait(
    height: int = 600,
    width: int = 600,
    background: Tuple[int, int, int] = OFF_WHITE,
    face_box: Tuple[int, int, int, int] = FACE_BOX,
    shoulders: Tuple[int, int, int, int] = SHOULDERS,
    face_color: Tuple[int, int, int] = SKIN,
    shoulder_color: Tuple[int, int, int] = JACKET,
) -> np.ndarray:
    img = np.zeros((height, width, 3), dtype=np.uint8)
    img[:, :] = background
    x1, y1, x2, y2 = shoulders
    cv2.rectangle(img, (x1, y1), (x2 - 1, y2 - 1), shoulder_color, thickness=-1)
    x1, y1, x2, y2 = face_box
    center = ((x1 + x2) // 2, (y1 + y2) // 2)
    axes = ((x2 - x1) // 2, (y2 - y1) // 2)
    cv2.ellipse(img, center, axes, 0, 0, 360, face_color, thickness=-1)
    return img


def face_for(
    box: Tuple[int, int, int, int] = FACE_BOX,
    confidence: float = 0.95,
    eye_frac: Optional[float] = 0.4,
    angle: Optional[float] = None,
) -> FaceGeometry:
    x1, y1, x2, y2 = (float(v) for v in box)
    left = right = None
    if eye_frac is not None:
        eye_y = y1 + eye_frac * (y2 - y1)
        right = Point(x1 + 0.3 * (x2 - x1), eye_y)
        left = Point(x1 + 0.7 * (x2 - x1), eye_y)
    return FaceGeometry(
        bbox=BBox(x1, y1, x2, y2),
        confidence=confidence,
        left_eye=left,
        right_eye=right,
        angle=angle,
    )


def png_bytes(img_bgr: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", img_bgr)
    assert ok
    return buf.tobytes()


def jpeg_bytes(img_bgr: np.ndarray, quality: int = 95) -> bytes:
    ok, buf = cv2.imencode(".jpg", img_bgr, [cv2.IMWRITE_JPEG_QUALITY, quality])
    assert ok
    return buf.tobytes()


def png_header_only(width: int, height: int) -> bytes:
    """A PNG whose IHDR declares `width`x`height` but carries almost no pixel data."""

    def chunk(tag: bytes, body: bytes) -> bytes:
        return struct.pack(">I", len(body)) + tag + body + struct.pack(">I", zlib.crc32(tag + body) & 0xFFFFFFFF)

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", ihdr)
        + chunk(b"IDAT", zlib.compress(b"\x00"))
        + chunk(b"IEND", b"")
    )


class StubDetector:
    """Returns a fixed list of faces; can crash or stall on the first calls."""

    def __init__(self, faces: Sequence[FaceGeometry] = (), fail_times: int = 0, delay: float = 0.0) -> None:
        self.faces = list(faces)
        self.fail_times = fail_times
        self.delay = delay
        self.calls = 0

    def detect_faces(self, image_bgr: np.ndarray):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.calls <= self.fail_times:
            raise RuntimeError("detector crashed")
        return list(self.faces)


def make_pipeline(
    detector,
    spec: Optional[CountrySpec] = None,
    config: Optional[Config] = None,
    **kwargs,
) -> PassportPhotoPipeline:
    registry = SpecRegistry([spec or us_spec()], aliases={"USA": "US"})
    config = config or Config(segmentation_workers=2, pipeline_timeout=30.0, output_format="PNG")
    return PassportPhotoPipeline(
        locator=FaceLocator(detector, min_confidence=config.min_detection_confidence),
        registry=registry,
        config=config,
        **kwargs,
    )
