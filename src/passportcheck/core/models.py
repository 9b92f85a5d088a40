from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple

import numpy as np

MM_PER_INCH = 25.4


def _frozen_array(arr: np.ndarray) -> np.ndarray:
    """Return a read-only view so downstream stages cannot mutate shared buffers."""
    view = arr.view()
    view.flags.writeable = False
    return view


class Category(str, Enum):
    """
    Compliance check categories. Declaration order is the report order.
    """
    TECHNICAL = "technical"
    FACE_COUNT = "face-count"
    FACE_QUALITY = "face-quality"
    BACKGROUND = "background"

    @property
    def weight(self) -> int:
        return CATEGORY_WEIGHTS[self]


CATEGORY_WEIGHTS = {
    Category.TECHNICAL: 20,
    Category.FACE_COUNT: 25,
    Category.FACE_QUALITY: 30,
    Category.BACKGROUND: 25,
}


class SegmentationMethod(str, Enum):
    CHROMA = "chroma"
    EDGE = "edge"
    LUMINANCE = "luminance"
    AUTO = "auto"


class EvaluationMode(str, Enum):
    FAIL_FAST = "fail-fast"
    FULL = "full"


@dataclass(frozen=True)
class CountrySpec:
    """
    Official photo requirements for one country.

    Fractions are relative to the output canvas: face_height is the face box
    height over the canvas height, *_from_top values are measured from the top
    edge. File sizes are in bytes, brightness is mean luma (0-255).
    """
    code: str
    name: str
    width_mm: float
    height_mm: float
    dpi: int
    face_height: float
    eye_level_from_top: float
    face_center_from_top: float
    background_rgb: Tuple[int, int, int] = (255, 255, 255)
    face_height_tolerance: float = 0.06
    eye_level_tolerance: float = 0.06
    face_center_tolerance: float = 0.08
    horizontal_center_tolerance: float = 0.08
    min_top_margin: float = 0.03
    min_side_margin: float = 0.08
    max_face_angle: float = 15.0
    background_tolerance: float = 30.0
    max_background_std: float = 18.0
    min_contrast_ratio: float = 1.25
    min_resolution: int = 600
    min_file_size: int = 10 * 1024
    max_file_size: int = 10 * 1024 * 1024
    min_sharpness: float = 20.0
    brightness_range: Tuple[float, float] = (60.0, 230.0)

    @property
    def width_px(self) -> int:
        return int(round(self.width_mm * self.dpi / MM_PER_INCH))

    @property
    def height_px(self) -> int:
        return int(round(self.height_mm * self.dpi / MM_PER_INCH))

    @property
    def canvas_size(self) -> Tuple[int, int]:
        """(width, height) of the output canvas in pixels."""
        return self.width_px, self.height_px

    @property
    def background_bgr(self) -> Tuple[int, int, int]:
        r, g, b = self.background_rgb
        return b, g, r

    @property
    def background_hex(self) -> str:
        return "#{:02X}{:02X}{:02X}".format(*self.background_rgb)


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def transformed(self, scale: float, tx: float, ty: float) -> "Point":
        return Point(self.x * scale + tx, self.y * scale + ty)


@dataclass(frozen=True)
class BBox:
    """Axis-aligned face box in pixel coordinates (x2/y2 exclusive)."""
    x1: float
    y1: float
    x2: float
    y2: float

    def __post_init__(self) -> None:
        if self.x2 <= self.x1 or self.y2 <= self.y1:
            raise ValueError(f"Degenerate bounding box: {self}")

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x1 + self.x2) / 2.0, (self.y1 + self.y2) / 2.0

    def transformed(self, scale: float, tx: float, ty: float) -> "BBox":
        return BBox(
            x1=self.x1 * scale + tx,
            y1=self.y1 * scale + ty,
            x2=self.x2 * scale + tx,
            y2=self.y2 * scale + ty,
        )

    def to_int(self, width: int, height: int) -> Tuple[int, int, int, int]:
        """Integer box clamped to an image of the given size."""
        x1 = max(0, min(width, int(math.floor(self.x1))))
        y1 = max(0, min(height, int(math.floor(self.y1))))
        x2 = max(0, min(width, int(math.ceil(self.x2))))
        y2 = max(0, min(height, int(math.ceil(self.y2))))
        return x1, y1, x2, y2


@dataclass(frozen=True)
class FaceGeometry:
    """
    One detected face.

    angle:
        In-plane rotation in degrees. When not given by the detector it is
        derived from the eye line (0 = eyes level).
    confidence:
        Detector confidence in [0, 1].
    """
    bbox: BBox
    confidence: float
    left_eye: Optional[Point] = None
    right_eye: Optional[Point] = None
    nose: Optional[Point] = None
    mouth: Optional[Point] = None
    angle: Optional[float] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Detection confidence must be in [0, 1], got {self.confidence}")
        if self.angle is None:
            object.__setattr__(self, "angle", self._eye_line_angle())

    def _eye_line_angle(self) -> float:
        if self.left_eye is None or self.right_eye is None:
            return 0.0
        # Order by x so the angle does not depend on which eye the detector calls "left".
        a, b = sorted((self.left_eye, self.right_eye), key=lambda p: p.x)
        return math.degrees(math.atan2(b.y - a.y, b.x - a.x))

    @property
    def eyes_visible(self) -> bool:
        return self.left_eye is not None and self.right_eye is not None

    @property
    def eye_level(self) -> Optional[float]:
        if not self.eyes_visible:
            return None
        return (self.left_eye.y + self.right_eye.y) / 2.0  # type: ignore[union-attr]

    def transformed(self, scale: float, tx: float, ty: float) -> "FaceGeometry":
        def move(p: Optional[Point]) -> Optional[Point]:
            return None if p is None else p.transformed(scale, tx, ty)

        return replace(
            self,
            bbox=self.bbox.transformed(scale, tx, ty),
            left_eye=move(self.left_eye),
            right_eye=move(self.right_eye),
            nose=move(self.nose),
            mouth=move(self.mouth),
        )


@dataclass(frozen=True)
class RawImage:
    """
    Decoded upload. `pixels` is a read-only BGR uint8 array; `data` keeps the
    original encoded bytes for the file size checks.
    """
    data: bytes
    pixels: np.ndarray
    source_format: str
    mime_type: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "pixels", _frozen_array(self.pixels))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])

    @property
    def file_size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class NormalizedImage:
    """
    Canvas at the country's pixel size with the face re-expressed in output
    coordinates. `source_crop` is the region of the source that was mapped
    onto the canvas.
    """
    pixels: np.ndarray
    dpi: int
    face: FaceGeometry
    scale: float
    translation: Tuple[float, float]
    source_crop: BBox
    warnings: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "pixels", _frozen_array(self.pixels))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


@dataclass(frozen=True)
class SegmentationResult:
    """
    mask:
        True where a pixel is background. Always the size of the source image.
    alpha:
        Subject opacity in [0, 1] used for compositing (soft edge).
    confidence:
        Share of corner samples classified as background.
    uniformity:
        Std-dev of the source background pixels (lower = more uniform).
    """
    mask: np.ndarray
    alpha: np.ndarray
    method: SegmentationMethod
    confidence: float
    uniformity: float

    def __post_init__(self) -> None:
        if self.mask.shape != self.alpha.shape:
            raise ValueError(f"Mask {self.mask.shape} and alpha {self.alpha.shape} differ in size")
        object.__setattr__(self, "mask", _frozen_array(self.mask))
        object.__setattr__(self, "alpha", _frozen_array(self.alpha))

    @property
    def background_ratio(self) -> float:
        return float(self.mask.mean()) if self.mask.size else 0.0


@dataclass(frozen=True)
class SegmentedImage:
    """
    Image with the background replaced by the country colour.

    `original` is the image the mask was computed from (same size as `pixels`).
    """
    pixels: np.ndarray
    original: np.ndarray = field(repr=False)
    segmentation: SegmentationResult

    def __post_init__(self) -> None:
        if self.segmentation.mask.shape != self.original.shape[:2]:
            raise ValueError("Segmentation mask does not match the image it was computed from")
        if self.pixels.shape != self.original.shape:
            raise ValueError("Composited image does not match its source size")
        object.__setattr__(self, "pixels", _frozen_array(self.pixels))
        object.__setattr__(self, "original", _frozen_array(self.original))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])
