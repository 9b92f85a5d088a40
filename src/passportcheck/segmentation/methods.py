"""
Deterministic background classifiers.

Each strategy maps a BGR image to a boolean mask (True = background). They
only look at pixels; the segmenter handles face protection, speckle removal,
alpha ramps and failure detection.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import cv2
import numpy as np

from passportcheck.core.imaging import corner_patches
from passportcheck.core.models import SegmentationMethod


@dataclass(frozen=True)
class BorderSamples:
    """
    Mean colour of the four corner patches and the top strip, in the order
    (top-left, top-right, bottom-left, bottom-right, top-strip).
    """
    bgr: Tuple[Tuple[float, float, float], ...]
    hsv: Tuple[Tuple[float, float, float], ...]
    luma: Tuple[float, ...]

    @classmethod
    def from_image(cls, img_bgr: np.ndarray, fraction: float = 0.06) -> "BorderSamples":
        bgr = []
        for patch in corner_patches(img_bgr, fraction=fraction):
            bgr.append(tuple(float(v) for v in patch.reshape(-1, 3).mean(axis=0)))
        swatch = np.array([bgr], dtype=np.float32).round().clip(0, 255).astype(np.uint8)
        hsv = cv2.cvtColor(swatch, cv2.COLOR_BGR2HSV)[0].astype(float)
        luma = [0.114 * b + 0.587 * g + 0.299 * r for b, g, r in bgr]
        return cls(bgr=tuple(bgr), hsv=tuple(tuple(p) for p in hsv), luma=tuple(luma))

    @property
    def corners_bgr(self) -> Tuple[Tuple[float, float, float], ...]:
        return self.bgr[:4]


def hue_distance(h: np.ndarray, h0: float) -> np.ndarray:
    """Circular distance on OpenCV's 0-179 hue scale."""
    d = np.abs(h.astype(np.float32) - float(h0))
    return np.minimum(d, 180.0 - d)


class Classifier(Protocol):
    method: SegmentationMethod

    def classify(self, img_bgr: np.ndarray, samples: BorderSamples) -> np.ndarray:
        ...


class ChromaKey:
    """
    HSV key against the sampled corner colour.

    Saturated keys (green/blue screens) match on hue distance and minimum
    saturation; neutral keys (white/grey walls) match on low saturation and
    a value band around the key.
    """

    method = SegmentationMethod.CHROMA

    def __init__(
        self,
        hue_tolerance: float = 12.0,
        sat_min: float = 60.0,
        value_tolerance: float = 40.0,
        value_floor: float = 40.0,
    ) -> None:
        self.hue_tolerance = hue_tolerance
        self.sat_min = sat_min
        self.value_tolerance = value_tolerance
        self.value_floor = value_floor

    def key(self, samples: BorderSamples) -> Tuple[float, float, float]:
        hsv = np.array(samples.hsv)
        sats = hsv[:, 1]
        if np.median(sats) >= self.sat_min:
            saturated = hsv[sats >= self.sat_min]
            # Re-centre hues around the first sample so the median respects wrap-around
            ref = saturated[0, 0]
            shifted = (saturated[:, 0] - ref + 90.0) % 180.0 - 90.0
            hue = (ref + float(np.median(shifted))) % 180.0
            return hue, float(np.median(saturated[:, 1])), float(np.median(saturated[:, 2]))
        return 0.0, float(np.median(sats)), float(np.median(hsv[:, 2]))

    def classify(self, img_bgr: np.ndarray, samples: BorderSamples) -> np.ndarray:
        hsv = cv2.cvtColor(np.ascontiguousarray(img_bgr), cv2.COLOR_BGR2HSV)
        h, s, v = hsv[:, :, 0], hsv[:, :, 1].astype(np.float32), hsv[:, :, 2].astype(np.float32)
        key_h, key_s, key_v = self.key(samples)
        if key_s >= self.sat_min:
            return (hue_distance(h, key_h) <= self.hue_tolerance) & (s >= self.sat_min) & (v >= self.value_floor)
        return (s < self.sat_min) & (np.abs(v - key_v) <= self.value_tolerance)


class EdgeFloodFill:
    """
    Canny edge map, dilated to close small gaps, then flood fill from the top
    row and the upper part of both sides. Whatever the fill reaches without
    crossing an edge is background. The bottom edge is never seeded: the
    shoulders run into it.
    """

    method = SegmentationMethod.EDGE

    FILL_VALUE = 128

    def __init__(
        self,
        low_threshold: int = 50,
        high_threshold: int = 150,
        dilate_px: int = 3,
        blur: int = 5,
        seed_depth: float = 0.5,
    ) -> None:
        self.low_threshold = low_threshold
        self.high_threshold = high_threshold
        self.dilate_px = dilate_px
        self.blur = blur
        self.seed_depth = seed_depth

    def edge_map(self, img_bgr: np.ndarray) -> np.ndarray:
        gray = cv2.cvtColor(np.ascontiguousarray(img_bgr), cv2.COLOR_BGR2GRAY)
        if self.blur > 1:
            gray = cv2.GaussianBlur(gray, (self.blur, self.blur), 0)
        edges = cv2.Canny(gray, self.low_threshold, self.high_threshold)
        if self.dilate_px > 1:
            kernel = np.ones((self.dilate_px, self.dilate_px), dtype=np.uint8)
            edges = cv2.dilate(edges, kernel)
        return edges

    def classify(self, img_bgr: np.ndarray, samples: BorderSamples) -> np.ndarray:
        canvas = self.edge_map(img_bgr)
        h, w = canvas.shape
        depth = max(1, int(h * self.seed_depth))
        seeds = (
            [(x, 0) for x in range(w)]
            + [(0, y) for y in range(1, depth)]
            + [(w - 1, y) for y in range(1, depth)]
        )
        for x, y in seeds:
            if canvas[y, x] == 0:
                cv2.floodFill(canvas, None, (x, y), self.FILL_VALUE, flags=4)
        return canvas == self.FILL_VALUE


class LuminanceThreshold:
    """
    Greyscale threshold (Otsu unless a fixed value is given). Polarity comes
    from the corner samples: the side of the threshold the corners fall on is
    background.
    """

    method = SegmentationMethod.LUMINANCE

    def __init__(self, threshold: Optional[float] = None) -> None:
        self.threshold = threshold

    def pick_threshold(self, gray: np.ndarray) -> float:
        if self.threshold is not None:
            return float(self.threshold)
        t, _ = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        return float(t)

    def classify(self, img_bgr: np.ndarray, samples: BorderSamples) -> np.ndarray:
        gray = cv2.cvtColor(np.ascontiguousarray(img_bgr), cv2.COLOR_BGR2GRAY)
        t = self.pick_threshold(gray)
        corner_luma = float(np.median(samples.luma))
        if corner_luma > t:
            return gray > t
        return gray <= t


def create_classifier(method: SegmentationMethod) -> Classifier:
    if method == SegmentationMethod.CHROMA:
        return ChromaKey()
    if method == SegmentationMethod.EDGE:
        return EdgeFloodFill()
    if method == SegmentationMethod.LUMINANCE:
        return LuminanceThreshold()
    raise ValueError(f"No classifier for method '{method}'")
