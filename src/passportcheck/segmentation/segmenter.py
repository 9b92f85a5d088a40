from __future__ import annotations

from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from passportcheck.core.errors import SegmentationFailed
from passportcheck.core.models import BBox, CountrySpec, SegmentationMethod, SegmentationResult, SegmentedImage
from passportcheck.logging_config import get_logger
from passportcheck.segmentation.methods import BorderSamples, Classifier, create_classifier

logger = get_logger(__name__)


class BackgroundSegmenter:
    """
    Split an image into subject and background and paint the background with
    the country colour.

    Method selection (when `auto`) looks at the corner patches and the top
    strip:
      - mostly saturated with one hue    -> chroma key
      - mostly neutral with even brightness -> luminance threshold
      - anything else                    -> edge flood fill

    Raises SegmentationFailed when the top corners are not background or the
    background is not uniform enough to be replaced.
    """

    def __init__(
        self,
        classifiers: Optional[Dict[SegmentationMethod, Classifier]] = None,
        sample_fraction: float = 0.06,
        min_corner_agreement: float = 0.8,
        chroma_sat_min: float = 60.0,
        neutral_sat_max: float = 40.0,
        hue_spread_max: float = 15.0,
        value_spread_max: float = 40.0,
        open_kernel: int = 3,
        ramp_kernel: int = 5,
    ) -> None:
        self.classifiers = {
            m: create_classifier(m)
            for m in (SegmentationMethod.CHROMA, SegmentationMethod.EDGE, SegmentationMethod.LUMINANCE)
        }
        self.classifiers.update(classifiers or {})
        self.sample_fraction = sample_fraction
        self.min_corner_agreement = min_corner_agreement
        self.chroma_sat_min = chroma_sat_min
        self.neutral_sat_max = neutral_sat_max
        self.hue_spread_max = hue_spread_max
        self.value_spread_max = value_spread_max
        self.open_kernel = open_kernel
        self.ramp_kernel = ramp_kernel

    def classifier(self, method: SegmentationMethod) -> Classifier:
        try:
            return self.classifiers[method]
        except KeyError:
            raise ValueError(f"No classifier registered for '{method}'") from None

    # ---------- method selection ----------

    def select_method(self, samples: BorderSamples) -> SegmentationMethod:
        hsv = np.array(samples.hsv)
        hues, sats, vals = hsv[:, 0], hsv[:, 1], hsv[:, 2]
        majority = (len(hsv) // 2) + 1

        saturated = sats >= self.chroma_sat_min
        if saturated.sum() >= majority and _hue_spread(hues[saturated]) <= self.hue_spread_max:
            return SegmentationMethod.CHROMA

        neutral = sats <= self.neutral_sat_max
        if neutral.sum() >= majority and float(np.ptp(vals[neutral])) <= self.value_spread_max:
            return SegmentationMethod.LUMINANCE

        return SegmentationMethod.EDGE

    # ---------- segmentation ----------

    def segment(
        self,
        img_bgr: np.ndarray,
        spec: CountrySpec,
        method: SegmentationMethod = SegmentationMethod.AUTO,
        face_box: Optional[BBox] = None,
    ) -> SegmentationResult:
        samples = BorderSamples.from_image(img_bgr, fraction=self.sample_fraction)
        if method == SegmentationMethod.AUTO:
            method = self.select_method(samples)
            logger.debug("Auto-selected %s segmentation", method.value)

        mask = np.asarray(self.classifier(method).classify(img_bgr, samples), dtype=bool)
        if mask.shape != img_bgr.shape[:2]:
            raise ValueError(f"{method.value} classifier returned a {mask.shape} mask for a {img_bgr.shape[:2]} image")

        face_slice = self._face_slice(face_box, img_bgr.shape)
        mask = self._clean(mask, face_slice)

        confidence, corner_fractions = self._corner_agreement(mask)
        top_left, top_right = corner_fractions[0], corner_fractions[1]
        if min(top_left, top_right) < self.min_corner_agreement:
            raise SegmentationFailed(
                f"Background could not be separated from the subject ({method.value}: "
                f"top corners {top_left:.0%}/{top_right:.0%} background). Use a plain, evenly lit wall."
            )

        bg_pixels = img_bgr[mask].reshape(-1, 3).astype(np.float32)
        uniformity = float(bg_pixels.std(axis=0).mean()) if len(bg_pixels) else float("inf")
        if uniformity > spec.max_background_std:
            raise SegmentationFailed(
                f"Background is not uniform (variation {uniformity:.1f}, limit {spec.max_background_std:.1f}). "
                "Use a plain wall without patterns or shadows."
            )

        alpha = self._alpha(mask, face_slice)
        logger.debug(
            "Segmented with %s: %.1f%% background, uniformity %.1f", method.value, 100.0 * mask.mean(), uniformity
        )
        return SegmentationResult(
            mask=mask, alpha=alpha, method=method, confidence=confidence, uniformity=uniformity
        )

    def apply(
        self,
        img_bgr: np.ndarray,
        spec: CountrySpec,
        method: SegmentationMethod = SegmentationMethod.AUTO,
        face_box: Optional[BBox] = None,
    ) -> SegmentedImage:
        """Segment and composite the spec's background colour."""
        result = self.segment(img_bgr, spec, method=method, face_box=face_box)
        pixels = composite(img_bgr, result.alpha, spec.background_bgr)
        return SegmentedImage(pixels=pixels, original=img_bgr, segmentation=result)

    # ---------- helpers ----------

    @staticmethod
    def _face_slice(face_box: Optional[BBox], shape: Tuple[int, ...]) -> Optional[Tuple[slice, slice]]:
        if face_box is None:
            return None
        x1, y1, x2, y2 = face_box.to_int(shape[1], shape[0])
        if x2 <= x1 or y2 <= y1:
            return None
        return slice(y1, y2), slice(x1, x2)

    def _clean(self, mask: np.ndarray, face_slice: Optional[Tuple[slice, slice]]) -> np.ndarray:
        mask = mask.copy()
        if face_slice is not None:
            mask[face_slice] = False
        kernel = np.ones((self.open_kernel, self.open_kernel), dtype=np.uint8)
        # Open the subject mask (drops specks in the background), then the
        # background mask (drops specks inside the subject).
        subject = cv2.morphologyEx((~mask).astype(np.uint8), cv2.MORPH_OPEN, kernel)
        background = cv2.morphologyEx((subject == 0).astype(np.uint8), cv2.MORPH_OPEN, kernel)
        mask = background.astype(bool)
        if face_slice is not None:
            mask[face_slice] = False
        return mask

    def _corner_agreement(self, mask: np.ndarray) -> Tuple[float, Tuple[float, ...]]:
        h, w = mask.shape
        m = max(4, int(round(min(h, w) * self.sample_fraction)))
        m = max(1, min(m, h // 2, w // 2))
        corners = (mask[:m, :m], mask[:m, w - m:], mask[h - m:, :m], mask[h - m:, w - m:])
        fractions = tuple(float(c.mean()) for c in corners)
        return float(np.mean(fractions)), fractions

    def _alpha(self, mask: np.ndarray, face_slice: Optional[Tuple[slice, slice]]) -> np.ndarray:
        subject = (~mask).astype(np.float32)
        k = self.ramp_kernel
        alpha = cv2.GaussianBlur(subject, (k, k), 0) if k > 1 else subject
        if face_slice is not None:
            alpha[face_slice] = 1.0
        return np.clip(alpha, 0.0, 1.0)


def composite(img_bgr: np.ndarray, alpha: np.ndarray, color_bgr: Tuple[int, int, int]) -> np.ndarray:
    a = alpha.astype(np.float32)[:, :, None]
    bg = np.array(color_bgr, dtype=np.float32)[None, None, :]
    out = a * img_bgr.astype(np.float32) + (1.0 - a) * bg
    return np.clip(np.round(out), 0, 255).astype(np.uint8)


def _hue_spread(hues: np.ndarray) -> float:
    """Largest circular distance between any hue and the first one (0-179 scale)."""
    if len(hues) == 0:
        return 180.0
    d = np.abs(hues - hues[0])
    d = np.minimum(d, 180.0 - d)
    return float(d.max())
