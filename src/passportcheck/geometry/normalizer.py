"""
Scale and crop the upload so the face matches the country geometry.

The transform is scale + translate only:

    out = s * src + t,   s = face_height * canvas_h / face_box_h

Horizontally the face box centre goes to the canvas centre. Vertically the
face centre and the eye line each have a target row; with one free offset
the least-squares solution is the mean of the two required offsets. Without
eye landmarks only the face centre is used.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

import cv2
import numpy as np

from passportcheck.core.errors import InsufficientMargin
from passportcheck.core.models import BBox, CountrySpec, FaceGeometry, NormalizedImage, RawImage
from passportcheck.logging_config import get_logger

logger = get_logger(__name__)

# Allowed overshoot of the crop past the source edge, in source pixels
EDGE_TOLERANCE_PX = 1.0


@dataclass(frozen=True)
class Transform:
    scale: float
    tx: float
    ty: float
    canvas: Tuple[int, int]

    def source_crop(self) -> BBox:
        """Region of the source image that lands on the canvas."""
        w, h = self.canvas
        return BBox(
            x1=-self.tx / self.scale,
            y1=-self.ty / self.scale,
            x2=(w - self.tx) / self.scale,
            y2=(h - self.ty) / self.scale,
        )


class GeometryNormalizer:
    def __init__(self, max_upscale: float = 2.0) -> None:
        self.max_upscale = max_upscale

    def compute_transform(self, face: FaceGeometry, spec: CountrySpec) -> Transform:
        canvas_w, canvas_h = spec.canvas_size
        target_face_h = spec.face_height * canvas_h
        s = target_face_h / face.bbox.height

        cx, cy = face.bbox.center
        tx = canvas_w / 2.0 - s * cx
        ty = spec.face_center_from_top * canvas_h - s * cy
        eye_y = face.eye_level
        if eye_y is not None:
            ty_eyes = spec.eye_level_from_top * canvas_h - s * eye_y
            ty = (ty + ty_eyes) / 2.0
        return Transform(scale=s, tx=tx, ty=ty, canvas=(canvas_w, canvas_h))

    def normalize(self, image: RawImage, face: FaceGeometry, spec: CountrySpec) -> NormalizedImage:
        """
        Produce the spec-sized canvas.

        Raises InsufficientMargin when the source does not contain the whole
        crop; no pixels are invented to fill the gap.
        """
        t = self.compute_transform(face, spec)
        crop = t.source_crop()
        self._check_margins(crop, image.width, image.height)

        warnings: List[str] = []
        if t.scale > self.max_upscale:
            warnings.append(
                f"Photo was enlarged {t.scale:.1f}x; use a higher-resolution photo for a sharper result."
            )
        if abs(face.angle or 0.0) > spec.max_face_angle:
            warnings.append(f"Head is tilted {face.angle:.1f} degrees (limit {spec.max_face_angle:.0f}).")

        pixels = self._warp(image.pixels, t)
        out_face = face.transformed(t.scale, t.tx, t.ty)
        logger.debug(
            "Normalized to %dx%d (scale %.3f, shift %.1f, %.1f)", t.canvas[0], t.canvas[1], t.scale, t.tx, t.ty
        )
        for w in warnings:
            logger.warning(w)

        return NormalizedImage(
            pixels=pixels,
            dpi=spec.dpi,
            face=out_face,
            scale=t.scale,
            translation=(t.tx, t.ty),
            source_crop=crop,
            warnings=tuple(warnings),
        )

    @staticmethod
    def _check_margins(crop: BBox, width: int, height: int) -> None:
        short = []
        if crop.y1 < -EDGE_TOLERANCE_PX:
            short.append(f"top ({-crop.y1:.0f}px)")
        if crop.y2 > height + EDGE_TOLERANCE_PX:
            short.append(f"bottom ({crop.y2 - height:.0f}px)")
        if crop.x1 < -EDGE_TOLERANCE_PX:
            short.append(f"left ({-crop.x1:.0f}px)")
        if crop.x2 > width + EDGE_TOLERANCE_PX:
            short.append(f"right ({crop.x2 - width:.0f}px)")
        if short:
            raise InsufficientMargin(
                "The photo is cropped too tightly around the head; missing " + ", ".join(short)
                + ". Step back from the camera so head, shoulders and background are visible."
            )

    @staticmethod
    def _warp(src: np.ndarray, t: Transform) -> np.ndarray:
        canvas_w, canvas_h = t.canvas
        if t.scale < 1.0:
            # Area resampling for the downscale, then a near-unit affine for the sub-pixel shift
            h, w = src.shape[:2]
            new_w = max(1, int(round(w * t.scale)))
            new_h = max(1, int(round(h * t.scale)))
            small = cv2.resize(src, (new_w, new_h), interpolation=cv2.INTER_AREA)
            sx = t.scale * w / new_w
            sy = t.scale * h / new_h
            m = np.float32([[sx, 0, t.tx], [0, sy, t.ty]])
            return cv2.warpAffine(
                small, m, (canvas_w, canvas_h), flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE
            )
        m = np.float32([[t.scale, 0, t.tx], [0, t.scale, t.ty]])
        return cv2.warpAffine(
            np.ascontiguousarray(src), m, (canvas_w, canvas_h), flags=cv2.INTER_LANCZOS4, borderMode=cv2.BORDER_REPLICATE
        )
