"""Face detector backends.

A detector is anything with ``detect_faces(image_bgr) -> list[FaceGeometry]``.
The FaceLocator only depends on that capability, so backends can be swapped
without touching the pipeline:

- MediaPipeFaceDetector: MediaPipe face detection (bbox, score, 6 keypoints)
- HaarCascadeFaceDetector: OpenCV Haar cascades, no model download needed
"""

from __future__ import annotations

import math
import threading
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import cv2
import numpy as np

from passportcheck.core.models import BBox, FaceGeometry, Point
from passportcheck.logging_config import get_logger

logger = get_logger(__name__)


@runtime_checkable
class FaceDetector(Protocol):
    """Protocol for face detection backends."""

    def detect_faces(self, image_bgr: np.ndarray) -> List[FaceGeometry]:
        """
        Detect every face in a BGR image.

        Returns an empty list when no face is found. Confidence of each
        FaceGeometry must be in [0, 1].
        """
        ...


class MediaPipeFaceDetector:
    """
    MediaPipe face detection (full-range model).

    Keypoint order from MediaPipe: right eye, left eye, nose tip, mouth
    centre, right ear, left ear (subject's left/right).
    """

    def __init__(self, min_detection_confidence: float = 0.3, model_selection: int = 1) -> None:
        try:
            import mediapipe as mp
        except ImportError as e:
            raise RuntimeError(
                "mediapipe is not installed; install the 'mediapipe' extra or set DETECTOR=haar"
            ) from e

        # Detector threshold stays below the locator threshold so that weak
        # detections are reported as low confidence instead of "no face".
        self._detector = mp.solutions.face_detection.FaceDetection(
            model_selection=model_selection,
            min_detection_confidence=min_detection_confidence,
        )
        # The MediaPipe graph is not re-entrant
        self._lock = threading.Lock()

    def detect_faces(self, image_bgr: np.ndarray) -> List[FaceGeometry]:
        h, w = image_bgr.shape[:2]
        rgb = cv2.cvtColor(np.ascontiguousarray(image_bgr), cv2.COLOR_BGR2RGB)
        with self._lock:
            results = self._detector.process(rgb)
        faces: List[FaceGeometry] = []
        for det in results.detections or []:
            rel = det.location_data.relative_bounding_box
            x1 = max(0.0, rel.xmin * w)
            y1 = max(0.0, rel.ymin * h)
            x2 = min(float(w), (rel.xmin + rel.width) * w)
            y2 = min(float(h), (rel.ymin + rel.height) * h)
            if x2 <= x1 or y2 <= y1:
                continue
            kps = [Point(kp.x * w, kp.y * h) for kp in det.location_data.relative_keypoints]
            score = float(det.score[0]) if det.score else 0.0
            faces.append(
                FaceGeometry(
                    bbox=BBox(x1, y1, x2, y2),
                    confidence=min(1.0, max(0.0, score)),
                    right_eye=kps[0] if len(kps) > 0 else None,
                    left_eye=kps[1] if len(kps) > 1 else None,
                    nose=kps[2] if len(kps) > 2 else None,
                    mouth=kps[3] if len(kps) > 3 else None,
                )
            )
        return faces

    def close(self) -> None:
        self._detector.close()


class HaarCascadeFaceDetector:
    """
    OpenCV Haar cascade detector.

    Confidence is derived from the cascade's level weight, so it is a coarse
    approximation compared to a learned score.
    """

    def __init__(
        self,
        scale_factor: float = 1.1,
        min_neighbors: int = 5,
        min_size: Tuple[int, int] = (60, 60),
        weight_scale: float = 2.0,
    ) -> None:
        self._faces = cv2.CascadeClassifier(cv2.data.haarcascades + "haarcascade_frontalface_default.xml")
        self._eyes = cv2.CascadeClassifier(cv2.data.haarcascades + "haarcascade_eye.xml")
        if self._faces.empty() or self._eyes.empty():
            raise RuntimeError("OpenCV Haar cascade files could not be loaded")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size
        self.weight_scale = weight_scale

    def detect_faces(self, image_bgr: np.ndarray) -> List[FaceGeometry]:
        gray = cv2.cvtColor(np.ascontiguousarray(image_bgr), cv2.COLOR_BGR2GRAY)
        gray = cv2.equalizeHist(gray)
        rects, _levels, weights = self._faces.detectMultiScale3(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=self.min_size,
            outputRejectLevels=True,
        )
        faces: List[FaceGeometry] = []
        for (x, y, fw, fh), weight in zip(rects, np.ravel(weights) if len(rects) else []):
            confidence = 1.0 - math.exp(-max(0.0, float(weight)) / self.weight_scale)
            left, right = self._find_eyes(gray, int(x), int(y), int(fw), int(fh))
            faces.append(
                FaceGeometry(
                    bbox=BBox(float(x), float(y), float(x + fw), float(y + fh)),
                    confidence=confidence,
                    left_eye=left,
                    right_eye=right,
                )
            )
        return faces

    def _find_eyes(self, gray: np.ndarray, x: int, y: int, w: int, h: int) -> Tuple[Optional[Point], Optional[Point]]:
        # Eyes sit in the upper part of the face box
        roi = gray[y:y + int(h * 0.6), x:x + w]
        found = self._eyes.detectMultiScale(roi, scaleFactor=1.1, minNeighbors=5, minSize=(max(8, w // 10), max(8, h // 10)))
        centers = [Point(x + ex + ew / 2.0, y + ey + eh / 2.0) for (ex, ey, ew, eh) in found]
        mid = x + w / 2.0
        image_left = _nearest_to_midline(centers, lambda p: p.x < mid, mid)
        image_right = _nearest_to_midline(centers, lambda p: p.x >= mid, mid)
        # Subject's right eye appears on the image's left side
        return image_right, image_left


def _nearest_to_midline(points: Sequence[Point], pred, mid: float) -> Optional[Point]:
    side = [p for p in points if pred(p)]
    if not side:
        return None
    # Closest to the face midline wins over stray detections near the ears
    return min(side, key=lambda p: abs(p.x - mid))


def create_detector(name: str = "haar") -> FaceDetector:
    """Create a detector backend by name ("mediapipe" or "haar")."""
    name = (name or "").lower()
    if name == "mediapipe":
        logger.debug("Creating MediaPipe face detector")
        return MediaPipeFaceDetector()
    if name == "haar":
        logger.debug("Creating OpenCV Haar cascade face detector")
        return HaarCascadeFaceDetector()
    raise ValueError(f"Unknown detector: '{name}'. Supported detectors: 'mediapipe', 'haar'")
