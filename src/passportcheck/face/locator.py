from __future__ import annotations

from typing import List, Optional, Sequence

from passportcheck.core.errors import (
    InternalProcessingError,
    LowConfidenceDetection,
    MultipleFacesDetected,
    NoFaceDetected,
)
from passportcheck.core.models import FaceGeometry, RawImage
from passportcheck.face.detectors import FaceDetector
from passportcheck.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.8


class FaceLocator:
    """
    Find the single face in an upload.

    Exactly one detection at or above `min_confidence` is accepted; anything
    else raises the matching ValidationFailure (NoFaceDetected,
    MultipleFacesDetected, LowConfidenceDetection). A crashing detector is an
    InternalProcessingError.
    """

    def __init__(self, detector: FaceDetector, min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> None:
        if not 0.0 <= min_confidence <= 1.0:
            raise ValueError(f"min_confidence must be in [0, 1], got {min_confidence}")
        self.detector = detector
        self.min_confidence = min_confidence

    def detect_all(self, image: RawImage) -> List[FaceGeometry]:
        try:
            faces = list(self.detector.detect_faces(image.pixels))
        except Exception as e:
            logger.error("Face detector crashed", exc_info=True)
            raise InternalProcessingError(f"Face detector failed: {e}") from e
        logger.debug("Detector returned %d face(s)", len(faces))
        return faces

    def select(self, faces: Sequence[FaceGeometry]) -> FaceGeometry:
        """Apply the exactly-one-confident-face rule to detector output."""
        if not faces:
            raise NoFaceDetected()
        if len(faces) > 1:
            raise MultipleFacesDetected(len(faces))
        face = faces[0]
        if face.confidence < self.min_confidence:
            raise LowConfidenceDetection(face.confidence, self.min_confidence)
        return face

    def locate(self, image: RawImage, detections: Optional[List[FaceGeometry]] = None) -> FaceGeometry:
        """
        Return the one face in `image`.

        `detections`, when given, receives the raw detector output so callers
        can re-validate the face count later.
        """
        faces = self.detect_all(image)
        if detections is not None:
            detections.extend(faces)
        return self.select(faces)
