"""Error taxonomy for the compliance pipeline.

Three families with different propagation rules:

* ``PreconditionError``: the request is rejected before the pipeline starts
  (unknown country, unsupported image format). Raised to the caller.
* ``ValidationFailure``: the photo does not meet a requirement. Caught by the
  pipeline and turned into a non-compliant report; never reaches the caller.
* ``InternalProcessingError``: detector crash, timeout, out of memory. Raised
  to the caller, who may retry once.
"""

from __future__ import annotations

from typing import Optional

from passportcheck.core.models import Category


class PassportCheckError(Exception):
    """Base class. `kind` is the stable name reported to callers."""

    kind = "PassportCheckError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class PreconditionError(PassportCheckError):
    kind = "PreconditionError"


class UnsupportedCountry(PreconditionError):
    kind = "UnsupportedCountry"

    def __init__(self, country_code: str) -> None:
        super().__init__(f"Country '{country_code}' is not supported.")
        self.country_code = country_code


class UnsupportedFormat(PreconditionError):
    kind = "UnsupportedFormat"


class InvalidRequest(PreconditionError):
    """Malformed request payload (missing image, unknown mode or method)."""

    kind = "InvalidRequest"


class ValidationFailure(PassportCheckError):
    kind = "ValidationFailure"
    category: Optional[Category] = None


class FileTooLarge(ValidationFailure):
    kind = "FileTooLarge"
    category = Category.TECHNICAL


class FileTooSmall(ValidationFailure):
    kind = "FileTooSmall"
    category = Category.TECHNICAL


class NoFaceDetected(ValidationFailure):
    kind = "NoFaceDetected"
    category = Category.FACE_COUNT

    def __init__(self, message: str = "No face detected. Use a clear, front-facing photo with good lighting.") -> None:
        super().__init__(message)


class MultipleFacesDetected(ValidationFailure):
    kind = "MultipleFacesDetected"
    category = Category.FACE_COUNT

    def __init__(self, count: int) -> None:
        super().__init__(f"{count} faces detected; the photo must show exactly one person.")
        self.count = count


class LowConfidenceDetection(ValidationFailure):
    kind = "LowConfidenceDetection"
    category = Category.FACE_COUNT

    def __init__(self, confidence: float, threshold: float) -> None:
        super().__init__(
            f"Face detected with confidence {confidence:.2f} (minimum {threshold:.2f}). "
            "The face may be obscured, blurred or turned away."
        )
        self.confidence = confidence
        self.threshold = threshold


class InsufficientMargin(ValidationFailure):
    kind = "InsufficientMargin"
    category = Category.FACE_QUALITY


class SegmentationFailed(ValidationFailure):
    kind = "SegmentationFailed"
    category = Category.BACKGROUND


class ComplianceBelowThreshold(ValidationFailure):
    """Recorded on non-compliant results without a more specific failure. Never raised."""

    kind = "ComplianceBelowThreshold"


class InternalProcessingError(PassportCheckError):
    kind = "InternalProcessingError"
