"""
Pipeline orchestrator.

    RECEIVED -> TECHNICAL_CHECKED -> FACE_LOCATED -> NORMALIZED -> SEGMENTED
             -> SCORED -> COMPLIANT | NON_COMPLIANT | FAILED

The technical check only needs the upload, so it runs on a side thread while
the face is located and the geometry normalized. Segmentation runs on a
bounded pool shared by all requests. The four checks fan out in the
evaluator. All waiting is bounded by one per-request deadline.

Validation failures end in NON_COMPLIANT with a report (partial in
fail-fast mode). Pre-condition errors are raised before any work starts;
internal errors are raised as InternalProcessingError.
"""

from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from passportcheck.app.state import RequestState, Stage
from passportcheck.config import Config, get_config
from passportcheck.core.errors import (
    ComplianceBelowThreshold,
    InternalProcessingError,
    InvalidRequest,
    PassportCheckError,
    PreconditionError,
    ValidationFailure,
)
from passportcheck.core.imaging import decode_image_bytes, encode_image
from passportcheck.core.models import Category, EvaluationMode, SegmentationMethod
from passportcheck.core.specs import SpecRegistry, default_registry
from passportcheck.face.detectors import create_detector
from passportcheck.face.locator import FaceLocator
from passportcheck.geometry.normalizer import GeometryNormalizer
from passportcheck.logging_config import get_logger
from passportcheck.segmentation.segmenter import BackgroundSegmenter
from passportcheck.validation.checks import EvaluationInput
from passportcheck.validation.evaluator import ComplianceEvaluator
from passportcheck.validation.report import ComplianceReport

logger = get_logger(__name__)


@dataclass(frozen=True)
class PipelineRequest:
    image_bytes: bytes = field(repr=False)
    mime_type: str
    country_code: str
    mode: EvaluationMode = EvaluationMode.FULL
    segmentation_method: Optional[SegmentationMethod] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PipelineRequest":
        """
        Build a request from the upload layer's payload:
        {imageBytes, mimeType, countryCode, segmentationMethod?, mode}.
        """
        image = payload.get("imageBytes")
        if not isinstance(image, (bytes, bytearray)) or not image:
            raise InvalidRequest("imageBytes must be non-empty binary data.")
        mime = payload.get("mimeType")
        if not isinstance(mime, str):
            raise InvalidRequest("mimeType is required.")
        country = payload.get("countryCode")
        if not isinstance(country, str) or not country.strip():
            raise InvalidRequest("countryCode is required.")

        try:
            mode = EvaluationMode(payload.get("mode") or EvaluationMode.FULL.value)
        except ValueError:
            raise InvalidRequest(
                f"mode must be one of {[m.value for m in EvaluationMode]}, got {payload.get('mode')!r}"
            ) from None

        method = None
        if payload.get("segmentationMethod") is not None:
            try:
                method = SegmentationMethod(payload["segmentationMethod"])
            except ValueError:
                raise InvalidRequest(
                    f"segmentationMethod must be one of {[m.value for m in SegmentationMethod]}, "
                    f"got {payload['segmentationMethod']!r}"
                ) from None

        return cls(
            image_bytes=bytes(image),
            mime_type=mime,
            country_code=country,
            mode=mode,
            segmentation_method=method,
        )


@dataclass(frozen=True)
class PipelineResult:
    """
    Outcome of one request that reached a verdict.

    `image_bytes` is None when no compliant-shaped image could be produced
    (no face, margins too tight, background not separable).
    """
    stage: Stage
    report: ComplianceReport
    image_bytes: Optional[bytes] = field(default=None, repr=False)
    width: Optional[int] = None
    height: Optional[int] = None
    dpi: Optional[int] = None
    warnings: Tuple[str, ...] = ()
    failures: Tuple[ValidationFailure, ...] = ()
    history: Tuple[Stage, ...] = ()

    @property
    def compliant(self) -> bool:
        return self.stage == Stage.COMPLIANT

    @property
    def error_kinds(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(f.kind for f in self.failures))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "normalizedImageBytes": self.image_bytes,
            "metadata": {"width": self.width, "height": self.height, "dpi": self.dpi},
            "report": self.report.to_dict(),
        }


class PassportPhotoPipeline:
    """
    Sequences FaceLocator -> GeometryNormalizer -> BackgroundSegmenter ->
    ComplianceEvaluator for one request at a time. Instances are safe to share
    between threads: per-request data lives in a RequestState.
    """

    def __init__(
        self,
        locator: FaceLocator,
        normalizer: Optional[GeometryNormalizer] = None,
        segmenter: Optional[BackgroundSegmenter] = None,
        evaluator: Optional[ComplianceEvaluator] = None,
        registry: Optional[SpecRegistry] = None,
        config: Optional[Config] = None,
    ) -> None:
        self.config = config or get_config()
        self.locator = locator
        self.normalizer = normalizer or GeometryNormalizer(max_upscale=self.config.max_upscale)
        self.segmenter = segmenter or BackgroundSegmenter()
        self.evaluator = evaluator or ComplianceEvaluator()
        self.registry = registry or default_registry()
        self.timeout = self.config.pipeline_timeout
        self._segmentation_pool = ThreadPoolExecutor(
            max_workers=self.config.segmentation_workers, thread_name_prefix="segment"
        )

    @classmethod
    def from_config(cls, config: Optional[Config] = None, detector_name: Optional[str] = None) -> "PassportPhotoPipeline":
        config = config or get_config()
        detector = create_detector(detector_name or config.detector)
        locator = FaceLocator(detector, min_confidence=config.min_detection_confidence)
        return cls(locator=locator, config=config)

    def close(self) -> None:
        self._segmentation_pool.shutdown(wait=True)

    def __enter__(self) -> "PassportPhotoPipeline":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ---------- entry points ----------

    def process(self, request: PipelineRequest) -> PipelineResult:
        """
        Run one request to a verdict.

        Raises:
            PreconditionError: unknown country or unsupported image format.
            InternalProcessingError: detector crash, timeout or other internal fault.
        """
        spec = self.registry.lookup(request.country_code)
        raw = decode_image_bytes(request.image_bytes, request.mime_type)
        method = request.segmentation_method or SegmentationMethod(self.config.segmentation_method)

        state = RequestState(spec=spec, raw=raw, mode=request.mode, method=method)
        deadline = time.monotonic() + self.timeout
        logger.info(
            "Processing %dx%d %s for %s (%s, %s)",
            raw.width, raw.height, raw.source_format, spec.code, request.mode.value, method.value,
        )

        try:
            return self._run(state, deadline)
        except InternalProcessingError:
            state.advance(Stage.FAILED)
            raise
        except PassportCheckError:
            raise
        except Exception as e:
            logger.error("Unexpected error while processing request", exc_info=True)
            state.advance(Stage.FAILED)
            raise InternalProcessingError(f"Internal processing error: {e}") from e

    def process_with_retry(self, request: PipelineRequest, retries: int = 1) -> PipelineResult:
        """Retry InternalProcessingError `retries` times with the original upload."""
        attempt = 0
        while True:
            try:
                return self.process(request)
            except InternalProcessingError as e:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.warning("Retrying after internal error (%s), attempt %d", e.message, attempt + 1)

    # ---------- stages ----------

    def _run(self, state: RequestState, deadline: float) -> PipelineResult:
        spec, raw = state.spec, state.raw

        aux = ThreadPoolExecutor(max_workers=2, thread_name_prefix="request")
        try:
            technical = aux.submit(
                self.evaluator.run_check, Category.TECHNICAL, self._snapshot(state)
            )
            located = aux.submit(self._locate_and_normalize, state)
            self._join(located, deadline, "Face detection")
            state.checks[Category.TECHNICAL] = self._join(technical, deadline, "Technical check")
        finally:
            aux.shutdown(wait=False, cancel_futures=True)

        state.advance(Stage.TECHNICAL_CHECKED)
        if state.fail_fast and not state.checks[Category.TECHNICAL].valid:
            return self._finish_partial(state)

        if state.face is None:
            if state.fail_fast:
                self._add_checks(state, (Category.FACE_COUNT,), deadline)
                return self._finish_partial(state)
        else:
            state.advance(Stage.FACE_LOCATED)

        if state.normalized is not None:
            state.advance(Stage.NORMALIZED)
        elif state.fail_fast:
            self._add_checks(state, (Category.FACE_COUNT, Category.FACE_QUALITY), deadline)
            return self._finish_partial(state)

        self._segment(state, deadline)
        if state.segmented is not None:
            state.advance(Stage.SEGMENTED)

        report = self.evaluator.evaluate(
            self._snapshot(state), known=state.checks, timeout=self._remaining(deadline)
        )
        state.report = report
        state.advance(Stage.SCORED)
        return self._finish(state)

    def _locate_and_normalize(self, state: RequestState) -> None:
        detections: List = []
        try:
            face = self.locator.locate(state.raw, detections)
        except ValidationFailure as f:
            state.detections = tuple(detections)
            self._record(state, f)
            return
        state.detections = tuple(detections)
        state.face = face
        logger.debug("Face located at %s (confidence %.2f)", face.bbox, face.confidence)

        try:
            state.normalized = self.normalizer.normalize(state.raw, face, state.spec)
        except ValidationFailure as f:
            self._record(state, f)

    def _segment(self, state: RequestState, deadline: float) -> None:
        # Without a normalized canvas the background is judged on the upload
        # itself so full mode can still report on it; no image is produced then.
        if state.normalized is not None:
            pixels, face_box = state.normalized.pixels, state.normalized.face.bbox
        else:
            pixels, face_box = state.raw.pixels, (state.face.bbox if state.face is not None else None)

        fut = self._segmentation_pool.submit(
            self.segmenter.apply, pixels, state.spec, state.method, face_box
        )
        try:
            segmented = self._join(fut, deadline, "Segmentation")
        except ValidationFailure as f:
            self._record(state, f)
            return
        state.segmented = segmented

    def _add_checks(self, state: RequestState, categories: Tuple[Category, ...], deadline: float) -> None:
        state.checks.update(
            self.evaluator.run_checks(
                self._snapshot(state), categories, known=state.checks, timeout=self._remaining(deadline)
            )
        )

    # ---------- results ----------

    def _finish_partial(self, state: RequestState) -> PipelineResult:
        state.report = ComplianceReport.assemble(state.checks.values())
        return self._finish(state)

    def _finish(self, state: RequestState) -> PipelineResult:
        report = state.report
        assert report is not None

        image_bytes = width = height = dpi = None
        if state.segmented is not None and state.normalized is not None:
            image_bytes = encode_image(
                state.segmented.pixels,
                fmt=self.config.output_format,
                dpi=state.spec.dpi,
                quality=self.config.jpeg_quality,
            )
            width, height, dpi = state.segmented.width, state.segmented.height, state.spec.dpi

        failures = list(state.failures)
        if not report.compliant and not failures:
            failing = ", ".join(c.category.value for c in report.checks if not c.valid)
            failures.append(ComplianceBelowThreshold(f"Failed checks: {failing or 'incomplete evaluation'}"))

        state.advance(Stage.COMPLIANT if report.compliant else Stage.NON_COMPLIANT)
        warnings = state.normalized.warnings if state.normalized is not None else ()
        logger.info(
            "Request finished: %s, score %.0f%s",
            state.stage.value,
            report.score,
            f" ({', '.join(f.kind for f in failures)})" if failures else "",
        )
        return PipelineResult(
            stage=state.stage,
            report=report,
            image_bytes=image_bytes,
            width=width,
            height=height,
            dpi=dpi,
            warnings=tuple(warnings),
            failures=tuple(failures),
            history=tuple(state.history),
        )

    # ---------- helpers ----------

    def _snapshot(self, state: RequestState) -> EvaluationInput:
        return EvaluationInput(
            spec=state.spec,
            raw=state.raw,
            min_confidence=self.locator.min_confidence,
            detections=state.detections,
            face=state.face,
            normalized=state.normalized,
            segmented=state.segmented,
            failures=tuple(state.failures),
        )

    @staticmethod
    def _record(state: RequestState, failure: ValidationFailure) -> None:
        logger.info("%s: %s", failure.kind, failure.message)
        state.record_failure(failure)

    def _remaining(self, deadline: float) -> float:
        return max(0.0, deadline - time.monotonic())

    def _join(self, fut: Future, deadline: float, what: str) -> Any:
        try:
            return fut.result(timeout=self._remaining(deadline))
        except FuturesTimeout:
            if not fut.cancel():
                # Python threads cannot be interrupted; the worker finishes on its own.
                logger.warning("%s is still running after the request was abandoned", what)
            logger.error("%s timed out after %.1fs", what, self.timeout)
            raise InternalProcessingError(f"{what} timed out after {self.timeout:.1f}s") from None


def handle_request(payload: Mapping[str, Any], pipeline: PassportPhotoPipeline) -> Dict[str, Any]:
    """
    Request/response contract for the upload layer.

    Returns {normalizedImageBytes, metadata, report} when a verdict was
    reached, otherwise {errorKind, message}. Internal errors are retried once.
    """
    try:
        request = PipelineRequest.from_dict(payload)
        return pipeline.process_with_retry(request, retries=1).to_dict()
    except (PreconditionError, InternalProcessingError) as e:
        return {"errorKind": e.kind, "message": e.message}
