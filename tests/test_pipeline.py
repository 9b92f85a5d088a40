import io
import time
import unittest

import cv2
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

from PIL import Image

from tests._fixtures import (
    StubDetector,
    draw_portrait,
    face_for,
    make_pipeline,
    png_bytes,
    png_header_only,
)

from passportcheck.app.pipeline import PipelineRequest, handle_request
from passportcheck.app.state import Stage
from passportcheck.config import Config
from passportcheck.core.errors import (
    InternalProcessingError,
    InvalidRequest,
    SegmentationFailed,
    UnsupportedCountry,
    UnsupportedFormat,
)
from passportcheck.core.models import Category, EvaluationMode, SegmentationMethod
from passportcheck.segmentation.segmenter import BackgroundSegmenter


def _request(mode=EvaluationMode.FULL, country="US", **kwargs):
    return PipelineRequest(
        image_bytes=png_bytes(draw_portrait()),
        mime_type="image/png",
        country_code=country,
        mode=mode,
        **kwargs,
    )


class TestPipelineCompliant(unittest.TestCase):
    def setUp(self):
        self.detector = StubDetector([face_for()])
        self.pipeline = make_pipeline(self.detector)
        self.addCleanup(self.pipeline.close)

    def test_well_framed_portrait_is_compliant(self):
        result = self.pipeline.process(_request())

        self.assertTrue(result.compliant, result.report.to_dict())
        self.assertEqual(result.stage, Stage.COMPLIANT)
        self.assertEqual(
            list(result.history),
            [
                Stage.RECEIVED,
                Stage.TECHNICAL_CHECKED,
                Stage.FACE_LOCATED,
                Stage.NORMALIZED,
                Stage.SEGMENTED,
                Stage.SCORED,
                Stage.COMPLIANT,
            ],
        )
        self.assertEqual([c.category for c in result.report.checks], list(Category))
        self.assertEqual(result.report.score, 100.0)
        self.assertEqual(result.failures, ())

    def test_output_image_has_country_canvas_size(self):
        result = self.pipeline.process(_request())

        self.assertIsNotNone(result.image_bytes)
        with Image.open(io.BytesIO(result.image_bytes)) as img:
            self.assertEqual(img.size, (602, 602))
        self.assertEqual(result.to_dict()["metadata"], {"width": 602, "height": 602, "dpi": 300})

    def test_background_is_replaced_with_country_colour(self):
        result = self.pipeline.process(_request())

        with Image.open(io.BytesIO(result.image_bytes)) as img:
            self.assertEqual(img.convert("RGB").getpixel((5, 5)), (255, 255, 255))

    def test_country_alias_and_case_are_accepted(self):
        result = self.pipeline.process(_request(country="usa"))
        self.assertTrue(result.compliant)

    def test_explicit_segmentation_method(self):
        result = self.pipeline.process(_request(segmentation_method=SegmentationMethod.LUMINANCE))
        self.assertTrue(result.compliant)

    def test_reports_are_identical_across_runs_and_threads(self):
        request = _request()
        first = self.pipeline.process(request).report.to_json()

        with ThreadPoolExecutor(max_workers=4) as pool:
            reports = list(pool.map(lambda _: self.pipeline.process(request).report.to_json(), range(4)))

        for r in reports:
            self.assertEqual(r, first)


class TestPipelineFaceFailures(unittest.TestCase):
    def _run(self, faces, mode=EvaluationMode.FULL):
        pipeline = make_pipeline(StubDetector(faces))
        self.addCleanup(pipeline.close)
        return pipeline.process(_request(mode=mode))

    def test_no_face_full_mode_reports_every_category(self):
        result = self._run([])

        self.assertEqual(result.stage, Stage.NON_COMPLIANT)
        self.assertEqual(len(result.report.checks), 4)
        self.assertTrue(result.report.check(Category.TECHNICAL).valid)
        self.assertFalse(result.report.check(Category.FACE_COUNT).valid)
        self.assertFalse(result.report.check(Category.FACE_QUALITY).valid)
        self.assertIn("NoFaceDetected", result.error_kinds)
        self.assertIsNone(result.image_bytes)
        self.assertNotIn(Stage.FACE_LOCATED, result.history)

    def test_no_face_fail_fast_stops_after_face_count(self):
        result = self._run([], mode=EvaluationMode.FAIL_FAST)

        self.assertEqual(result.stage, Stage.NON_COMPLIANT)
        self.assertEqual(
            [c.category for c in result.report.checks],
            [Category.TECHNICAL, Category.FACE_COUNT],
        )
        self.assertFalse(result.report.compliant)
        self.assertEqual(list(result.history), [Stage.RECEIVED, Stage.TECHNICAL_CHECKED, Stage.NON_COMPLIANT])

    def test_multiple_faces(self):
        result = self._run([face_for(), face_for((20, 20, 120, 140))])

        self.assertFalse(result.compliant)
        self.assertIn("MultipleFacesDetected", result.error_kinds)
        self.assertIn("MultipleFacesDetected", result.report.check(Category.FACE_COUNT).issues)

    def test_low_confidence_face(self):
        result = self._run([face_for(confidence=0.79)])

        self.assertFalse(result.compliant)
        self.assertIn("LowConfidenceDetection", result.error_kinds)
        self.assertIn("LowConfidenceDetection", result.report.check(Category.FACE_COUNT).issues)

    def test_face_too_close_to_edge_reports_insufficient_margin(self):
        img = draw_portrait(face_box=(190, 10, 410, 310))
        pipeline = make_pipeline(StubDetector([face_for((190, 10, 410, 310), eye_frac=None)]))
        self.addCleanup(pipeline.close)

        result = pipeline.process(PipelineRequest(png_bytes(img), "image/png", "US"))

        self.assertFalse(result.compliant)
        self.assertIn("InsufficientMargin", result.error_kinds)
        self.assertIn("InsufficientMargin", result.report.check(Category.FACE_QUALITY).issues)
        self.assertIsNone(result.image_bytes)


class TestPipelineSegmentationFailure(unittest.TestCase):
    def setUp(self):
        self.pipeline = make_pipeline(StubDetector([face_for()]))
        self.addCleanup(self.pipeline.close)

    def _fail(self, *args, **kwargs):
        raise SegmentationFailed("Background is not uniform.")

    def test_full_mode_keeps_other_checks(self):
        with patch.object(BackgroundSegmenter, "apply", new=self._fail):
            result = self.pipeline.process(_request())

        self.assertEqual(result.stage, Stage.NON_COMPLIANT)
        self.assertTrue(result.report.check(Category.TECHNICAL).valid)
        self.assertTrue(result.report.check(Category.FACE_COUNT).valid)
        self.assertTrue(result.report.check(Category.FACE_QUALITY).valid)
        background = result.report.check(Category.BACKGROUND)
        self.assertFalse(background.valid)
        self.assertEqual(background.message, "Background is not uniform.")
        self.assertIn("SegmentationFailed", result.error_kinds)
        self.assertIsNone(result.image_bytes)
        self.assertNotIn(Stage.SEGMENTED, result.history)
        self.assertEqual(result.report.score, 75.0)

    def test_fail_fast_mode_still_reaches_a_verdict(self):
        with patch.object(BackgroundSegmenter, "apply", new=self._fail):
            result = self.pipeline.process(_request(mode=EvaluationMode.FAIL_FAST))

        self.assertFalse(result.compliant)
        self.assertFalse(result.report.check(Category.BACKGROUND).valid)

    def test_textured_wallpaper_fails_segmentation_but_keeps_other_checks(self):
        yy, xx = np.mgrid[0:600, 0:600]
        board = (((yy // 20) + (xx // 20)) % 2 * 255).astype(np.uint8)
        img = np.dstack([board, board, board])
        cv2.rectangle(img, (120, 520), (479, 599), (70, 60, 50), thickness=-1)
        cv2.ellipse(img, (300, 300), (110, 150), 0, 0, 360, (90, 110, 160), thickness=-1)

        result = self.pipeline.process(PipelineRequest(png_bytes(img), "image/png", "US"))

        self.assertEqual(result.stage, Stage.NON_COMPLIANT)
        self.assertIn("SegmentationFailed", result.error_kinds)
        self.assertIsNone(result.image_bytes)
        self.assertEqual(
            [c.category for c in result.report.checks],
            [Category.TECHNICAL, Category.FACE_COUNT, Category.FACE_QUALITY, Category.BACKGROUND],
        )
        self.assertTrue(result.report.check(Category.FACE_COUNT).valid)
        self.assertFalse(result.report.check(Category.BACKGROUND).valid)


class TestPipelinePreconditions(unittest.TestCase):
    def setUp(self):
        self.detector = StubDetector([face_for()])
        self.pipeline = make_pipeline(self.detector)
        self.addCleanup(self.pipeline.close)

    def test_unknown_country(self):
        with self.assertRaises(UnsupportedCountry):
            self.pipeline.process(_request(country="XX"))
        self.assertEqual(self.detector.calls, 0)

    def test_unsupported_mime_type(self):
        request = PipelineRequest(b"GIF89a", "image/gif", "US")
        with self.assertRaises(UnsupportedFormat):
            self.pipeline.process(request)

    def test_declared_type_must_match_data(self):
        request = PipelineRequest(png_bytes(draw_portrait()), "image/jpeg", "US")
        with self.assertRaises(UnsupportedFormat):
            self.pipeline.process(request)


class TestPipelineInternalErrors(unittest.TestCase):
    def test_detector_crash_is_internal_error(self):
        pipeline = make_pipeline(StubDetector([face_for()], fail_times=5))
        self.addCleanup(pipeline.close)

        with self.assertRaises(InternalProcessingError):
            pipeline.process(_request())

    def test_retry_once_recovers_from_transient_crash(self):
        detector = StubDetector([face_for()], fail_times=1)
        pipeline = make_pipeline(detector)
        self.addCleanup(pipeline.close)

        result = pipeline.process_with_retry(_request(), retries=1)

        self.assertTrue(result.compliant)
        self.assertEqual(detector.calls, 2)

    def test_retry_gives_up_after_one_retry(self):
        detector = StubDetector([face_for()], fail_times=5)
        pipeline = make_pipeline(detector)
        self.addCleanup(pipeline.close)

        with self.assertRaises(InternalProcessingError):
            pipeline.process_with_retry(_request(), retries=1)
        self.assertEqual(detector.calls, 2)

    def test_slow_segmentation_times_out(self):
        config = Config(segmentation_workers=1, pipeline_timeout=0.3, output_format="PNG")
        pipeline = make_pipeline(StubDetector([face_for()]), config=config)
        self.addCleanup(pipeline.close)

        def slow(*args, **kwargs):
            time.sleep(1.0)
            raise SegmentationFailed("too late")

        with patch.object(BackgroundSegmenter, "apply", new=slow):
            with self.assertRaises(InternalProcessingError) as ctx:
                pipeline.process(_request())
        self.assertIn("timed out", ctx.exception.message)

    def test_stalled_detector_times_out_at_the_deadline(self):
        config = Config(segmentation_workers=1, pipeline_timeout=0.5, output_format="PNG")
        pipeline = make_pipeline(StubDetector([face_for()], delay=3.0), config=config)
        self.addCleanup(pipeline.close)

        start = time.monotonic()
        with self.assertRaises(InternalProcessingError) as ctx:
            pipeline.process(_request())
        elapsed = time.monotonic() - start

        self.assertLess(elapsed, 2.0)
        self.assertIn("Face detection timed out", ctx.exception.message)


class TestPipelineRequest(unittest.TestCase):
    def test_from_dict_defaults_to_full_mode(self):
        req = PipelineRequest.from_dict({"imageBytes": b"x", "mimeType": "image/png", "countryCode": "US"})
        self.assertEqual(req.mode, EvaluationMode.FULL)
        self.assertIsNone(req.segmentation_method)

    def test_from_dict_parses_mode_and_method(self):
        req = PipelineRequest.from_dict({
            "imageBytes": b"x",
            "mimeType": "image/png",
            "countryCode": "GB",
            "mode": "fail-fast",
            "segmentationMethod": "chroma",
        })
        self.assertEqual(req.mode, EvaluationMode.FAIL_FAST)
        self.assertEqual(req.segmentation_method, SegmentationMethod.CHROMA)

    def test_from_dict_rejects_bad_payloads(self):
        base = {"imageBytes": b"x", "mimeType": "image/png", "countryCode": "US"}
        for bad in (
            {**base, "imageBytes": b""},
            {**base, "imageBytes": "not bytes"},
            {**base, "countryCode": " "},
            {**base, "mode": "sometimes"},
            {**base, "segmentationMethod": "magic"},
        ):
            with self.subTest(bad=bad):
                with self.assertRaises(InvalidRequest):
                    PipelineRequest.from_dict(bad)


class TestHandleRequest(unittest.TestCase):
    def setUp(self):
        self.detector = StubDetector([face_for()])
        self.pipeline = make_pipeline(self.detector)
        self.addCleanup(self.pipeline.close)
        self.payload = {
            "imageBytes": png_bytes(draw_portrait()),
            "mimeType": "image/png",
            "countryCode": "US",
        }

    def test_success_payload(self):
        out = handle_request(self.payload, self.pipeline)

        self.assertEqual(set(out), {"normalizedImageBytes", "metadata", "report"})
        self.assertTrue(out["report"]["overall"]["compliant"])
        self.assertEqual(len(out["report"]["checks"]), 4)

    def test_precondition_error_payload(self):
        out = handle_request({**self.payload, "countryCode": "XX"}, self.pipeline)
        self.assertEqual(out["errorKind"], "UnsupportedCountry")
        self.assertIn("XX", out["message"])

    def test_invalid_request_payload(self):
        out = handle_request({**self.payload, "imageBytes": None}, self.pipeline)
        self.assertEqual(out["errorKind"], "InvalidRequest")

    def test_oversized_upload_payload(self):
        out = handle_request({**self.payload, "imageBytes": png_header_only(20000, 20000)}, self.pipeline)
        self.assertEqual(out["errorKind"], "UnsupportedFormat")
        self.assertIn("too large", out["message"])
        self.assertEqual(self.detector.calls, 0)

    def test_internal_error_payload_after_retry(self):
        self.detector.fail_times = 10
        out = handle_request(self.payload, self.pipeline)

        self.assertEqual(out["errorKind"], "InternalProcessingError")
        self.assertEqual(self.detector.calls, 2)


if __name__ == "__main__":
    unittest.main()
