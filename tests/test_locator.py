import unittest

import numpy as np

from tests._fixtures import StubDetector, face_for

from passportcheck.core.errors import (
    InternalProcessingError,
    LowConfidenceDetection,
    MultipleFacesDetected,
    NoFaceDetected,
)
from passportcheck.core.models import RawImage
from passportcheck.face.detectors import FaceDetector, HaarCascadeFaceDetector, create_detector
from passportcheck.face.locator import FaceLocator


def _raw():
    pixels = np.full((200, 200, 3), 200, dtype=np.uint8)
    return RawImage(data=b"", pixels=pixels, source_format="PNG", mime_type="image/png")


class TestFaceLocator(unittest.TestCase):
    def test_single_confident_face(self):
        face = face_for(confidence=0.95)
        locator = FaceLocator(StubDetector([face]), min_confidence=0.8)
        self.assertEqual(locator.locate(_raw()), face)

    def test_no_face(self):
        locator = FaceLocator(StubDetector([]))
        with self.assertRaises(NoFaceDetected):
            locator.locate(_raw())

    def test_two_faces(self):
        locator = FaceLocator(StubDetector([face_for(), face_for((10, 10, 60, 60))]))
        with self.assertRaises(MultipleFacesDetected) as ctx:
            locator.locate(_raw())
        self.assertEqual(ctx.exception.count, 2)

    def test_low_confidence_just_below_threshold(self):
        locator = FaceLocator(StubDetector([face_for(confidence=0.79)]), min_confidence=0.8)
        with self.assertRaises(LowConfidenceDetection) as ctx:
            locator.locate(_raw())
        self.assertAlmostEqual(ctx.exception.confidence, 0.79)
        self.assertAlmostEqual(ctx.exception.threshold, 0.8)

    def test_confidence_equal_to_threshold_is_accepted(self):
        locator = FaceLocator(StubDetector([face_for(confidence=0.8)]), min_confidence=0.8)
        self.assertEqual(locator.locate(_raw()).confidence, 0.8)

    def test_raw_detections_are_reported_even_on_failure(self):
        faces = [face_for(), face_for((10, 10, 60, 60))]
        locator = FaceLocator(StubDetector(faces))
        detections = []
        with self.assertRaises(MultipleFacesDetected):
            locator.locate(_raw(), detections)
        self.assertEqual(detections, faces)

    def test_detector_crash_is_internal_error(self):
        locator = FaceLocator(StubDetector([face_for()], fail_times=1))
        with self.assertRaises(InternalProcessingError):
            locator.locate(_raw())

    def test_threshold_must_be_a_probability(self):
        with self.assertRaises(ValueError):
            FaceLocator(StubDetector(), min_confidence=1.5)


class TestDetectors(unittest.TestCase):
    def test_unknown_backend(self):
        with self.assertRaises(ValueError):
            create_detector("retina")

    def test_haar_backend_finds_nothing_on_blank_image(self):
        detector = create_detector("haar")

        self.assertIsInstance(detector, HaarCascadeFaceDetector)
        self.assertIsInstance(detector, FaceDetector)
        self.assertEqual(detector.detect_faces(np.full((240, 240, 3), 180, dtype=np.uint8)), [])


if __name__ == "__main__":
    unittest.main()
