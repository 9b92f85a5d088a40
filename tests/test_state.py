import unittest

import numpy as np

from tests._fixtures import us_spec

from passportcheck.app.state import InvalidTransition, RequestState, Stage, can_transition
from passportcheck.core.errors import NoFaceDetected
from passportcheck.core.models import EvaluationMode, RawImage


def _state(mode=EvaluationMode.FULL):
    raw = RawImage(data=b"", pixels=np.zeros((4, 4, 3), np.uint8), source_format="PNG", mime_type="image/png")
    return RequestState(spec=us_spec(), raw=raw, mode=mode)


class TestTransitions(unittest.TestCase):
    def test_forward_steps(self):
        self.assertTrue(can_transition(Stage.RECEIVED, Stage.TECHNICAL_CHECKED))
        self.assertTrue(can_transition(Stage.NORMALIZED, Stage.SEGMENTED))
        self.assertTrue(can_transition(Stage.SCORED, Stage.COMPLIANT))

    def test_skipping_forward_is_allowed(self):
        self.assertTrue(can_transition(Stage.TECHNICAL_CHECKED, Stage.SEGMENTED))

    def test_no_going_back(self):
        self.assertFalse(can_transition(Stage.SEGMENTED, Stage.FACE_LOCATED))
        self.assertFalse(can_transition(Stage.NORMALIZED, Stage.NORMALIZED))

    def test_compliant_only_after_scoring(self):
        self.assertFalse(can_transition(Stage.SEGMENTED, Stage.COMPLIANT))

    def test_non_compliant_and_failed_from_any_active_stage(self):
        for stage in (s for s in Stage if not s.terminal):
            with self.subTest(stage=stage.value):
                self.assertTrue(can_transition(stage, Stage.NON_COMPLIANT))
                self.assertTrue(can_transition(stage, Stage.FAILED))

    def test_terminal_stages_are_final(self):
        for src in (Stage.COMPLIANT, Stage.NON_COMPLIANT, Stage.FAILED):
            for dst in Stage:
                with self.subTest(src=src.value, dst=dst.value):
                    self.assertFalse(can_transition(src, dst))


class TestRequestState(unittest.TestCase):
    def test_advance_records_history(self):
        s = _state()
        s.advance(Stage.TECHNICAL_CHECKED)
        s.advance(Stage.FACE_LOCATED)

        self.assertEqual(s.stage, Stage.FACE_LOCATED)
        self.assertEqual(s.history, [Stage.RECEIVED, Stage.TECHNICAL_CHECKED, Stage.FACE_LOCATED])

    def test_invalid_advance_raises(self):
        s = _state()
        s.advance(Stage.FAILED)
        with self.assertRaises(InvalidTransition):
            s.advance(Stage.SCORED)
        self.assertEqual(s.stage, Stage.FAILED)

    def test_failures_and_mode(self):
        s = _state(EvaluationMode.FAIL_FAST)
        s.record_failure(NoFaceDetected())

        self.assertTrue(s.fail_fast)
        self.assertEqual([f.kind for f in s.failures], ["NoFaceDetected"])
        self.assertFalse(_state().fail_fast)

    def test_states_do_not_share_outputs(self):
        a, b = _state(), _state()
        a.record_failure(NoFaceDetected())
        a.advance(Stage.TECHNICAL_CHECKED)

        self.assertEqual(b.failures, [])
        self.assertEqual(b.history, [Stage.RECEIVED])
        self.assertEqual(b.checks, {})


if __name__ == "__main__":
    unittest.main()
