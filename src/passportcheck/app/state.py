from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from passportcheck.core.errors import ValidationFailure
from passportcheck.core.models import (
    Category,
    CountrySpec,
    EvaluationMode,
    FaceGeometry,
    NormalizedImage,
    RawImage,
    SegmentationMethod,
    SegmentedImage,
)
from passportcheck.validation.report import ComplianceCheck, ComplianceReport


class Stage(str, Enum):
    RECEIVED = "received"
    TECHNICAL_CHECKED = "technical-checked"
    FACE_LOCATED = "face-located"
    NORMALIZED = "normalized"
    SEGMENTED = "segmented"
    SCORED = "scored"
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non-compliant"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset({Stage.COMPLIANT, Stage.NON_COMPLIANT, Stage.FAILED})

# Processing stages in order. Full evaluation may skip stages whose input is
# missing (e.g. no face, so nothing to normalize) but never goes backwards.
_ORDER: Tuple[Stage, ...] = (
    Stage.RECEIVED,
    Stage.TECHNICAL_CHECKED,
    Stage.FACE_LOCATED,
    Stage.NORMALIZED,
    Stage.SEGMENTED,
    Stage.SCORED,
)


class InvalidTransition(RuntimeError):
    pass


def can_transition(src: Stage, dst: Stage) -> bool:
    if src.terminal:
        return False
    if dst in (Stage.NON_COMPLIANT, Stage.FAILED):
        return True
    if dst == Stage.COMPLIANT:
        return src == Stage.SCORED
    return _ORDER.index(dst) > _ORDER.index(src)


@dataclass
class RequestState:
    """
    Mutable state for a single pipeline request.

    The pipeline writes stage outputs here as they become available; `advance`
    enforces the stage order and records the path taken. Nothing in here is
    shared between requests.
    """
    spec: CountrySpec
    raw: RawImage
    mode: EvaluationMode = EvaluationMode.FULL
    method: SegmentationMethod = SegmentationMethod.AUTO

    stage: Stage = Stage.RECEIVED
    history: List[Stage] = field(default_factory=lambda: [Stage.RECEIVED])

    # Stage outputs
    detections: Optional[Tuple[FaceGeometry, ...]] = None
    face: Optional[FaceGeometry] = None
    normalized: Optional[NormalizedImage] = None
    segmented: Optional[SegmentedImage] = None
    checks: Dict[Category, ComplianceCheck] = field(default_factory=dict)
    report: Optional[ComplianceReport] = None

    failures: List[ValidationFailure] = field(default_factory=list)

    def advance(self, dst: Stage) -> None:
        if not can_transition(self.stage, dst):
            raise InvalidTransition(f"Cannot move from {self.stage.value} to {dst.value}")
        self.stage = dst
        self.history.append(dst)

    def record_failure(self, failure: ValidationFailure) -> None:
        self.failures.append(failure)

    @property
    def fail_fast(self) -> bool:
        return self.mode == EvaluationMode.FAIL_FAST
