"""
The four compliance checks.

Each check is a pure function of an EvaluationInput and returns one
ComplianceCheck built from several rules. Checks never raise for a
non-compliant photo; missing upstream results (no face, failed segmentation)
become failing rules that repeat the upstream reason.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from passportcheck.core.errors import (
    FileTooLarge,
    FileTooSmall,
    InsufficientMargin,
    LowConfidenceDetection,
    MultipleFacesDetected,
    NoFaceDetected,
    SegmentationFailed,
    ValidationFailure,
)
from passportcheck.core.imaging import compute_sharpness, contrast_ratio, lighting_metrics
from passportcheck.core.models import (
    Category,
    CountrySpec,
    FaceGeometry,
    NormalizedImage,
    RawImage,
    SegmentedImage,
)
from passportcheck.validation.report import ComplianceCheck, RuleResult

# Alpha below this counts as pure background when measuring the composite
PURE_BACKGROUND_ALPHA = 0.05


@dataclass(frozen=True)
class EvaluationInput:
    """
    Immutable snapshot of everything the checks may look at.

    Optional members are None when the stage producing them did not run or
    failed; `failures` holds the validation failures raised so far.
    """
    spec: CountrySpec
    raw: RawImage
    min_confidence: float = 0.8
    detections: Optional[Tuple[FaceGeometry, ...]] = None
    face: Optional[FaceGeometry] = None
    normalized: Optional[NormalizedImage] = None
    segmented: Optional[SegmentedImage] = None
    failures: Tuple[ValidationFailure, ...] = field(default=())

    def failure(self, *kinds: type) -> Optional[ValidationFailure]:
        for f in self.failures:
            if isinstance(f, kinds):
                return f
        return None

    def upstream_reason(self, category: Category) -> str:
        """Message of the earliest failure that blocked `category`."""
        for f in self.failures:
            if f.category == category:
                return f.message
        if self.failures:
            return self.failures[0].message
        return "an earlier step did not complete"


# ---------- technical ----------

def check_technical(inp: EvaluationInput) -> ComplianceCheck:
    spec, raw = inp.spec, inp.raw
    rules: List[RuleResult] = []

    fmt_ok = raw.source_format in ("JPEG", "PNG")
    rules.append(
        RuleResult(
            rule_id="Format",
            passed=fmt_ok,
            message=f"Format {raw.source_format}." if fmt_ok else f"Format {raw.source_format} is not accepted.",
            suggestion="Upload a JPEG or PNG file.",
            issue="UnsupportedFormat",
            metrics={"format": raw.source_format, "mime_type": raw.mime_type},
        )
    )

    size = raw.file_size
    if size < spec.min_file_size:
        rules.append(
            RuleResult(
                rule_id="File size",
                passed=False,
                message=f"File is {size / 1024:.0f} KB (minimum {spec.min_file_size / 1024:.0f} KB).",
                suggestion="Upload the original photo instead of a compressed or thumbnail copy.",
                issue=FileTooSmall.kind,
                metrics={"bytes": size},
            )
        )
    elif size > spec.max_file_size:
        rules.append(
            RuleResult(
                rule_id="File size",
                passed=False,
                message=f"File is {size / (1024 * 1024):.1f} MB (maximum {spec.max_file_size / (1024 * 1024):.1f} MB).",
                suggestion="Reduce the file size, e.g. export at a lower JPEG quality.",
                issue=FileTooLarge.kind,
                metrics={"bytes": size},
            )
        )
    else:
        rules.append(RuleResult(rule_id="File size", passed=True, message=f"{size} bytes.", metrics={"bytes": size}))

    short_side = min(raw.width, raw.height)
    res_ok = short_side >= spec.min_resolution
    rules.append(
        RuleResult(
            rule_id="Resolution",
            passed=res_ok,
            message=f"{raw.width}x{raw.height} pixels"
            + ("." if res_ok else f" (shorter side must be at least {spec.min_resolution} px)."),
            suggestion="Use a higher-resolution photo.",
            issue="LowResolution",
            metrics={"width": raw.width, "height": raw.height, "min": spec.min_resolution},
        )
    )

    sharpness = compute_sharpness(raw.pixels)
    sharp_ok = sharpness >= spec.min_sharpness
    rules.append(
        RuleResult(
            rule_id="Sharpness",
            passed=sharp_ok,
            message=f"Sharpness {sharpness:.0f}" + ("." if sharp_ok else f" (minimum {spec.min_sharpness:.0f}); the photo looks blurry."),
            suggestion="Hold the camera steady and make sure the face is in focus.",
            issue="Blurry",
            metrics={"sharpness": sharpness, "min": spec.min_sharpness},
        )
    )

    lm = lighting_metrics(raw.pixels)
    lo, hi = spec.brightness_range
    mean = lm["luma_mean"]
    bright_ok = lo <= mean <= hi
    msg = f"Brightness {mean:.0f}."
    if not bright_ok:
        msg = f"Brightness {mean:.0f} is outside {lo:.0f}-{hi:.0f}; the photo is too {'dark' if mean < lo else 'bright'}."
    rules.append(
        RuleResult(
            rule_id="Brightness",
            passed=bright_ok,
            message=msg,
            suggestion="Use even front lighting; avoid backlight and harsh shadows.",
            issue="PoorExposure",
            metrics=lm,
        )
    )

    return ComplianceCheck.from_rules(Category.TECHNICAL, rules, "File format, size and image quality are acceptable.")


# ---------- face count ----------

def check_face_count(inp: EvaluationInput) -> ComplianceCheck:
    if inp.detections is None:
        reason = inp.upstream_reason(Category.FACE_COUNT)
        return ComplianceCheck.from_rules(
            Category.FACE_COUNT,
            [RuleResult(
                rule_id="Face count",
                passed=False,
                message=f"Faces could not be counted: {reason}",
                suggestion="Retake the photo with exactly one face clearly visible.",
                issue=NoFaceDetected.kind,
            )],
            "",
        )

    n = len(inp.detections)
    rules: List[RuleResult] = []
    if n == 0:
        rules.append(RuleResult(
            rule_id="Face count",
            passed=False,
            message="No face detected.",
            suggestion="Face the camera directly with your whole face visible and well lit.",
            issue=NoFaceDetected.kind,
            metrics={"count": 0},
        ))
    elif n > 1:
        rules.append(RuleResult(
            rule_id="Face count",
            passed=False,
            message=f"{n} faces detected; exactly one is allowed.",
            suggestion="Make sure nobody else (or a picture of a face) is in the frame.",
            issue=MultipleFacesDetected.kind,
            metrics={"count": n},
        ))
    else:
        rules.append(RuleResult(rule_id="Face count", passed=True, message="One face detected.", metrics={"count": 1}))

    if n == 1:
        conf = inp.detections[0].confidence
        conf_ok = conf >= inp.min_confidence
        rules.append(RuleResult(
            rule_id="Detection confidence",
            passed=conf_ok,
            message=f"Detection confidence {conf:.2f}"
            + ("." if conf_ok else f" is below {inp.min_confidence:.2f}."),
            suggestion="Remove anything covering the face (hair, glasses glare, hands) and improve lighting.",
            issue=LowConfidenceDetection.kind,
            metrics={"confidence": conf, "threshold": inp.min_confidence},
        ))

    return ComplianceCheck.from_rules(Category.FACE_COUNT, rules, "Exactly one face detected with high confidence.")


# ---------- face quality ----------

def check_face_quality(inp: EvaluationInput) -> ComplianceCheck:
    spec = inp.spec
    if inp.face is None:
        return ComplianceCheck.from_rules(
            Category.FACE_QUALITY,
            [RuleResult(
                rule_id="Face geometry",
                passed=False,
                message=f"Face position and size could not be assessed: {inp.upstream_reason(Category.FACE_COUNT)}",
                suggestion="Retake the photo facing the camera with your head and shoulders in frame.",
                issue="FaceNotMeasured",
            )],
            "",
        )

    if inp.normalized is not None:
        face, width, height = inp.normalized.face, inp.normalized.width, inp.normalized.height
    else:
        face, width, height = inp.face, inp.raw.width, inp.raw.height

    rules: List[RuleResult] = []
    angle = float(face.angle or 0.0)
    angle_ok = abs(angle) <= spec.max_face_angle
    rules.append(RuleResult(
        rule_id="Orientation",
        passed=angle_ok,
        message=f"Head orientation {angle:+.1f} degrees"
        + ("." if angle_ok else f" exceeds the {spec.max_face_angle:.0f} degree limit."),
        suggestion="Keep your head straight and level, looking directly at the camera.",
        issue="Orientation",
        metrics={"angle": angle, "max": spec.max_face_angle},
    ))

    ratio = face.bbox.height / float(height)
    rules.append(_band_rule(
        "Face height", ratio, spec.face_height, spec.face_height_tolerance,
        "Face height is {value:.0%} of the photo (target {target:.0%} +/- {tol:.0%}).",
        "Move closer to or further from the camera so your face fills the required share of the photo.",
    ))

    _, cy = face.bbox.center
    rules.append(_band_rule(
        "Vertical position", cy / float(height), spec.face_center_from_top, spec.face_center_tolerance,
        "Face centre is {value:.0%} from the top (target {target:.0%} +/- {tol:.0%}).",
        "Position the camera at eye height so your face sits at the required height.",
    ))

    cx, _ = face.bbox.center
    rules.append(_band_rule(
        "Horizontal centring", cx / float(width), 0.5, spec.horizontal_center_tolerance,
        "Face centre is {value:.0%} from the left (target {target:.0%} +/- {tol:.0%}).",
        "Centre your face in the frame.",
    ))

    eye_y = face.eye_level
    if eye_y is None:
        rules.append(RuleResult(
            rule_id="Eye level",
            passed=False,
            message="Eye level could not be measured.",
            suggestion="Make sure both eyes are open and visible.",
            issue="EyeLevel",
        ))
    else:
        rules.append(_band_rule(
            "Eye level", eye_y / float(height), spec.eye_level_from_top, spec.eye_level_tolerance,
            "Eyes are {value:.0%} from the top (target {target:.0%} +/- {tol:.0%}).",
            "Adjust the framing so your eyes are at the required height.",
        ))

    margin_failure = inp.failure(InsufficientMargin)
    if margin_failure is not None:
        rules.append(RuleResult(
            rule_id="Margins",
            passed=False,
            message=margin_failure.message,
            suggestion="Step back from the camera so there is space around your head and shoulders.",
            issue=InsufficientMargin.kind,
        ))
    else:
        top = face.bbox.y1 / float(height)
        side = min(face.bbox.x1, width - face.bbox.x2) / float(width)
        margins_ok = top >= spec.min_top_margin and side >= spec.min_side_margin
        rules.append(RuleResult(
            rule_id="Margins",
            passed=margins_ok,
            message=f"Top margin {top:.0%}, side margin {side:.0%}"
            + ("." if margins_ok else f" (minimum {spec.min_top_margin:.0%} top, {spec.min_side_margin:.0%} sides)."),
            suggestion="Leave space between your head and the edges of the photo.",
            issue=InsufficientMargin.kind,
            metrics={"top": top, "side": side},
        ))

    eyes_ok = face.eyes_visible
    rules.append(RuleResult(
        rule_id="Eyes visible",
        passed=eyes_ok,
        message="Both eyes visible." if eyes_ok else "Both eyes must be visible.",
        suggestion="Keep your eyes open, remove tinted glasses and keep hair away from your eyes.",
        issue="EyesNotVisible",
    ))

    return ComplianceCheck.from_rules(Category.FACE_QUALITY, rules, "Head size, position and orientation meet the requirements.")


def _band_rule(rule_id: str, value: float, target: float, tol: float, template: str, suggestion: str) -> RuleResult:
    ok = abs(value - target) <= tol
    return RuleResult(
        rule_id=rule_id,
        passed=ok,
        message=template.format(value=value, target=target, tol=tol),
        suggestion=suggestion,
        issue=rule_id.replace(" ", ""),
        metrics={"value": value, "target": target, "tolerance": tol},
    )


# ---------- background ----------

def check_background(inp: EvaluationInput) -> ComplianceCheck:
    spec = inp.spec
    seg_failure = inp.failure(SegmentationFailed)
    if inp.segmented is None:
        if seg_failure is not None:
            message, issue = seg_failure.message, SegmentationFailed.kind
        else:
            message, issue = f"Background could not be assessed: {inp.upstream_reason(Category.BACKGROUND)}", "BackgroundNotMeasured"
        return ComplianceCheck.from_rules(
            Category.BACKGROUND,
            [RuleResult(
                rule_id="Uniformity",
                passed=False,
                message=message,
                suggestion="Stand in front of a plain, light, evenly lit wall without shadows or patterns.",
                issue=issue,
            )],
            "",
        )

    seg = inp.segmented.segmentation
    rules: List[RuleResult] = []

    uni_ok = seg.uniformity <= spec.max_background_std
    rules.append(RuleResult(
        rule_id="Uniformity",
        passed=uni_ok,
        message=f"Background variation {seg.uniformity:.1f}"
        + ("." if uni_ok else f" exceeds {spec.max_background_std:.1f}."),
        suggestion="Use a plain wall and light it evenly to avoid shadows.",
        issue="BackgroundNotUniform",
        metrics={"uniformity": seg.uniformity, "method": seg.method.value},
    ))

    pure = seg.mask & (seg.alpha <= PURE_BACKGROUND_ALPHA)
    target = np.array(spec.background_bgr, dtype=np.float32)
    if pure.any():
        mean_bg = inp.segmented.pixels[pure].reshape(-1, 3).astype(np.float32).mean(axis=0)
        distance = float(np.linalg.norm(mean_bg - target))
        color_ok = distance <= spec.background_tolerance
        color_msg = f"Background colour is {distance:.0f} away from {spec.background_hex}"
        color_msg += "." if color_ok else f" (tolerance {spec.background_tolerance:.0f})."
    else:
        distance, color_ok = float("inf"), False
        color_msg = "No background area is visible."
    rules.append(RuleResult(
        rule_id="Colour match",
        passed=color_ok,
        message=color_msg,
        suggestion=f"The background must be {spec.background_hex}.",
        issue="BackgroundColour",
        metrics={"distance": distance},
    ))

    subject = ~seg.mask
    if subject.any():
        subject_mean = inp.segmented.original[subject].reshape(-1, 3).astype(np.float32).mean(axis=0)
        ratio = contrast_ratio(subject_mean, tuple(float(v) for v in target))
    else:
        ratio = 1.0
    contrast_ok = ratio >= spec.min_contrast_ratio
    rules.append(RuleResult(
        rule_id="Contrast",
        passed=contrast_ok,
        message=f"Subject/background contrast {ratio:.2f}:1"
        + ("." if contrast_ok else f" (minimum {spec.min_contrast_ratio:.2f}:1)."),
        suggestion="Wear clothing that differs clearly from the background colour.",
        issue="LowContrast",
        metrics={"contrast_ratio": ratio},
    ))

    return ComplianceCheck.from_rules(Category.BACKGROUND, rules, f"Background is a uniform {spec.background_hex}.")


CHECKS = {
    Category.TECHNICAL: check_technical,
    Category.FACE_COUNT: check_face_count,
    Category.FACE_QUALITY: check_face_quality,
    Category.BACKGROUND: check_background,
}
