"""
passportcheck command line.

Normalize a photo for a country's passport requirements and print the
compliance report.

Usage:
  passportcheck --file photo.jpg --country US
  passportcheck --file photo.png --country GB --mode fail-fast --method chroma --output out.jpg
  passportcheck --file photo.jpg --country DE --json

Exit codes: 0 compliant, 1 non-compliant, 2 error.
"""

from __future__ import annotations

import argparse
import json
import mimetypes
import sys
from pathlib import Path
from typing import Optional

from passportcheck.app.pipeline import PassportPhotoPipeline, PipelineRequest
from passportcheck.config import VALID_DETECTORS
from passportcheck.core.models import EvaluationMode, SegmentationMethod
from passportcheck.core.specs import default_registry
from passportcheck.validation.report import format_report_text

EXIT_COMPLIANT = 0
EXIT_NON_COMPLIANT = 1
EXIT_ERROR = 2

_MIME_BY_SUFFIX = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".png": "image/png"}


def _guess_mime(path: Path) -> str:
    mime = _MIME_BY_SUFFIX.get(path.suffix.lower())
    if mime is None:
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return mime


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Create a passport photo and check it against a country's rules.")
    p.add_argument("--file", "-f", required=True, help="Path to the input photo (JPEG or PNG)")
    p.add_argument(
        "--country", "-c", required=True,
        help=f"Country code ({', '.join(default_registry().codes())})",
    )
    p.add_argument(
        "--mode", choices=[m.value for m in EvaluationMode], default=EvaluationMode.FULL.value,
        help="fail-fast stops at the first failing step; full runs every check (default: full)",
    )
    p.add_argument(
        "--method", choices=[m.value for m in SegmentationMethod], default=None,
        help="Background segmentation method (default: from config, usually auto)",
    )
    p.add_argument("--output", "-o", help="Where to write the normalized photo")
    p.add_argument(
        "--detector", choices=VALID_DETECTORS, default=None,
        help="Face detector backend (default: DETECTOR or haar; mediapipe needs the mediapipe extra)",
    )
    p.add_argument("--json", action="store_true", help="Print the report as JSON")
    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    path = Path(args.file)

    try:
        request = PipelineRequest(
            image_bytes=path.read_bytes(),
            mime_type=_guess_mime(path),
            country_code=args.country,
            mode=EvaluationMode(args.mode),
            segmentation_method=SegmentationMethod(args.method) if args.method else None,
        )
        with PassportPhotoPipeline.from_config(detector_name=args.detector) as pipeline:
            result = pipeline.process_with_retry(request, retries=1)
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR

    if args.json:
        print(json.dumps(result.report.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(format_report_text(result.report))

    for w in result.warnings:
        print(f"WARNING: {w}", file=sys.stderr)

    if args.output:
        if result.image_bytes is None:
            print("No photo was written: the image could not be normalized.", file=sys.stderr)
        else:
            Path(args.output).write_bytes(result.image_bytes)
            print(f"Saved: {args.output}")

    return EXIT_COMPLIANT if result.compliant else EXIT_NON_COMPLIANT


if __name__ == "__main__":
    raise SystemExit(main())
