from __future__ import annotations

import io
from typing import Any, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from passportcheck.core.errors import UnsupportedFormat
from passportcheck.core.models import RawImage

# MIME type -> Pillow format name
SUPPORTED_FORMATS = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
}

# Largest upload decoded, well below Pillow's own decompression bomb limit
MAX_PIXELS = 50_000_000


def decode_image_bytes(data: bytes, mime_type: str) -> RawImage:
    """
    Decode an uploaded JPEG/PNG, apply EXIF orientation and return a RawImage
    holding BGR pixels. Anything else is an UnsupportedFormat.
    """
    expected = SUPPORTED_FORMATS.get((mime_type or "").lower())
    if expected is None:
        raise UnsupportedFormat(f"MIME type '{mime_type}' is not supported (use image/jpeg or image/png).")
    if not data:
        raise UnsupportedFormat("Image is empty.")

    try:
        img = Image.open(io.BytesIO(data))
        # Refuse before load(): the header alone gives the pixel count.
        if img.width * img.height > MAX_PIXELS:
            raise UnsupportedFormat(
                f"Image is too large ({img.width}x{img.height}, limit {MAX_PIXELS} pixels)."
            )
        img.load()
    except Image.DecompressionBombError as e:
        raise UnsupportedFormat(f"Image is too large: {e}") from e
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise UnsupportedFormat(f"Image could not be decoded: {e}") from e

    if img.format != expected:
        raise UnsupportedFormat(f"Declared {mime_type} but the data is {img.format or 'unknown'}.")

    source_format = img.format
    img = ImageOps.exif_transpose(img)
    if img.mode != "RGB":
        img = img.convert("RGB")
    return RawImage(data=data, pixels=pil_to_bgr_np(img), source_format=source_format, mime_type=mime_type.lower())


def encode_image(img_bgr: np.ndarray, fmt: str = "JPEG", dpi: int = 300, quality: int = 95) -> bytes:
    """Encode BGR pixels as JPEG/PNG with the DPI recorded in the file."""
    pil = bgr_np_to_pil(img_bgr)
    buf = io.BytesIO()
    fmt = fmt.upper()
    if fmt in ("JPEG", "JPG"):
        pil.save(buf, format="JPEG", quality=quality, optimize=True, dpi=(dpi, dpi))
    elif fmt == "PNG":
        pil.save(buf, format="PNG", dpi=(dpi, dpi))
    else:
        raise ValueError(f"Unsupported output format: {fmt}")
    return buf.getvalue()


def pil_to_bgr_np(img: Image.Image) -> np.ndarray:
    """PIL RGB -> OpenCV BGR numpy array."""
    arr = np.array(img)  # RGB
    return cv2.cvtColor(arr, cv2.COLOR_RGB2BGR)


def bgr_np_to_pil(img_bgr: np.ndarray) -> Image.Image:
    """OpenCV BGR numpy array -> PIL RGB."""
    rgb = cv2.cvtColor(np.ascontiguousarray(img_bgr), cv2.COLOR_BGR2RGB)
    return Image.fromarray(rgb)


def to_gray(img_bgr: np.ndarray) -> np.ndarray:
    if img_bgr.ndim == 2:
        return img_bgr
    return cv2.cvtColor(img_bgr, cv2.COLOR_BGR2GRAY)


def compute_sharpness(img_bgr: np.ndarray) -> float:
    """Laplacian variance; higher = sharper."""
    return float(cv2.Laplacian(to_gray(img_bgr), cv2.CV_64F).var())


def lighting_metrics(img_bgr: np.ndarray) -> dict[str, Any]:
    rgb = img_bgr[:, :, ::-1].astype(np.float32)
    gray = 0.2126 * rgb[:, :, 0] + 0.7152 * rgb[:, :, 1] + 0.0722 * rgb[:, :, 2]
    return {
        "luma_mean": float(gray.mean()),
        "luma_std": float(gray.std()),
        "dark_clip": float((gray <= 10).mean()),
        "bright_clip": float((gray >= 245).mean()),
    }


def relative_luminance(bgr: Sequence[float]) -> float:
    """WCAG relative luminance of a BGR colour (0-255 channels)."""
    def lin(c: float) -> float:
        c = c / 255.0
        return c / 12.92 if c <= 0.03928 else ((c + 0.055) / 1.055) ** 2.4

    b, g, r = (float(v) for v in bgr[:3])
    return 0.2126 * lin(r) + 0.7152 * lin(g) + 0.0722 * lin(b)


def contrast_ratio(bgr_a: Sequence[float], bgr_b: Sequence[float]) -> float:
    la = relative_luminance(bgr_a)
    lb = relative_luminance(bgr_b)
    hi, lo = max(la, lb), min(la, lb)
    return (hi + 0.05) / (lo + 0.05)


def corner_patches(img: np.ndarray, fraction: float = 0.06, min_size: int = 4) -> Tuple[np.ndarray, ...]:
    """
    Four corner patches plus the top strip, in the order
    (top-left, top-right, bottom-left, bottom-right, top-strip).
    """
    h, w = img.shape[:2]
    m = max(min_size, int(round(min(h, w) * fraction)))
    m = max(1, min(m, h // 2, w // 2))
    return (
        img[:m, :m],
        img[:m, w - m:],
        img[h - m:, :m],
        img[h - m:, w - m:],
        img[:m, :],
    )
