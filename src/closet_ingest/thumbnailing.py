"""Final compact encoding for processed item images."""

from __future__ import annotations

import io

from PIL import Image
from PIL.Image import Resampling

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "thumbnailing"})

OUTPUT_CONTENT_TYPE = "image/webp"
OUTPUT_EXTENSION = "webp"


def build_thumbnail_image(image: Image.Image, max_side: int) -> Image.Image:
    """Produce a resized copy of an image constrained to ``max_side`` pixels."""

    safe_side = max(1, int(max_side))
    resized = image.copy()
    resized.thumbnail((safe_side, safe_side), resample=Resampling.LANCZOS)
    return resized


def encode_display_image(data: bytes, max_side: int, quality: int) -> bytes:
    """Re-encode a trimmed image as alpha-preserving WebP bounded by ``max_side``."""

    with Image.open(io.BytesIO(data)) as img:
        working = img.convert("RGBA") if img.mode != "RGBA" else img.copy()

    resized = build_thumbnail_image(working, max_side)
    buffer = io.BytesIO()
    try:
        resized.save(buffer, format="WEBP", quality=quality, method=4)
    except OSError as exc:
        LOGGER.error("display_encode_error", extra={"max_side": max_side, "quality": quality, "error": str(exc)})
        raise
    return buffer.getvalue()


__all__ = ["OUTPUT_CONTENT_TYPE", "OUTPUT_EXTENSION", "build_thumbnail_image", "encode_display_image"]
