"""Content and perceptual hashing helpers for uploaded images."""

from __future__ import annotations

import io
from typing import Final

import numpy as np
import xxhash
from PIL import Image, ImageOps

from utils.logging import get_logger

LOGGER = get_logger(__name__)

PHASH_BITS: Final[int] = 64
PHASH_HEX_LENGTH: Final[int] = PHASH_BITS // 4

_DHASH_WIDTH: Final[int] = 9
_DHASH_HEIGHT: Final[int] = 8


def compute_content_hash(data: bytes) -> str:
    """Compute the 64-bit ``xxhash.xxh64`` checksum of raw bytes as 16 hex chars."""

    return f"{xxhash.xxh64(data).intdigest():016x}"


def compute_dhash(image: Image.Image) -> str:
    """Compute the 64-bit difference hash for an image.

    - Convert to luminance and resize to a 9×8 grid.
    - For each of the 8 rows, compare the 8 adjacent pixel pairs.
    - Emit 1 when the left pixel is darker than the right one, row-major,
      yielding a 64-bit value encoded as a 16-character hexadecimal string.

    The fingerprint survives recompression and format changes but not
    rotation or significant reframing.
    """

    resample = Image.Resampling.LANCZOS
    gray = image.convert("L").resize((_DHASH_WIDTH, _DHASH_HEIGHT), resample=resample)
    pixels = np.asarray(gray, dtype=np.int16)

    bits = (pixels[:, :-1] < pixels[:, 1:]).astype(np.uint8).flatten()
    value = 0
    for bit in bits:
        value = (value << 1) | int(bit)

    return f"{value:0{PHASH_HEX_LENGTH}x}"


def compute_dhash_from_bytes(data: bytes) -> str:
    """Decode ``data`` (honoring EXIF orientation) and return its :func:`compute_dhash`."""

    with Image.open(io.BytesIO(data)) as img:
        oriented = ImageOps.exif_transpose(img)
        return compute_dhash(oriented)


def is_valid_phash(value: str | None) -> bool:
    """Return whether ``value`` is a 16-character hexadecimal perceptual hash."""

    if not value or len(value) != PHASH_HEX_LENGTH:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


def hamming_distance(a_hex: str, b_hex: str) -> int:
    """Compute the Hamming distance between two 64-bit hash values.

    Unparseable input is treated as maximally distant.
    """

    try:
        a_int = int(a_hex, 16)
        b_int = int(b_hex, 16)
    except (TypeError, ValueError):
        LOGGER.error("phash_hex_parse_error", extra={"a": a_hex, "b": b_hex})
        return PHASH_BITS

    return int((a_int ^ b_int).bit_count())


__all__ = [
    "PHASH_BITS",
    "compute_content_hash",
    "compute_dhash",
    "compute_dhash_from_bytes",
    "hamming_distance",
    "is_valid_phash",
]
