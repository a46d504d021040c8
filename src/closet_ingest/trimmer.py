"""Crop background-removed images to their visible content.

The bounding box is expanded in two stages: a cosmetic padding proportional
to the content, then a minimum-size floor so that small accessories still
produce a usable thumbnail. Pixel scanning is memory-heavy, so the pipeline
reaches this module through a :class:`TrimClient`, either in-process or over
HTTP against the ``/trim`` endpoint of the web app.
"""

from __future__ import annotations

import io
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
import numpy as np
from PIL import Image

from closet_ingest.config import TrimConfig
from closet_ingest.errors import TrimError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "trimmer"})

TRIM_OUTPUT_CONTENT_TYPE = "image/webp"


@dataclass(frozen=True)
class TrimBox:
    """Crop rectangle in Pillow's ``(left, top, right, bottom)`` convention; right/bottom are exclusive."""

    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.left, self.top, self.right, self.bottom)


def _expand_to_minimum(lo: int, hi: int, limit: int, minimum: int) -> tuple[int, int]:
    """Grow the inclusive span ``[lo, hi]`` around its center to ``minimum`` pixels.

    The span is shifted back inside ``[0, limit - 1]`` when growth would cross
    an edge; it never exceeds the source dimension.
    """

    target = min(minimum, limit)
    size = hi - lo + 1
    if size >= target:
        return lo, hi

    grow = target - size
    lo -= grow // 2
    hi += grow - grow // 2
    if lo < 0:
        hi -= lo
        lo = 0
    if hi > limit - 1:
        lo -= hi - (limit - 1)
        hi = limit - 1
    return max(lo, 0), hi


def compute_trim_box(alpha: np.ndarray, config: TrimConfig) -> TrimBox | None:
    """Return the padded crop box for an alpha plane, or ``None`` when nothing is visible.

    Args:
        alpha: 2D ``uint8`` array of shape ``(height, width)``.
        config: Threshold, padding, and minimum-size constants.
    """

    height, width = alpha.shape
    mask = alpha > config.alpha_threshold
    if not mask.any():
        return None

    rows = np.flatnonzero(mask.any(axis=1))
    cols = np.flatnonzero(mask.any(axis=0))
    min_y, max_y = int(rows[0]), int(rows[-1])
    min_x, max_x = int(cols[0]), int(cols[-1])

    padding = max(config.min_padding, int(min(max_x - min_x, max_y - min_y) * config.padding_ratio))
    min_x = max(0, min_x - padding)
    min_y = max(0, min_y - padding)
    max_x = min(width - 1, max_x + padding)
    max_y = min(height - 1, max_y + padding)

    min_x, max_x = _expand_to_minimum(min_x, max_x, width, config.min_dimension)
    min_y, max_y = _expand_to_minimum(min_y, max_y, height, config.min_dimension)

    return TrimBox(left=min_x, top=min_y, right=max_x + 1, bottom=max_y + 1)


def _encode_webp(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="WEBP", quality=quality, method=4)
    return buffer.getvalue()


def trim_image(data: bytes, config: TrimConfig) -> bytes:
    """Crop ``data`` to its visible content and re-encode it as WebP with alpha."""

    try:
        with Image.open(io.BytesIO(data)) as img:
            image = img.convert("RGBA")
    except (OSError, ValueError) as exc:
        raise TrimError(f"Failed to decode image for trimming: {exc}") from exc

    alpha = np.asarray(image.getchannel("A"), dtype=np.uint8)
    box = compute_trim_box(alpha, config)
    if box is None:
        LOGGER.info("trim_no_content", extra={"width": image.width, "height": image.height})
        return _encode_webp(image, config.webp_quality)

    cropped = image.crop(box.as_tuple())
    LOGGER.info(
        "trim_cropped",
        extra={
            "source": f"{image.width}x{image.height}",
            "output": f"{box.width}x{box.height}",
        },
    )
    return _encode_webp(cropped, config.webp_quality)


class TrimClient(ABC):
    """Request/response boundary to the trim compute unit."""

    @abstractmethod
    def trim(self, data: bytes) -> bytes:
        """Return the cropped, re-encoded image for an alpha-channel input."""


class LocalTrimClient(TrimClient):
    """Run the trim in-process."""

    def __init__(self, config: TrimConfig) -> None:
        self._config = config

    def trim(self, data: bytes) -> bytes:
        return trim_image(data, self._config)


class HttpTrimClient(TrimClient):
    """Call a remote trim unit that accepts PNG bytes and answers with WebP."""

    def __init__(self, url: str, timeout: float = 30.0, client: httpx.Client | None = None) -> None:
        self._url = url
        self._client = client or httpx.Client(timeout=timeout)

    def trim(self, data: bytes) -> bytes:
        try:
            response = self._client.post(self._url, content=data, headers={"Content-Type": "image/png"})
        except httpx.HTTPError as exc:
            raise TrimError(f"Trim request failed: {exc}") from exc
        if response.status_code != 200:
            LOGGER.error("trim_remote_error", extra={"status": response.status_code, "body": response.text[:200]})
            raise TrimError(f"Image trimming failed with HTTP {response.status_code}")
        return response.content


__all__ = [
    "HttpTrimClient",
    "LocalTrimClient",
    "TRIM_OUTPUT_CONTENT_TYPE",
    "TrimBox",
    "TrimClient",
    "compute_trim_box",
    "trim_image",
]
