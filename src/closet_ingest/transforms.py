"""Image transform service contract used for background removal and re-encoding."""

from __future__ import annotations

import io
import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass

import httpx
import numpy as np
from PIL import Image, ImageOps

from closet_ingest.errors import TransformError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "transforms"})

_ALPHA_MODES: frozenset[str] = frozenset({"RGBA", "LA", "PA", "RGBa", "La"})


@dataclass(frozen=True)
class TransformSpec:
    """Transform request: resize, segment, rotate, trim margins, then encode."""

    width: int | None = None
    fit: str = "scale-down"
    segment: str | None = None
    rotate: int = 0
    trim: tuple[int, int, int, int] | None = None  # left, top, right, bottom margins
    output_format: str = "PNG"
    quality: int = 90

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


def has_alpha_channel(data: bytes) -> bool:
    """Return whether encoded ``data`` carries an alpha channel or a transparency key."""

    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.mode in _ALPHA_MODES or "transparency" in img.info
    except (OSError, ValueError):
        return False


class ImageTransformService(ABC):
    """Capability the pipeline calls; concrete backends live outside the core."""

    @abstractmethod
    def transform(self, data: bytes, spec: TransformSpec) -> bytes:
        """Apply ``spec`` to ``data`` and return the encoded result."""

    def remove_background(self, data: bytes, width: int) -> bytes:
        return self.transform(data, TransformSpec(width=width, segment="foreground", output_format="PNG"))


class LocalImageTransformService(ImageTransformService):
    """Pillow/numpy stand-in for a hosted transform service.

    Foreground segmentation keys out the median border color, which is good
    enough for garments photographed on a plain backdrop.
    """

    def __init__(self, background_tolerance: float = 40.0) -> None:
        self._tolerance = background_tolerance

    def transform(self, data: bytes, spec: TransformSpec) -> bytes:
        try:
            with Image.open(io.BytesIO(data)) as img:
                image = ImageOps.exif_transpose(img)
                image.load()
        except (OSError, ValueError) as exc:
            raise TransformError(f"Failed to decode image: {exc}") from exc

        if spec.width and (spec.fit != "scale-down" or image.width > spec.width):
            height = max(1, round(image.height * spec.width / image.width))
            image = image.resize((spec.width, height), resample=Image.Resampling.LANCZOS)
        if spec.segment == "foreground":
            image = self._segment_foreground(image)
        if spec.rotate:
            image = image.rotate(-spec.rotate, expand=True)
        if spec.trim:
            left, top, right, bottom = spec.trim
            image = image.crop((left, top, image.width - right, image.height - bottom))

        fmt = spec.output_format.upper()
        if fmt == "JPEG" and image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        buffer = io.BytesIO()
        save_kwargs = {"quality": spec.quality} if fmt in {"JPEG", "WEBP"} else {}
        image.save(buffer, format=fmt, **save_kwargs)
        return buffer.getvalue()

    def _segment_foreground(self, image: Image.Image) -> Image.Image:
        rgb = np.asarray(image.convert("RGB"), dtype=np.float32)
        border = np.concatenate([rgb[0, :], rgb[-1, :], rgb[:, 0], rgb[:, -1]], axis=0)
        background = np.median(border, axis=0)
        distance = np.linalg.norm(rgb - background, axis=2)
        alpha = np.where(distance > self._tolerance, 255, 0).astype(np.uint8)
        rgba = image.convert("RGBA")
        rgba.putalpha(Image.fromarray(alpha, mode="L"))
        return rgba


class HttpImageTransformService(ImageTransformService):
    """Post images to a remote transform endpoint as multipart form data."""

    def __init__(self, url: str, timeout: float = 60.0, client: httpx.Client | None = None) -> None:
        self._url = url
        self._client = client or httpx.Client(timeout=timeout)

    def transform(self, data: bytes, spec: TransformSpec) -> bytes:
        try:
            response = self._client.post(
                self._url,
                files={"image": ("image", data, "application/octet-stream")},
                data={"spec": spec.to_json()},
            )
        except httpx.HTTPError as exc:
            raise TransformError(f"Transform request failed: {exc}") from exc
        if response.status_code != 200:
            LOGGER.error("transform_remote_error", extra={"status": response.status_code, "body": response.text[:200]})
            raise TransformError(f"Transform service returned HTTP {response.status_code}")
        return response.content


__all__ = [
    "HttpImageTransformService",
    "ImageTransformService",
    "LocalImageTransformService",
    "TransformSpec",
    "has_alpha_channel",
]
