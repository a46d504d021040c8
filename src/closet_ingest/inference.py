"""Vision inference clients for OpenAI-compatible chat endpoints."""

from __future__ import annotations

import base64
import io
from abc import ABC, abstractmethod
from typing import Any

from openai import OpenAI
from PIL import Image, ImageOps

from closet_ingest.config import InferenceConfig
from closet_ingest.errors import InferenceError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "inference"})

ANALYSIS_MAX_SIDE = 512
ANALYSIS_QUALITY = 85


def encode_image_to_data_url(data: bytes, max_side: int = ANALYSIS_MAX_SIDE, quality: int = ANALYSIS_QUALITY) -> str:
    """Downscale ``data`` to WebP and encode it as a data URL for ``image_url`` content.

    Raises:
        InferenceError: If the bytes cannot be decoded as an image.
    """

    try:
        with Image.open(io.BytesIO(data)) as img:
            image = ImageOps.exif_transpose(img)
            image.thumbnail((max_side, max_side), resample=Image.Resampling.LANCZOS)
            buffer = io.BytesIO()
            image.save(buffer, format="WEBP", quality=quality)
    except (OSError, ValueError) as exc:
        raise InferenceError(f"Image could not be prepared for analysis: {exc}") from exc

    b64 = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/webp;base64,{b64}"


def build_messages(prompt: str, image_data_url: str) -> list[dict[str, Any]]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image_data_url}},
            ],
        }
    ]


class InferenceClient(ABC):
    """Vision inference capability; the response may be text or an already-parsed mapping."""

    @abstractmethod
    def run(self, model: str, messages: list[dict[str, Any]]) -> str | dict[str, Any]:
        """Send ``messages`` to ``model`` and return the raw response payload."""


class OpenAIInferenceClient(InferenceClient):
    """Thin wrapper around an OpenAI-compatible chat completions endpoint."""

    def __init__(self, cfg: InferenceConfig, client: Any | None = None) -> None:
        self._cfg = cfg
        self._client = client or OpenAI(base_url=cfg.base_url, api_key=cfg.api_key)

    def run(self, model: str, messages: list[dict[str, Any]]) -> str | dict[str, Any]:
        try:
            resp = self._client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=self._cfg.max_tokens,
                timeout=self._cfg.request_timeout,
            )
        except Exception as exc:
            raise InferenceError(f"Inference request failed: {exc}") from exc

        if not resp.choices:
            raise InferenceError("Inference response contained no choices")
        return resp.choices[0].message.content or ""


__all__ = [
    "ANALYSIS_MAX_SIDE",
    "InferenceClient",
    "OpenAIInferenceClient",
    "build_messages",
    "encode_image_to_data_url",
]
