"""Shared fixtures: temporary SQLite stores, in-memory objects, fake inference."""

from __future__ import annotations

import io
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from PIL import Image, ImageDraw

from closet_ingest.config import Settings
from closet_ingest.db import dispose_engines, open_session
from closet_ingest.errors import InferenceError
from closet_ingest.inference import InferenceClient
from closet_ingest.object_store import MemoryObjectStore
from closet_ingest.repository import ItemRepository
from closet_ingest.runtime import Runtime, build_runtime
from closet_ingest.work_queue import MemoryWorkQueue

VALID_RESPONSE = (
    '{"category":"tops","subcategory":"t-shirt","colors":["navy blue"],"brand":null,'
    '"fit":"regular","style":"casual","season":"all","material":"cotton","boldness":"subtle",'
    '"description":"plain crew neck tee","tags":["basic","everyday"]}'
)


def make_photo(width: int = 400, height: int = 300, fmt: str = "JPEG") -> bytes:
    """White backdrop with a solid red garment-shaped block in the middle."""

    image = Image.new("RGB", (width, height), (255, 255, 255))
    draw = ImageDraw.Draw(image)
    draw.rectangle((width // 4, height // 4, 3 * width // 4, 3 * height // 4), fill=(200, 20, 30))
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def make_cutout(width: int, height: int, box: tuple[int, int, int, int] | None) -> bytes:
    """Transparent PNG with an opaque block covering ``box`` (inclusive corners)."""

    image = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    if box is not None:
        ImageDraw.Draw(image).rectangle(box, fill=(10, 120, 200, 255))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class FakeInference(InferenceClient):
    """Replay scripted responses; exceptions in the script are raised."""

    def __init__(self, responses: list[Any] | None = None, default: Any = VALID_RESPONSE) -> None:
        self._responses = list(responses or [])
        self._default = default
        self.calls = 0

    def run(self, model: str, messages: list[dict[str, Any]]) -> str | dict[str, Any]:
        self.calls += 1
        response = self._responses.pop(0) if self._responses else self._default
        if isinstance(response, Exception):
            raise response
        return response


class AlwaysFailingInference(InferenceClient):
    def __init__(self) -> None:
        self.calls = 0

    def run(self, model: str, messages: list[dict[str, Any]]) -> str | dict[str, Any]:
        self.calls += 1
        raise InferenceError("service unavailable")


@pytest.fixture
def db_url(tmp_path: Path) -> Iterator[str]:
    yield f"sqlite:///{tmp_path / 'closet.db'}"
    dispose_engines()


@pytest.fixture
def repository(db_url: str) -> Iterator[ItemRepository]:
    with open_session(db_url) as session:
        yield ItemRepository(session)


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def settings(db_url: str) -> Settings:
    settings = Settings()
    settings.databases.primary_url = db_url
    settings.storage.backend = "memory"
    settings.queues.backend = "memory"
    settings.inference.retry_backoff = 0.0
    settings.admin.key = "admin-secret"
    return settings


@pytest.fixture
def runtime(settings: Settings) -> Runtime:
    return build_runtime(settings, inference=FakeInference(), queue=MemoryWorkQueue())
