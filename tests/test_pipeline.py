"""End-to-end pipeline tests against in-memory storage and the local transform backends."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from closet_ingest.config import Settings
from closet_ingest.errors import TrimError
from closet_ingest.item_state import ItemStatus
from closet_ingest.pipeline import ProcessOutcome
from closet_ingest.repository import ItemRepository, item_to_dict
from closet_ingest.runtime import Runtime, build_runtime
from closet_ingest.stager import StagedUpload
from closet_ingest.transforms import ImageTransformService, TransformSpec
from closet_ingest.trimmer import TrimClient
from closet_ingest.work_queue import MemoryWorkQueue, WorkMessage
from conftest import AlwaysFailingInference, FakeInference, make_cutout, make_photo


class FailingTrimmer(TrimClient):
    def __init__(self) -> None:
        self.calls = 0

    def trim(self, data: bytes) -> bytes:
        self.calls += 1
        raise TrimError("trim unit returned HTTP 503")


class ScriptedTransforms(ImageTransformService):
    """Return scripted outputs in order, repeating the last one."""

    def __init__(self, *outputs: bytes) -> None:
        self._outputs = list(outputs)
        self.calls = 0

    def transform(self, data: bytes, spec: TransformSpec) -> bytes:
        self.calls += 1
        return self._outputs[min(self.calls, len(self._outputs)) - 1]


def _stage(runtime: Runtime, owner_id: str = "owner-a") -> StagedUpload:
    with runtime.repository() as repository:
        return runtime.stager(repository).stage(make_photo(), owner_id, content_type="image/jpeg")


def _message(staged: StagedUpload, owner_id: str = "owner-a") -> WorkMessage:
    return WorkMessage(item_id=staged.item_id, staging_key=staged.staging_key, owner_id=owner_id, phash=staged.phash)


def _handle(runtime: Runtime, message: WorkMessage, attempt: int = 1) -> ProcessOutcome:
    with runtime.repository() as repository:
        return runtime.pipeline(repository).handle(message, attempt=attempt)


def _item(runtime: Runtime, item_id: str) -> dict:
    with runtime.repository() as repository:
        return item_to_dict(repository.require(item_id))


def test_staged_upload_is_processed(runtime: Runtime) -> None:
    staged = _stage(runtime)

    outcome = _handle(runtime, _message(staged))

    assert outcome is ProcessOutcome.PROCESSED
    item = _item(runtime, staged.item_id)
    processed_key = f"staging/owner-a/{staged.item_id}.webp"
    assert item["status"] == ItemStatus.PROCESSED.value
    assert item["image_url"] == f"/images/{processed_key}"
    assert item["thumbnail_url"] == item["image_url"]
    assert item["subcategory"] == "t-shirt"
    assert item["colors"] == ["navy blue"]
    assert item["phash"] == staged.phash
    assert item["attempts"] == 1
    # The original is replaced by the compact processed image.
    assert runtime.store.get(staged.staging_key) is None
    with Image.open(io.BytesIO(runtime.store.get(processed_key))) as img:
        assert img.format == "WEBP"
        assert img.mode == "RGBA"


def test_redelivery_of_settled_item_is_skipped(runtime: Runtime) -> None:
    staged = _stage(runtime)
    message = _message(staged)
    _handle(runtime, message)
    keys_before = runtime.store.keys()

    outcome = _handle(runtime, message, attempt=2)

    assert outcome is ProcessOutcome.SKIPPED
    assert runtime.store.keys() == keys_before
    assert _item(runtime, staged.item_id)["attempts"] == 1


def test_message_for_unknown_item_is_skipped(runtime: Runtime) -> None:
    message = WorkMessage(item_id="ghost", staging_key="staging/owner-a/ghost.jpg", owner_id="owner-a")

    assert _handle(runtime, message) is ProcessOutcome.SKIPPED


def test_missing_original_fails_without_retry(runtime: Runtime) -> None:
    staged = _stage(runtime)
    runtime.store.delete(staged.staging_key)

    outcome = _handle(runtime, _message(staged), attempt=1)

    assert outcome is ProcessOutcome.FAILED
    item = _item(runtime, staged.item_id)
    assert item["status"] == ItemStatus.FAILED.value
    assert "Original not found" in item["error_message"]


def test_trim_failure_retries_then_fails(settings: Settings) -> None:
    trimmer = FailingTrimmer()
    runtime = build_runtime(settings, inference=FakeInference(), queue=MemoryWorkQueue(), trimmer=trimmer)
    staged = _stage(runtime)
    message = _message(staged)

    first = _handle(runtime, message, attempt=1)

    assert first is ProcessOutcome.RETRY
    assert _item(runtime, staged.item_id)["status"] == ItemStatus.FAILED.value
    assert runtime.store.get(staged.staging_key) is not None

    last = _handle(runtime, message, attempt=settings.queues.max_attempts)

    assert last is ProcessOutcome.FAILED
    item = _item(runtime, staged.item_id)
    assert item["status"] == ItemStatus.FAILED.value
    assert "HTTP 503" in item["error_message"]
    assert item["attempts"] == 2
    assert runtime.store.keys() == []


def test_inference_outage_still_processes_with_fallback_metadata(settings: Settings) -> None:
    inference = AlwaysFailingInference()
    runtime = build_runtime(settings, inference=inference, queue=MemoryWorkQueue())
    staged = _stage(runtime)

    outcome = _handle(runtime, _message(staged))

    assert outcome is ProcessOutcome.PROCESSED
    assert inference.calls == settings.inference.pipeline_attempts
    item = _item(runtime, staged.item_id)
    assert item["category"] == "tops"
    assert item["colors"] == ["unknown"]
    assert item["description"] == "unknown tops"


def test_queue_drain_processes_every_upload(runtime: Runtime) -> None:
    staged = [_stage(runtime) for _ in range(3)]

    results = runtime.queue.drain(lambda message, attempt: _handle(runtime, message, attempt))

    assert [outcome for _, outcome in results] == [ProcessOutcome.PROCESSED] * 3
    for upload in staged:
        assert _item(runtime, upload.item_id)["status"] == ItemStatus.PROCESSED.value


def test_queue_drain_redelivers_transient_failures(settings: Settings) -> None:
    trimmer = FailingTrimmer()
    runtime = build_runtime(settings, inference=FakeInference(), queue=MemoryWorkQueue(), trimmer=trimmer)
    staged = _stage(runtime)

    results = runtime.queue.drain(
        lambda message, attempt: _handle(runtime, message, attempt),
        max_attempts=settings.queues.max_attempts,
    )

    assert [outcome for _, outcome in results] == [ProcessOutcome.RETRY, ProcessOutcome.RETRY, ProcessOutcome.FAILED]
    assert trimmer.calls == 3
    assert _item(runtime, staged.item_id)["attempts"] == 3


@pytest.mark.parametrize("response", ["not json at all", '{"category": "shoes", "colors": ["white"]}'])
def test_processed_item_never_has_empty_colors(settings: Settings, response: str) -> None:
    runtime = build_runtime(settings, inference=FakeInference(default=response), queue=MemoryWorkQueue())
    staged = _stage(runtime)

    _handle(runtime, _message(staged))

    assert _item(runtime, staged.item_id)["colors"]


def test_background_removal_is_retried_when_alpha_is_missing(settings: Settings) -> None:
    transforms = ScriptedTransforms(make_photo(), make_cutout(400, 300, (100, 75, 299, 224)))
    runtime = build_runtime(settings, inference=FakeInference(), queue=MemoryWorkQueue(), transforms=transforms)
    staged = _stage(runtime)

    outcome = _handle(runtime, _message(staged))

    assert outcome is ProcessOutcome.PROCESSED
    assert transforms.calls == 2
    assert _item(runtime, staged.item_id)["status"] == ItemStatus.PROCESSED.value


def test_missing_alpha_after_retry_still_proceeds(settings: Settings) -> None:
    transforms = ScriptedTransforms(make_photo())
    runtime = build_runtime(settings, inference=FakeInference(), queue=MemoryWorkQueue(), transforms=transforms)
    staged = _stage(runtime)

    outcome = _handle(runtime, _message(staged))

    assert outcome is ProcessOutcome.PROCESSED
    assert transforms.calls == settings.transform.background_attempts == 2
    assert runtime.store.keys() == [f"staging/owner-a/{staged.item_id}.webp"]


def test_crash_after_image_write_is_reprocessed_on_redelivery(
    runtime: Runtime, monkeypatch: pytest.MonkeyPatch
) -> None:
    original_apply_fields = ItemRepository.apply_fields
    calls = []

    def crash_once(self, item, values, **kwargs):
        calls.append(item.id)
        if len(calls) == 1:
            raise RuntimeError("worker lost connection")
        return original_apply_fields(self, item, values, **kwargs)

    monkeypatch.setattr(ItemRepository, "apply_fields", crash_once)
    staged = _stage(runtime)
    message = _message(staged)
    processed_key = f"staging/owner-a/{staged.item_id}.webp"

    first = _handle(runtime, message, attempt=1)

    assert first is ProcessOutcome.RETRY
    assert runtime.store.keys() == sorted([staged.staging_key, processed_key])

    second = _handle(runtime, message, attempt=2)

    assert second is ProcessOutcome.PROCESSED
    item = _item(runtime, staged.item_id)
    assert item["status"] == ItemStatus.PROCESSED.value
    assert item["attempts"] == 2
    assert item["subcategory"] == "t-shirt"
    assert item["image_url"] == f"/images/{processed_key}"
    assert runtime.store.keys() == [processed_key]
