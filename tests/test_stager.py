from __future__ import annotations

import threading
import time

import pytest

from closet_ingest.config import StorageConfig, UploadConfig
from closet_ingest.errors import UploadRejectedError
from closet_ingest.hasher import compute_dhash_from_bytes
from closet_ingest.item_state import ItemStatus
from closet_ingest.object_store import MemoryObjectStore
from closet_ingest.repository import ItemRepository
from closet_ingest.runtime import Runtime
from closet_ingest.stager import BatchUpload, BatchUploader, StagedUpload, UploadStager
from closet_ingest.work_queue import MemoryWorkQueue, WorkMessage, WorkQueue
from conftest import make_photo


class BrokenQueue(WorkQueue):
    def send(self, message: WorkMessage) -> None:
        raise ConnectionError("broker unreachable")


def _stager(repository: ItemRepository, store: MemoryObjectStore, queue: WorkQueue, max_bytes: int = 1024 * 1024):
    return UploadStager(repository, store, queue, StorageConfig(backend="memory"), UploadConfig(max_bytes=max_bytes))


def test_stage_writes_object_record_and_message(repository: ItemRepository, store: MemoryObjectStore) -> None:
    queue = MemoryWorkQueue()
    data = make_photo()

    staged = _stager(repository, store, queue).stage(data, "owner-a", phash="ABC1234567890DEF", content_type="image/jpeg")

    assert staged.staging_key == f"staging/owner-a/{staged.item_id}.jpg"
    assert store.get(staged.staging_key) == data
    item = repository.require(staged.item_id)
    assert item.status == ItemStatus.PENDING.value
    assert item.phash == "abc1234567890def"
    assert queue.sent == [
        WorkMessage(item_id=staged.item_id, staging_key=staged.staging_key, owner_id="owner-a", phash="abc1234567890def")
    ]


def test_stage_computes_phash_when_client_sends_none(repository: ItemRepository, store: MemoryObjectStore) -> None:
    data = make_photo(fmt="PNG")

    staged = _stager(repository, store, MemoryWorkQueue()).stage(data, "owner-a", content_type="image/png")

    assert staged.phash == compute_dhash_from_bytes(data)
    assert staged.staging_key.endswith(".png")


@pytest.mark.parametrize(
    ("data", "owner_id", "phash"),
    [
        (b"", "owner-a", None),
        (b"x" * 2048, "owner-a", None),
        (b"tiny", "", None),
        (b"tiny", "owner-a", "not-a-hash"),
        (b"tiny", "owner-a", None),
    ],
)
def test_stage_rejects_unusable_uploads(
    repository: ItemRepository, store: MemoryObjectStore, data: bytes, owner_id: str, phash: str | None
) -> None:
    queue = MemoryWorkQueue()

    with pytest.raises(UploadRejectedError):
        _stager(repository, store, queue, max_bytes=1024).stage(data, owner_id, phash=phash)

    assert store.keys() == []
    assert queue.sent == []


def test_failed_enqueue_leaves_pending_record_for_sweeper(repository: ItemRepository, store: MemoryObjectStore) -> None:
    with pytest.raises(ConnectionError):
        _stager(repository, store, BrokenQueue()).stage(make_photo(), "owner-a", phash="abc1234567890def")

    [key] = store.keys()
    assert key.startswith("staging/owner-a/")
    assert repository.list_by_owner("owner-a", (ItemStatus.PENDING,))


def test_batch_results_follow_input_order() -> None:
    def stage(upload: BatchUpload) -> StagedUpload:
        # Later uploads finish first.
        time.sleep(0.01 * (5 - int(upload.name)))
        return StagedUpload(item_id=f"id-{upload.name}", staging_key="k", phash="0" * 16)

    uploads = [BatchUpload(name=str(index), data=b"x", owner_id="owner-a") for index in range(5)]

    results = BatchUploader(stage, concurrency=5).upload_many(uploads)

    assert [result.item_id for result in results] == [f"id-{index}" for index in range(5)]


def test_batch_failures_are_independent() -> None:
    def stage(upload: BatchUpload) -> StagedUpload:
        if upload.name == "bad":
            raise UploadRejectedError("upload is empty")
        return StagedUpload(item_id=upload.name, staging_key="k", phash="0" * 16)

    uploads = [BatchUpload(name=name, data=b"x", owner_id="owner-a") for name in ("a", "bad", "c")]

    results = BatchUploader(stage).upload_many(uploads)

    assert [result.ok for result in results] == [True, False, True]
    assert results[1].error == "upload is empty"


def test_batch_concurrency_is_bounded() -> None:
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def stage(upload: BatchUpload) -> StagedUpload:
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.02)
        with lock:
            state["active"] -= 1
        return StagedUpload(item_id=upload.name, staging_key="k", phash="0" * 16)

    uploads = [BatchUpload(name=str(index), data=b"x", owner_id="owner-a") for index in range(12)]

    BatchUploader(stage, concurrency=3).upload_many(uploads)

    assert 1 <= state["peak"] <= 3


def test_runtime_batch_uploader_stages_each_file(runtime: Runtime) -> None:
    uploads = [
        BatchUpload(name=f"photo-{index}.jpg", data=make_photo(), owner_id="owner-a", content_type="image/jpeg")
        for index in range(3)
    ]

    results = runtime.batch_uploader().upload_many(uploads)

    assert all(result.ok for result in results)
    assert len(runtime.queue) == 3
    with runtime.repository() as repository:
        assert len(repository.list_by_owner("owner-a", (ItemStatus.PENDING,))) == 3
