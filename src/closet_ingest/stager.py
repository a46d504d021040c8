"""Upload staging: write the original, insert a placeholder record, enqueue work."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from closet_ingest.config import StorageConfig, UploadConfig
from closet_ingest.errors import UploadRejectedError
from closet_ingest.hasher import compute_dhash_from_bytes, is_valid_phash
from closet_ingest.object_store import ObjectStore, extension_for, staging_key
from closet_ingest.repository import ItemRepository
from closet_ingest.work_queue import WorkMessage, WorkQueue
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "stager"})


@dataclass(frozen=True)
class StagedUpload:
    item_id: str
    staging_key: str
    phash: str


class UploadStager:
    """Accept an upload and hand it to the queue without waiting on processing."""

    def __init__(
        self,
        repository: ItemRepository,
        store: ObjectStore,
        queue: WorkQueue,
        storage: StorageConfig,
        upload: UploadConfig,
    ) -> None:
        self._repository = repository
        self._store = store
        self._queue = queue
        self._storage = storage
        self._upload = upload

    def stage(
        self,
        data: bytes,
        owner_id: str,
        phash: str | None = None,
        content_type: str | None = None,
    ) -> StagedUpload:
        """Stage ``data`` for ``owner_id`` and return the new item id.

        When the client sends no perceptual hash it is computed from the bytes.
        If the enqueue fails, the record stays ``pending`` and the staging
        object stays in place for the sweeper to remove.

        Raises:
            UploadRejectedError: On an empty or oversized payload, a missing
                owner, a malformed hash, or bytes that do not decode as an image.
        """

        if not owner_id:
            raise UploadRejectedError("owner id is required")
        if not data:
            raise UploadRejectedError("upload is empty")
        if len(data) > self._upload.max_bytes:
            raise UploadRejectedError(f"upload exceeds {self._upload.max_bytes} bytes")

        if phash:
            if not is_valid_phash(phash):
                raise UploadRejectedError(f"perceptual hash must be 16 hex characters, got {phash!r}")
            phash = phash.lower()
        else:
            try:
                phash = compute_dhash_from_bytes(data)
            except (OSError, ValueError) as exc:
                raise UploadRejectedError(f"upload is not a readable image: {exc}") from exc

        item_id = uuid.uuid4().hex
        extension = extension_for(content_type, self._upload.default_extension)
        key = staging_key(self._storage.staging_prefix, owner_id, item_id, extension)

        self._store.put(key, data, content_type)
        self._repository.create_placeholder(item_id=item_id, owner_id=owner_id, staging_key=key, phash=phash)

        message = WorkMessage(item_id=item_id, staging_key=key, owner_id=owner_id, phash=phash)
        try:
            self._queue.send(message)
        except Exception as exc:
            LOGGER.error("upload_enqueue_error", extra={"item_id": item_id, "key": key, "error": str(exc)})
            raise

        LOGGER.info(
            "upload_staged",
            extra={"item_id": item_id, "owner_id": owner_id, "key": key, "bytes": len(data)},
        )
        return StagedUpload(item_id=item_id, staging_key=key, phash=phash)


@dataclass(frozen=True)
class BatchUpload:
    name: str
    data: bytes
    owner_id: str
    content_type: str | None = None
    phash: str | None = None


@dataclass(frozen=True)
class BatchResult:
    name: str
    item_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchUploader:
    """Stage many uploads through a bounded window of concurrent calls.

    ``stage`` must be safe to call from worker threads; each call normally
    opens its own database session.
    """

    def __init__(self, stage: Callable[[BatchUpload], StagedUpload], concurrency: int = 6) -> None:
        self._stage = stage
        self._concurrency = max(1, concurrency)

    def _run_one(self, upload: BatchUpload) -> BatchResult:
        try:
            staged = self._stage(upload)
        except Exception as exc:
            LOGGER.warning("batch_upload_item_error", extra={"upload": upload.name, "error": str(exc)})
            return BatchResult(name=upload.name, error=str(exc))
        return BatchResult(name=upload.name, item_id=staged.item_id)

    def upload_many(self, uploads: Sequence[BatchUpload]) -> list[BatchResult]:
        """Return one result per upload, in input order."""

        if not uploads:
            return []
        with ThreadPoolExecutor(max_workers=min(self._concurrency, len(uploads))) as executor:
            results = list(executor.map(self._run_one, uploads))

        failed = sum(1 for result in results if not result.ok)
        LOGGER.info("batch_upload_complete", extra={"total": len(results), "failed": failed})
        return results


__all__ = ["BatchResult", "BatchUpload", "BatchUploader", "StagedUpload", "UploadStager"]
