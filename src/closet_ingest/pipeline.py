"""Ingestion pipeline that turns one staged upload into a processed catalog item."""

from __future__ import annotations

from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from enum import Enum

from closet_ingest.config import OutputConfig, StorageConfig, TransformConfig
from closet_ingest.db import Item
from closet_ingest.errors import StagingObjectMissingError
from closet_ingest.item_state import SETTLED_STATUSES, ItemStatus
from closet_ingest.metadata import ClothingMetadata, MetadataExtractor
from closet_ingest.object_store import ObjectStore, public_url, staging_key
from closet_ingest.repository import ItemRepository
from closet_ingest.thumbnailing import OUTPUT_CONTENT_TYPE, OUTPUT_EXTENSION, encode_display_image
from closet_ingest.transforms import ImageTransformService, has_alpha_channel
from closet_ingest.trimmer import TrimClient
from closet_ingest.work_queue import WorkMessage
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "pipeline"})


class ProcessOutcome(str, Enum):
    """Result of one delivery, used by the queue binding to ack or redeliver."""

    PROCESSED = "processed"
    SKIPPED = "skipped"
    RETRY = "retry"
    FAILED = "failed"


class IngestionPipeline:
    """Process one work message end to end.

    Every write is keyed on the item id, so a redelivered message either finds
    the item settled and does nothing, or overwrites the same keys again.
    """

    def __init__(
        self,
        repository: ItemRepository,
        store: ObjectStore,
        transforms: ImageTransformService,
        trimmer: TrimClient,
        extractor: MetadataExtractor,
        *,
        storage: StorageConfig,
        transform: TransformConfig,
        output: OutputConfig,
        inference_attempts: int = 3,
        max_attempts: int = 3,
    ) -> None:
        self._repository = repository
        self._store = store
        self._transforms = transforms
        self._trimmer = trimmer
        self._extractor = extractor
        self._storage = storage
        self._transform = transform
        self._output = output
        self._inference_attempts = inference_attempts
        self._max_attempts = max_attempts

    def handle(self, message: WorkMessage, attempt: int = 1, max_attempts: int | None = None) -> ProcessOutcome:
        """Process ``message`` on delivery number ``attempt``.

        Returns:
            ``processed`` on success, ``skipped`` when the item is gone or
            already settled, ``retry`` when a failure should be redelivered,
            and ``failed`` when the failure is terminal.
        """

        limit = max_attempts or self._max_attempts
        log_extra = {"item_id": message.item_id, "attempt": attempt, "max_attempts": limit}

        item = self._repository.get(message.item_id)
        if item is None:
            LOGGER.warning("pipeline_item_missing", extra=log_extra)
            return ProcessOutcome.SKIPPED
        if ItemStatus(item.status) in SETTLED_STATUSES:
            LOGGER.info("pipeline_item_already_settled", extra={**log_extra, "status": item.status})
            return ProcessOutcome.SKIPPED

        self._repository.transition(item, ItemStatus.PROCESSING)
        LOGGER.info("pipeline_item_start", extra=log_extra)

        processed_key = staging_key(self._storage.staging_prefix, message.owner_id, message.item_id, OUTPUT_EXTENSION)
        try:
            original = self._store.get(message.staging_key)
            if original is None:
                raise StagingObjectMissingError(message.staging_key)

            image_bytes, metadata = self._run_branches(original)

            self._store.put(processed_key, image_bytes, OUTPUT_CONTENT_TYPE)
            self._repository.set_image(
                item,
                staging_key=processed_key,
                url=public_url(self._storage.public_url_prefix, processed_key),
            )
            self._repository.apply_fields(item, metadata.to_item_fields())
            if message.phash and not item.phash:
                self._repository.set_phash(item, message.phash)
            self._repository.transition(item, ItemStatus.PROCESSED)
        except StagingObjectMissingError as exc:
            self._mark_failed(item, str(exc))
            LOGGER.error("pipeline_original_missing", extra={**log_extra, "key": message.staging_key})
            return ProcessOutcome.FAILED
        except Exception as exc:
            self._mark_failed(item, str(exc) or type(exc).__name__)
            if attempt < limit:
                LOGGER.warning("pipeline_item_retry", extra={**log_extra, "error": str(exc)})
                return ProcessOutcome.RETRY
            LOGGER.error("pipeline_item_failed", extra={**log_extra, "error": str(exc)})
            self._discard(message.staging_key)
            if processed_key != message.staging_key:
                self._discard(processed_key)
            return ProcessOutcome.FAILED

        if message.staging_key != processed_key:
            self._discard(message.staging_key)

        LOGGER.info(
            "pipeline_item_processed",
            extra={
                **log_extra,
                "key": processed_key,
                "category": metadata.category,
                "fallback": metadata.fallback,
            },
        )
        return ProcessOutcome.PROCESSED

    def _run_branches(self, original: bytes) -> tuple[bytes, ClothingMetadata]:
        """Run the image and metadata branches concurrently; the first failure cancels the other."""

        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ingest-branch")
        try:
            image_future: Future[bytes] = executor.submit(self._process_image, original)
            metadata_future: Future[ClothingMetadata] = executor.submit(
                self._extractor.extract, original, self._inference_attempts
            )
            done, pending = wait((image_future, metadata_future), return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()
            for future in (image_future, metadata_future):
                if future in done and future.exception() is not None:
                    raise future.exception()  # type: ignore[misc]
            return image_future.result(), metadata_future.result()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _process_image(self, original: bytes) -> bytes:
        attempts = max(1, self._transform.background_attempts)
        segmented = b""
        for attempt in range(1, attempts + 1):
            segmented = self._transforms.remove_background(original, self._transform.max_width)
            if has_alpha_channel(segmented):
                break
            # Some transform backends silently drop the alpha channel.
            LOGGER.warning("background_removal_alpha_missing", extra={"attempt": attempt, "max_attempts": attempts})

        trimmed = self._trimmer.trim(segmented)
        return encode_display_image(trimmed, self._output.max_side, self._output.quality)

    def _mark_failed(self, item: Item, error_message: str) -> None:
        item_id = item.id
        self._repository.session.rollback()
        try:
            self._repository.transition(item, ItemStatus.FAILED, error_message=error_message)
        except Exception as exc:
            LOGGER.error("pipeline_mark_failed_error", extra={"item_id": item_id, "error": str(exc)})

    def _discard(self, key: str) -> None:
        try:
            self._store.delete(key)
        except Exception as exc:
            LOGGER.warning("pipeline_staging_delete_error", extra={"key": key, "error": str(exc)})


__all__ = ["IngestionPipeline", "ProcessOutcome"]
