"""Build configured collaborators from :class:`Settings`."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from closet_ingest.catalog import Catalog
from closet_ingest.config import Settings, load_settings
from closet_ingest.db import open_session
from closet_ingest.duplicates import DuplicateDetector
from closet_ingest.inference import InferenceClient, OpenAIInferenceClient
from closet_ingest.metadata import MetadataExtractor
from closet_ingest.object_store import LocalObjectStore, MemoryObjectStore, ObjectStore, S3ObjectStore
from closet_ingest.pipeline import IngestionPipeline
from closet_ingest.repository import ItemRepository
from closet_ingest.stager import BatchUpload, BatchUploader, StagedUpload, UploadStager
from closet_ingest.sweeper import ReconciliationSweeper
from closet_ingest.transforms import HttpImageTransformService, ImageTransformService, LocalImageTransformService
from closet_ingest.trimmer import HttpTrimClient, LocalTrimClient, TrimClient
from closet_ingest.work_queue import CeleryWorkQueue, MemoryWorkQueue, WorkQueue
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "runtime"})


def build_object_store(settings: Settings) -> ObjectStore:
    storage = settings.storage
    backend = storage.backend.lower()
    if backend == "local":
        return LocalObjectStore(storage.root)
    if backend == "memory":
        return MemoryObjectStore()
    if backend == "s3":
        return S3ObjectStore(storage.bucket, endpoint_url=storage.endpoint_url, region=storage.region)
    raise ValueError(f"Unknown storage backend: {storage.backend!r}")


def build_work_queue(settings: Settings) -> WorkQueue:
    backend = settings.queues.backend.lower()
    if backend == "memory":
        return MemoryWorkQueue()
    if backend == "celery":
        from closet_ingest.task_queue import celery_app

        return CeleryWorkQueue(celery_app, settings.queues.ingest_queue)
    raise ValueError(f"Unknown queue backend: {settings.queues.backend!r}")


def build_transform_service(settings: Settings) -> ImageTransformService:
    cfg = settings.transform
    if cfg.backend.lower() == "http":
        if not cfg.url:
            raise ValueError("transform.url is required for the http backend")
        return HttpImageTransformService(cfg.url, timeout=cfg.request_timeout)
    return LocalImageTransformService(background_tolerance=cfg.background_tolerance)


def build_trim_client(settings: Settings) -> TrimClient:
    cfg = settings.trim
    if cfg.backend.lower() == "http":
        if not cfg.url:
            raise ValueError("trim.url is required for the http backend")
        return HttpTrimClient(cfg.url, timeout=cfg.request_timeout)
    return LocalTrimClient(cfg)


@dataclass
class Runtime:
    """Long-lived collaborators plus factories for session-scoped components."""

    settings: Settings
    store: ObjectStore
    queue: WorkQueue
    inference: InferenceClient
    transforms: ImageTransformService
    trimmer: TrimClient

    @contextmanager
    def repository(self) -> Iterator[ItemRepository]:
        with open_session(self.settings.databases.primary_url) as session:
            yield ItemRepository(session)

    def extractor(self) -> MetadataExtractor:
        cfg = self.settings.inference
        return MetadataExtractor(
            self.inference,
            cfg.model,
            attempts=cfg.pipeline_attempts,
            retry_backoff=cfg.retry_backoff,
            fallback_description_chars=cfg.fallback_description_chars,
        )

    def pipeline(self, repository: ItemRepository) -> IngestionPipeline:
        return IngestionPipeline(
            repository,
            self.store,
            self.transforms,
            self.trimmer,
            self.extractor(),
            storage=self.settings.storage,
            transform=self.settings.transform,
            output=self.settings.output,
            inference_attempts=self.settings.inference.pipeline_attempts,
            max_attempts=self.settings.queues.max_attempts,
        )

    def stager(self, repository: ItemRepository) -> UploadStager:
        return UploadStager(repository, self.store, self.queue, self.settings.storage, self.settings.upload)

    def sweeper(self, repository: ItemRepository, stale_after_seconds: float | None = None) -> ReconciliationSweeper:
        return ReconciliationSweeper(
            repository,
            self.store,
            self.settings.storage,
            stale_after_seconds=(
                self.settings.sweeper.stale_after_seconds if stale_after_seconds is None else stale_after_seconds
            ),
        )

    def catalog(self, repository: ItemRepository) -> Catalog:
        detector = DuplicateDetector(repository, threshold=self.settings.duplicates.hamming_threshold)
        return Catalog(repository, self.store, self.settings.storage, detector)

    def stage_one(self, upload: BatchUpload) -> StagedUpload:
        """Stage a single upload in its own session; safe to call from worker threads."""

        with self.repository() as repository:
            return self.stager(repository).stage(
                upload.data,
                upload.owner_id,
                phash=upload.phash,
                content_type=upload.content_type,
            )

    def batch_uploader(self) -> BatchUploader:
        return BatchUploader(self.stage_one, concurrency=self.settings.upload.batch_concurrency)


def build_runtime(settings: Settings | None = None, **overrides: Any) -> Runtime:
    """Assemble a :class:`Runtime`; keyword overrides replace individual collaborators."""

    settings = settings or load_settings()
    store = overrides.pop("store", None)
    if store is None:
        store = build_object_store(settings)
    queue = overrides.pop("queue", None)
    if queue is None:
        queue = build_work_queue(settings)
    inference = overrides.pop("inference", None)
    if inference is None:
        inference = OpenAIInferenceClient(settings.inference)
    transforms = overrides.pop("transforms", None)
    if transforms is None:
        transforms = build_transform_service(settings)
    trimmer = overrides.pop("trimmer", None)
    if trimmer is None:
        trimmer = build_trim_client(settings)
    if overrides:
        raise TypeError(f"Unknown runtime overrides: {', '.join(sorted(overrides))}")

    LOGGER.info(
        "runtime_built",
        extra={
            "storage_backend": settings.storage.backend,
            "queue_backend": settings.queues.backend,
            "transform_backend": settings.transform.backend,
            "trim_backend": settings.trim.backend,
        },
    )
    return Runtime(
        settings=settings,
        store=store,
        queue=queue,
        inference=inference,
        transforms=transforms,
        trimmer=trimmer,
    )


__all__ = [
    "Runtime",
    "build_object_store",
    "build_runtime",
    "build_transform_service",
    "build_trim_client",
    "build_work_queue",
]
