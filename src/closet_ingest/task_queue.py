"""Celery task wiring for item ingestion and periodic reconciliation."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from celery import Celery

from closet_ingest.config import Settings, load_settings
from closet_ingest.pipeline import ProcessOutcome
from closet_ingest.runtime import Runtime, build_runtime
from closet_ingest.work_queue import INGEST_TASK_NAME, WorkMessage
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "task_queue"})

SWEEP_TASK_NAME = "closet_ingest.task_queue.sweep"


@lru_cache(maxsize=1)
def _load_settings() -> Settings:
    return load_settings()


def _init_celery() -> Celery:
    settings = _load_settings()
    app = Celery("closet_ingest")
    app.conf.update(
        broker_url=settings.queues.broker_url,
        result_backend=settings.queues.result_backend,
        worker_concurrency=settings.queues.worker_concurrency,
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        broker_transport_options={"visibility_timeout": settings.queues.visibility_timeout_seconds},
        task_default_queue=settings.queues.ingest_queue,
        task_routes={
            INGEST_TASK_NAME: {"queue": settings.queues.ingest_queue},
            SWEEP_TASK_NAME: {"queue": settings.queues.maintenance_queue},
        },
    )
    if settings.sweeper.enabled:
        app.conf.beat_schedule = {
            "reconcile-staging": {
                "task": SWEEP_TASK_NAME,
                "schedule": settings.sweeper.interval_seconds,
            }
        }
    return app


celery_app = _init_celery()


@lru_cache(maxsize=1)
def _runtime() -> Runtime:
    return build_runtime(_load_settings())


@celery_app.task(name=INGEST_TASK_NAME, bind=True, acks_late=True, max_retries=None)
def ingest_item(self: Any, message: dict[str, Any]) -> str:
    """Run the ingestion pipeline for one work message.

    A ``retry`` outcome is handed back to the broker; the attempt number is
    derived from Celery's retry counter so the pipeline knows when to stop.
    """

    settings = _load_settings()
    work = WorkMessage.from_dict(message)
    attempt = int(self.request.retries or 0) + 1
    max_attempts = settings.queues.max_attempts

    runtime = _runtime()
    with runtime.repository() as repository:
        outcome = runtime.pipeline(repository).handle(work, attempt=attempt, max_attempts=max_attempts)

    if outcome is ProcessOutcome.RETRY:
        LOGGER.info("ingest_task_retry", extra={"item_id": work.item_id, "attempt": attempt})
        raise self.retry(countdown=settings.queues.retry_delay_seconds, max_retries=max_attempts - 1)
    return outcome.value


@celery_app.task(name=SWEEP_TASK_NAME, acks_late=True)
def sweep(full_reset: bool = False) -> dict[str, int]:
    """Run the reconciliation sweeper; ``full_reset`` is only sent by administrators."""

    runtime = _runtime()
    with runtime.repository() as repository:
        sweeper = runtime.sweeper(repository)
        report = sweeper.full_reset() if full_reset else sweeper.sweep()
    return report.to_dict()


__all__ = ["SWEEP_TASK_NAME", "celery_app", "ingest_item", "sweep"]
