from __future__ import annotations

import pytest

from closet_ingest import task_queue
from closet_ingest.config import Settings
from closet_ingest.item_state import ItemStatus
from closet_ingest.runtime import Runtime
from closet_ingest.work_queue import INGEST_TASK_NAME
from conftest import make_photo


@pytest.fixture
def bound_runtime(runtime: Runtime, settings: Settings, monkeypatch: pytest.MonkeyPatch) -> Runtime:
    monkeypatch.setattr(task_queue, "_runtime", lambda: runtime)
    monkeypatch.setattr(task_queue, "_load_settings", lambda: settings)
    return runtime


def test_tasks_are_registered_under_stable_names() -> None:
    assert INGEST_TASK_NAME in task_queue.celery_app.tasks
    assert task_queue.SWEEP_TASK_NAME in task_queue.celery_app.tasks
    assert task_queue.celery_app.conf.task_acks_late is True
    assert task_queue.celery_app.conf.worker_prefetch_multiplier == 1


def test_ingest_task_runs_pipeline(bound_runtime: Runtime) -> None:
    with bound_runtime.repository() as repository:
        staged = bound_runtime.stager(repository).stage(make_photo(), "owner-a", content_type="image/jpeg")
    [message] = bound_runtime.queue.sent

    result = task_queue.ingest_item.apply(kwargs={"message": message.to_dict()})

    assert result.get() == "processed"
    with bound_runtime.repository() as repository:
        assert repository.require(staged.item_id).status == ItemStatus.PROCESSED.value


def test_sweep_task_returns_report(bound_runtime: Runtime) -> None:
    result = task_queue.sweep.apply()

    assert result.get() == {
        "staging_deleted": 0,
        "processed_deleted": 0,
        "orphans_deleted": 0,
        "records_deleted": 0,
        "errors": 0,
    }
