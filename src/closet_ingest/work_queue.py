"""Work messages and the queue contract the stager publishes to."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "work_queue"})

INGEST_TASK_NAME = "closet_ingest.task_queue.ingest_item"


@dataclass(frozen=True)
class WorkMessage:
    """One unit of pipeline work; delivered at least once."""

    item_id: str
    staging_key: str
    owner_id: str
    phash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "WorkMessage":
        try:
            return cls(
                item_id=str(payload["item_id"]),
                staging_key=str(payload["staging_key"]),
                owner_id=str(payload["owner_id"]),
                phash=payload.get("phash"),
            )
        except KeyError as exc:
            raise ValueError(f"work message is missing field {exc.args[0]!r}") from exc


class WorkQueue(ABC):
    """Durable at-least-once queue."""

    @abstractmethod
    def send(self, message: WorkMessage) -> None:
        """Publish ``message`` for asynchronous processing."""


class CeleryWorkQueue(WorkQueue):
    """Publish messages to the Celery ingest task by name."""

    def __init__(self, app: Any, queue: str, task_name: str = INGEST_TASK_NAME) -> None:
        self._app = app
        self._queue = queue
        self._task_name = task_name

    def send(self, message: WorkMessage) -> None:
        self._app.send_task(self._task_name, kwargs={"message": message.to_dict()}, queue=self._queue)
        LOGGER.info("work_message_sent", extra={"item_id": message.item_id, "queue": self._queue})


class MemoryWorkQueue(WorkQueue):
    """In-process FIFO queue for tests and single-process development.

    :meth:`drain` plays the broker's role: a handler result of ``"retry"``
    puts the message back with its attempt counter incremented until
    ``max_attempts`` deliveries have been made.
    """

    def __init__(self) -> None:
        self._pending: deque[tuple[WorkMessage, int]] = deque()
        self._lock = Lock()
        self.sent: list[WorkMessage] = []

    def send(self, message: WorkMessage) -> None:
        with self._lock:
            self._pending.append((message, 1))
            self.sent.append(message)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self, handler: Callable[[WorkMessage, int], Any], max_attempts: int = 3) -> list[tuple[WorkMessage, Any]]:
        """Deliver every pending message to ``handler(message, attempt)`` and return the outcomes."""

        results: list[tuple[WorkMessage, Any]] = []
        while True:
            with self._lock:
                if not self._pending:
                    break
                message, attempt = self._pending.popleft()
            outcome = handler(message, attempt)
            results.append((message, outcome))
            if str(getattr(outcome, "value", outcome)) == "retry" and attempt < max_attempts:
                with self._lock:
                    self._pending.append((message, attempt + 1))
        return results


__all__ = ["CeleryWorkQueue", "INGEST_TASK_NAME", "MemoryWorkQueue", "WorkMessage", "WorkQueue"]
