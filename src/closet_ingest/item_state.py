"""Item lifecycle states and the allowed transitions between them."""

from __future__ import annotations

from enum import Enum
from typing import Final


class ItemStatus(str, Enum):
    """Closed set of lifecycle states stored in ``items.status``."""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    COMPLETED = "completed"
    FAILED = "failed"


# processing -> processing covers a redelivered message whose first worker died
# before acking; failed -> processing covers queue-level retries.
ALLOWED_TRANSITIONS: Final[dict[ItemStatus, frozenset[ItemStatus]]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.PROCESSING, ItemStatus.FAILED}),
    ItemStatus.PROCESSING: frozenset({ItemStatus.PROCESSING, ItemStatus.PROCESSED, ItemStatus.FAILED}),
    ItemStatus.PROCESSED: frozenset({ItemStatus.COMPLETED}),
    ItemStatus.FAILED: frozenset({ItemStatus.PROCESSING}),
    ItemStatus.COMPLETED: frozenset(),
}

SETTLED_STATUSES: Final[frozenset[ItemStatus]] = frozenset({ItemStatus.PROCESSED, ItemStatus.COMPLETED})


def can_transition(current: ItemStatus | str, target: ItemStatus | str) -> bool:
    """Return whether ``current -> target`` is listed in :data:`ALLOWED_TRANSITIONS`."""

    try:
        source = ItemStatus(current)
        destination = ItemStatus(target)
    except ValueError:
        return False
    return destination in ALLOWED_TRANSITIONS[source]


__all__ = ["ALLOWED_TRANSITIONS", "ItemStatus", "SETTLED_STATUSES", "can_transition"]
