"""Reconcile object storage with the metadata store after failed or abandoned uploads."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass

from closet_ingest.config import StorageConfig
from closet_ingest.db import Item
from closet_ingest.item_state import ItemStatus
from closet_ingest.object_store import ObjectStore, StoredObject, item_id_from_key, key_from_url
from closet_ingest.repository import ItemRepository
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "sweeper"})

DEFAULT_STALE_AFTER_SECONDS = 4 * 60 * 60

_KEEP_STAGING_VALUES = frozenset({ItemStatus.PROCESSED.value})


@dataclass
class SweepReport:
    staging_deleted: int = 0
    processed_deleted: int = 0
    orphans_deleted: int = 0
    records_deleted: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    def summary(self) -> str:
        return (
            f"staging={self.staging_deleted} processed={self.processed_deleted} "
            f"orphans={self.orphans_deleted} records={self.records_deleted} errors={self.errors}"
        )


class ReconciliationSweeper:
    """Delete stale staging objects, abandoned ``processed`` items, and orphaned permanent images.

    The sweeper only talks to the repository and the object store, so it can
    run from a scheduler, a CLI, or an admin endpoint independently of any
    pipeline worker. A failure on one object is logged and counted; the pass
    continues with the next object.
    """

    def __init__(
        self,
        repository: ItemRepository,
        store: ObjectStore,
        storage: StorageConfig,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._store = store
        self._storage = storage
        self._stale_after = stale_after_seconds
        self._clock = clock

    def _staging_root(self) -> str:
        return self._storage.staging_prefix.rstrip("/") + "/"

    def _permanent_root(self) -> str:
        return self._storage.permanent_prefix.rstrip("/") + "/"

    def sweep(self, now: float | None = None) -> SweepReport:
        """Run the three time-gated passes against ``now`` (defaults to the clock)."""

        cutoff = (self._clock() if now is None else now) - self._stale_after
        report = SweepReport()
        LOGGER.info("sweep_start", extra={"cutoff": cutoff})

        self._sweep_stale_staging(cutoff, report)
        self._sweep_abandoned_processed(cutoff, report)
        self._sweep_orphaned_permanent(report)

        LOGGER.info("sweep_complete", extra=report.to_dict())
        return report

    def _sweep_stale_staging(self, cutoff: float, report: SweepReport) -> None:
        stale = [obj for obj in self._store.list(self._staging_root()) if obj.modified < cutoff]
        if not stale:
            return
        statuses = self._repository.statuses_for(item_id_from_key(obj.key) for obj in stale)
        for obj in stale:
            status = statuses.get(item_id_from_key(obj.key))
            # a completed item never references staging, so anything left there is a leftover
            if status in _KEEP_STAGING_VALUES:
                continue
            if self._delete_object(obj, report, reason=status or "no_record"):
                report.staging_deleted += 1

    def _sweep_abandoned_processed(self, cutoff: float, report: SweepReport) -> None:
        for item in self._repository.processed_before(cutoff):
            item_id = item.id
            try:
                for key in self._item_staging_keys(item):
                    self._store.delete(key)
                self._repository.delete(item)
            except Exception as exc:
                self._repository.session.rollback()
                report.errors += 1
                LOGGER.error("sweep_processed_item_error", extra={"item_id": item_id, "error": str(exc)})
                continue
            report.processed_deleted += 1
            LOGGER.info("sweep_processed_item_deleted", extra={"item_id": item_id})

    def _sweep_orphaned_permanent(self, report: SweepReport) -> None:
        objects = self._store.list(self._permanent_root())
        if not objects:
            return
        known = self._repository.statuses_for(item_id_from_key(obj.key) for obj in objects)
        for obj in objects:
            if item_id_from_key(obj.key) in known:
                continue
            if self._delete_object(obj, report, reason="no_record"):
                report.orphans_deleted += 1

    def full_reset(self) -> SweepReport:
        """Delete every staging object and every non-``completed`` record and image.

        Administrative only; never scheduled.
        """

        report = SweepReport()
        LOGGER.warning("sweep_full_reset_start")

        for obj in self._store.list(self._staging_root()):
            if self._delete_object(obj, report, reason="full_reset"):
                report.staging_deleted += 1

        objects = self._store.list(self._permanent_root())
        statuses = self._repository.statuses_for(item_id_from_key(obj.key) for obj in objects)
        for obj in objects:
            if statuses.get(item_id_from_key(obj.key)) == ItemStatus.COMPLETED.value:
                continue
            if self._delete_object(obj, report, reason="full_reset"):
                report.orphans_deleted += 1

        report.records_deleted = self._repository.delete_non_completed()
        LOGGER.warning("sweep_full_reset_complete", extra=report.to_dict())
        return report

    def _item_staging_keys(self, item: Item) -> set[str]:
        keys = {
            obj.key
            for obj in self._store.list(f"{self._staging_root()}{item.owner_id}/")
            if item_id_from_key(obj.key) == item.id
        }
        if item.staging_key:
            keys.add(item.staging_key)
        url_key = key_from_url(self._storage.public_url_prefix, item.image_url)
        if url_key and url_key.startswith(self._staging_root()):
            keys.add(url_key)
        return keys

    def _delete_object(self, obj: StoredObject, report: SweepReport, *, reason: str) -> bool:
        try:
            self._store.delete(obj.key)
        except Exception as exc:
            report.errors += 1
            LOGGER.error("sweep_object_delete_error", extra={"key": obj.key, "error": str(exc)})
            return False
        LOGGER.info("sweep_object_deleted", extra={"key": obj.key, "reason": reason})
        return True


__all__ = ["DEFAULT_STALE_AFTER_SECONDS", "ReconciliationSweeper", "SweepReport"]
