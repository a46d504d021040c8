"""Catalog operations consumed by the UI layer: status polling, listing, confirmation, duplicate checks."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from closet_ingest.config import StorageConfig
from closet_ingest.db import CATEGORIES
from closet_ingest.duplicates import DuplicateDetector, DuplicateMatch
from closet_ingest.errors import InvalidTransitionError, ItemNotFoundError, StagingObjectMissingError
from closet_ingest.item_state import ItemStatus, can_transition
from closet_ingest.object_store import ObjectStore, permanent_key, public_url
from closet_ingest.repository import USER_FIELDS, ItemRepository, coerce_list, item_to_dict
from closet_ingest.thumbnailing import OUTPUT_EXTENSION
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "catalog"})

EDITABLE_METADATA_FIELDS: tuple[str, ...] = (
    "category",
    "subcategory",
    "colors",
    "brand",
    "description",
    "tags",
    "material",
    "fit",
    "style",
    "season",
    "boldness",
)


class Catalog:
    """Read and promote items on behalf of the UI layer."""

    def __init__(
        self,
        repository: ItemRepository,
        store: ObjectStore,
        storage: StorageConfig,
        detector: DuplicateDetector,
    ) -> None:
        self._repository = repository
        self._store = store
        self._storage = storage
        self._detector = detector

    def get_item_status(self, item_id: str) -> dict[str, Any]:
        return item_to_dict(self._repository.require(item_id))

    def list_completed_items(self, owner_id: str) -> list[dict[str, Any]]:
        items = self._repository.list_by_owner(owner_id, (ItemStatus.COMPLETED,))
        return [item_to_dict(item) for item in items]

    def check_duplicate(self, owner_id: str, phash: str) -> DuplicateMatch | None:
        return self._detector.find_duplicate(owner_id, phash.lower())

    def confirm_item(self, item_id: str, owner_id: str, overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Promote a processed item to ``completed`` and move its image to permanent storage.

        The image is copied first, then the record is updated, then the staged
        copy is deleted, so a crash at any point leaves the record pointing at
        an object that exists. Confirming an already-completed item returns it
        unchanged.

        Raises:
            ItemNotFoundError: If the item does not exist or belongs to another owner.
            InvalidTransitionError: If the item is not ``processed``.
            StagingObjectMissingError: If the staged image has disappeared.
            ValueError: If ``overrides`` names an unknown category or a list field is malformed.
        """

        item = self._repository.require(item_id)
        if item.owner_id != owner_id:
            raise ItemNotFoundError(item_id)
        if item.status == ItemStatus.COMPLETED.value:
            return item_to_dict(item)
        if not can_transition(item.status, ItemStatus.COMPLETED):
            raise InvalidTransitionError(item_id, item.status, ItemStatus.COMPLETED.value)

        values = dict(overrides or {})
        category = values.get("category")
        if category is not None and category not in CATEGORIES:
            raise ValueError(f"category must be one of {', '.join(CATEGORIES)}")
        for name in ("colors", "tags"):
            if values.get(name) is not None:
                values[name] = coerce_list(values[name])

        source = item.staging_key
        if not source:
            raise StagingObjectMissingError(f"<none for item {item_id}>")
        destination = permanent_key(self._storage.permanent_prefix, item_id, OUTPUT_EXTENSION)
        copied = self._store.copy(source, destination)
        if copied is None:
            raise StagingObjectMissingError(source)

        self._repository.apply_fields(item, values, allowed=EDITABLE_METADATA_FIELDS + USER_FIELDS)
        self._repository.set_image(
            item,
            staging_key=None,
            url=public_url(self._storage.public_url_prefix, destination),
        )
        self._repository.transition(item, ItemStatus.COMPLETED)
        try:
            self._store.delete(source)
        except Exception as exc:
            # the sweeper reclaims the leftover once it goes stale
            LOGGER.warning(
                "item_confirm_staging_delete_error",
                extra={"item_id": item_id, "key": source, "error": str(exc)},
            )

        LOGGER.info("item_confirmed", extra={"item_id": item_id, "owner_id": owner_id, "key": destination})
        return item_to_dict(item)


__all__ = ["Catalog", "EDITABLE_METADATA_FIELDS"]
