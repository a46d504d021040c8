"""Repository helpers for catalog item records."""

from __future__ import annotations

import json
import time
from collections.abc import Iterable, Sequence
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from closet_ingest.db import PLACEHOLDER_CATEGORY, PLACEHOLDER_URL, Item
from closet_ingest.errors import InvalidTransitionError, ItemNotFoundError
from closet_ingest.item_state import ItemStatus, can_transition
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "item_repository"})

_JSON_LIST_FIELDS: frozenset[str] = frozenset({"colors", "tags"})
_METADATA_FIELDS: tuple[str, ...] = (
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
    "raw_response",
)
USER_FIELDS: tuple[str, ...] = ("size", "cost", "purchase_date", "store", "notes")


def decode_list(raw: str | None) -> list[str]:
    """Decode a JSON list column, tolerating legacy comma-separated values."""

    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return [part.strip() for part in raw.split(",") if part.strip()]
    if isinstance(value, list):
        return [str(entry) for entry in value]
    return [str(value)]


def coerce_list(value: Any) -> list[str]:
    """Coerce a list override; a plain string is treated as comma-separated."""

    if isinstance(value, str):
        value = value.split(",")
    elif not isinstance(value, (list, tuple)):
        raise ValueError(f"expected a list or comma-separated string, got {type(value).__name__}")
    return [text for text in (str(entry).strip() for entry in value) if text]


def item_to_dict(item: Item) -> dict[str, Any]:
    """Serialize an :class:`Item` row for JSON responses."""

    return {
        "id": item.id,
        "owner_id": item.owner_id,
        "status": item.status,
        "image_url": item.image_url,
        "thumbnail_url": item.thumbnail_url,
        "phash": item.phash,
        "category": item.category,
        "subcategory": item.subcategory,
        "colors": decode_list(item.colors),
        "brand": item.brand,
        "description": item.description,
        "tags": decode_list(item.tags),
        "material": item.material,
        "fit": item.fit,
        "style": item.style,
        "season": item.season,
        "boldness": item.boldness,
        "size": item.size,
        "cost": item.cost,
        "purchase_date": item.purchase_date,
        "store": item.store,
        "notes": item.notes,
        "error_message": item.error_message,
        "attempts": item.attempts,
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


class ItemRepository:
    """Persist catalog items via SQLAlchemy, enforcing the status transition table."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def create_placeholder(self, *, item_id: str, owner_id: str, staging_key: str, phash: str | None) -> Item:
        """Insert a ``pending`` record with sentinel values for fields the pipeline fills in later."""

        now = time.time()
        item = Item(
            id=item_id,
            owner_id=owner_id,
            status=ItemStatus.PENDING.value,
            staging_key=staging_key,
            image_url=PLACEHOLDER_URL,
            thumbnail_url=PLACEHOLDER_URL,
            phash=phash.lower() if phash else None,
            category=PLACEHOLDER_CATEGORY,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        self._session.add(item)
        self._session.commit()
        LOGGER.info("item_placeholder_created", extra={"item_id": item_id, "owner_id": owner_id})
        return item

    def get(self, item_id: str) -> Item | None:
        return self._session.get(Item, item_id)

    def require(self, item_id: str) -> Item:
        item = self.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def transition(self, item: Item, target: ItemStatus, *, error_message: str | None = None) -> Item:
        """Move ``item`` to ``target`` or raise :class:`InvalidTransitionError`.

        ``error_message`` is stored only for ``failed``; every other state clears it.
        """

        if not can_transition(item.status, target):
            raise InvalidTransitionError(item.id, item.status, target.value)

        previous = item.status
        item.status = target.value
        item.error_message = error_message if target is ItemStatus.FAILED else None
        if target is ItemStatus.PROCESSING:
            item.attempts = int(item.attempts or 0) + 1
        item.updated_at = time.time()
        self._session.add(item)
        self._session.commit()
        LOGGER.info("item_transition", extra={"item_id": item.id, "from": previous, "to": target.value})
        return item

    def set_image(self, item: Item, *, staging_key: str | None, url: str) -> Item:
        """Point both image URLs at ``url`` and record the backing object key."""

        item.staging_key = staging_key
        item.image_url = url
        item.thumbnail_url = url
        item.updated_at = time.time()
        self._session.add(item)
        self._session.commit()
        return item

    def set_phash(self, item: Item, phash: str) -> Item:
        """Record the perceptual hash once; a different value for an already-hashed item is rejected."""

        normalized = phash.lower()
        if item.phash and item.phash != normalized:
            raise ValueError(f"Item {item.id} already has perceptual hash {item.phash!r}")
        item.phash = normalized
        self._session.add(item)
        self._session.commit()
        return item

    def apply_fields(self, item: Item, values: dict[str, Any], *, allowed: Iterable[str] = _METADATA_FIELDS) -> Item:
        """Write attribute values onto ``item``; list fields are stored as JSON text."""

        permitted = set(allowed)
        for name, value in values.items():
            if name not in permitted:
                continue
            if name in _JSON_LIST_FIELDS:
                value = json.dumps(coerce_list(value)) if value is not None else None
            setattr(item, name, value)
        item.updated_at = time.time()
        self._session.add(item)
        self._session.commit()
        return item

    def list_by_owner(self, owner_id: str, statuses: Sequence[ItemStatus]) -> list[Item]:
        """Return an owner's items in the given states, oldest first."""

        stmt = (
            select(Item)
            .where(Item.owner_id == owner_id, Item.status.in_([status.value for status in statuses]))
            .order_by(Item.created_at, Item.id)
        )
        return list(self._session.execute(stmt).scalars())

    def completed_hashes(self, owner_id: str) -> list[tuple[Item, str]]:
        """Return ``(item, phash)`` pairs for an owner's completed, hashed items."""

        stmt = (
            select(Item)
            .where(
                Item.owner_id == owner_id,
                Item.status == ItemStatus.COMPLETED.value,
                Item.phash.is_not(None),
            )
            .order_by(Item.created_at, Item.id)
        )
        return [(item, item.phash or "") for item in self._session.execute(stmt).scalars()]

    def processed_before(self, cutoff: float) -> list[Item]:
        """Return ``processed`` items created before ``cutoff`` (never confirmed by the user)."""

        stmt = select(Item).where(Item.status == ItemStatus.PROCESSED.value, Item.created_at < cutoff)
        return list(self._session.execute(stmt).scalars())

    def statuses_for(self, item_ids: Iterable[str]) -> dict[str, str]:
        """Return ``{item_id: status}`` for the ids that exist."""

        ids = sorted(set(item_ids))
        if not ids:
            return {}
        stmt = select(Item.id, Item.status).where(Item.id.in_(ids))
        return {row.id: row.status for row in self._session.execute(stmt)}

    def delete(self, item: Item) -> None:
        self._session.delete(item)
        self._session.commit()
        LOGGER.info("item_deleted", extra={"item_id": item.id, "status": item.status})

    def delete_non_completed(self) -> int:
        """Delete every record that is not ``completed`` and return the row count."""

        result = self._session.execute(delete(Item).where(Item.status != ItemStatus.COMPLETED.value))
        self._session.commit()
        return int(result.rowcount or 0)


__all__ = ["ItemRepository", "USER_FIELDS", "coerce_list", "decode_list", "item_to_dict"]
