"""Near-duplicate lookup against an owner's completed items."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from closet_ingest.hasher import hamming_distance, is_valid_phash
from closet_ingest.repository import ItemRepository, decode_list
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "duplicates"})

DEFAULT_HAMMING_THRESHOLD = 10


@dataclass(frozen=True)
class DuplicateMatch:
    """Nearest completed item within the Hamming threshold."""

    item_id: str
    distance: int
    subcategory: str | None
    colors: list[str]
    brand: str | None
    image_url: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.item_id,
            "distance": self.distance,
            "subcategory": self.subcategory,
            "colors": self.colors,
            "brand": self.brand,
            "image_url": self.image_url,
        }


class DuplicateDetector:
    """Compare a prospective upload's hash with an owner's completed items.

    The result is advisory; callers decide whether to block, warn, or ignore.
    Items that are still pending confirmation never take part in the
    comparison.
    """

    def __init__(self, repository: ItemRepository, threshold: int = DEFAULT_HAMMING_THRESHOLD) -> None:
        self._repository = repository
        self._threshold = threshold

    @property
    def threshold(self) -> int:
        return self._threshold

    def find_duplicate(self, owner_id: str, phash: str) -> DuplicateMatch | None:
        if not is_valid_phash(phash):
            raise ValueError(f"perceptual hash must be 16 hex characters, got {phash!r}")

        best: DuplicateMatch | None = None
        for item, stored in self._repository.completed_hashes(owner_id):
            if not is_valid_phash(stored):
                LOGGER.warning("duplicate_stored_hash_invalid", extra={"item_id": item.id, "phash": stored})
                continue
            distance = hamming_distance(phash, stored)
            if distance > self._threshold:
                continue
            # Strictly-less keeps the first candidate on ties.
            if best is None or distance < best.distance:
                best = DuplicateMatch(
                    item_id=item.id,
                    distance=distance,
                    subcategory=item.subcategory,
                    colors=decode_list(item.colors),
                    brand=item.brand,
                    image_url=item.image_url,
                )

        if best is not None:
            LOGGER.info(
                "duplicate_found",
                extra={"owner_id": owner_id, "item_id": best.item_id, "distance": best.distance},
            )
        return best


__all__ = ["DEFAULT_HAMMING_THRESHOLD", "DuplicateDetector", "DuplicateMatch"]
