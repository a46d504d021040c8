"""Exception hierarchy for the ingestion pipeline."""

from __future__ import annotations


class ClosetIngestError(Exception):
    """Base class for all domain errors raised by closet_ingest."""


class ItemNotFoundError(ClosetIngestError):
    """Raised when an item id does not resolve to a stored record."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Item not found: {item_id}")
        self.item_id = item_id


class InvalidTransitionError(ClosetIngestError):
    """Raised when a status change is not allowed by the transition table."""

    def __init__(self, item_id: str, current: str, target: str) -> None:
        super().__init__(f"Item {item_id}: cannot transition from {current!r} to {target!r}")
        self.item_id = item_id
        self.current = current
        self.target = target


class StagingObjectMissingError(ClosetIngestError):
    """Raised when a staged upload can no longer be read from the object store."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Original not found: {key}")
        self.key = key


class UploadRejectedError(ClosetIngestError):
    """Raised when an upload payload is empty, too large, or otherwise unusable."""


class MetadataParseError(ClosetIngestError):
    """Raised by a parsing step when it cannot produce valid metadata."""


class InferenceError(ClosetIngestError):
    """Raised when the vision inference service call fails."""


class TransformError(ClosetIngestError):
    """Raised when the image transform service fails or returns unusable output."""


class TrimError(ClosetIngestError):
    """Raised when the trim compute unit fails."""


__all__ = [
    "ClosetIngestError",
    "ItemNotFoundError",
    "InvalidTransitionError",
    "StagingObjectMissingError",
    "UploadRejectedError",
    "MetadataParseError",
    "InferenceError",
    "TransformError",
    "TrimError",
]
