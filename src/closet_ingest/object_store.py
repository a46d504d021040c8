"""Object store contract with filesystem, in-memory, and S3-compatible backends."""

from __future__ import annotations

import mimetypes
import os
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from threading import Lock
from typing import Any

from closet_ingest.hasher import compute_content_hash
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "object_store"})

_EXTENSION_BY_CONTENT_TYPE: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/gif": "gif",
}


@dataclass(frozen=True)
class StoredObject:
    """Listing entry for one stored blob."""

    key: str
    size: int
    modified: float
    checksum: str | None = None


def extension_for(content_type: str | None, default: str = "jpg") -> str:
    """Map an image MIME type to the file extension used in object keys."""

    if not content_type:
        return default
    normalized = content_type.split(";", 1)[0].strip().lower()
    if normalized in _EXTENSION_BY_CONTENT_TYPE:
        return _EXTENSION_BY_CONTENT_TYPE[normalized]
    subtype = normalized.split("/", 1)[-1]
    return subtype if subtype.isalnum() else default


def content_type_for(key: str) -> str:
    guessed, _ = mimetypes.guess_type(key)
    if guessed:
        return guessed
    if key.endswith(".webp"):
        return "image/webp"
    return "application/octet-stream"


def staging_key(prefix: str, owner_id: str, item_id: str, extension: str) -> str:
    return f"{prefix}/{owner_id}/{item_id}.{extension}"


def permanent_key(prefix: str, item_id: str, extension: str = "webp") -> str:
    return f"{prefix}/{item_id}.{extension}"


def item_id_from_key(key: str) -> str:
    """Return the item id encoded in the final path segment of ``key``."""

    return PurePosixPath(key).name.split(".", 1)[0]


def public_url(url_prefix: str, key: str) -> str:
    return f"{url_prefix.rstrip('/')}/{key}"


def key_from_url(url_prefix: str, url: str | None) -> str | None:
    """Invert :func:`public_url`; returns ``None`` for placeholders and foreign URLs."""

    if not url:
        return None
    marker = url_prefix.rstrip("/") + "/"
    if not url.startswith(marker):
        return None
    return url[len(marker) :] or None


class ObjectStore(ABC):
    """Minimal blob contract used by the stager, pipeline, catalog, and sweeper."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredObject:
        """Write ``data`` at ``key``, replacing any existing object."""

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Return the object bytes, or ``None`` when the key does not exist."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete ``key``; deleting a missing key is not an error."""

    @abstractmethod
    def list(self, prefix: str) -> list[StoredObject]:
        """Return every object whose key starts with ``prefix``."""

    def copy(self, source: str, destination: str) -> StoredObject | None:
        data = self.get(source)
        if data is None:
            return None
        return self.put(destination, data, content_type_for(destination))


class LocalObjectStore(ObjectStore):
    """Filesystem-backed store; keys map to paths under ``root``."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise ValueError(f"object key escapes the store root: {key!r}")
        return path

    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredObject:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename keeps readers from observing a partial object.
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=path.suffix)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        stat = path.stat()
        return StoredObject(key=key, size=stat.st_size, modified=stat.st_mtime, checksum=compute_content_hash(data))

    def get(self, key: str) -> bytes | None:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def list(self, prefix: str) -> list[StoredObject]:
        base = self._root / prefix
        search_root = base if base.is_dir() else base.parent
        if not search_root.exists():
            return []
        objects: list[StoredObject] = []
        for path in sorted(search_root.rglob("*")):
            if not path.is_file() or path.name.startswith(".tmp-"):
                continue
            key = path.relative_to(self._root).as_posix()
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            objects.append(StoredObject(key=key, size=stat.st_size, modified=stat.st_mtime))
        return objects


class MemoryObjectStore(ObjectStore):
    """Thread-safe in-process store for tests and single-process development."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._objects: dict[str, tuple[bytes, str | None, float]] = {}
        self._lock = Lock()

    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredObject:
        modified = self._clock()
        with self._lock:
            self._objects[key] = (bytes(data), content_type, modified)
        return StoredObject(key=key, size=len(data), modified=modified, checksum=compute_content_hash(data))

    def get(self, key: str) -> bytes | None:
        with self._lock:
            entry = self._objects.get(key)
        return entry[0] if entry else None

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def list(self, prefix: str) -> list[StoredObject]:
        with self._lock:
            snapshot = sorted(self._objects.items())
        return [
            StoredObject(key=key, size=len(data), modified=modified, checksum=compute_content_hash(data))
            for key, (data, _, modified) in snapshot
            if key.startswith(prefix)
        ]

    def set_modified(self, key: str, modified: float) -> None:
        with self._lock:
            data, content_type, _ = self._objects[key]
            self._objects[key] = (data, content_type, modified)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._objects)


class S3ObjectStore(ObjectStore):
    """S3-compatible store (AWS S3, Cloudflare R2, MinIO) through boto3."""

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        region: str | None = None,
        client: Any | None = None,
    ) -> None:
        if client is None:
            import boto3

            client = boto3.client("s3", endpoint_url=endpoint_url, region_name=region)
        self._client = client
        self._bucket = bucket

    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredObject:
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=content_type or content_type_for(key),
        )
        return StoredObject(key=key, size=len(data), modified=time.time(), checksum=compute_content_hash(data))

    def get(self, key: str) -> bytes | None:
        from botocore.exceptions import ClientError

        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                return None
            raise
        return response["Body"].read()

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self._bucket, Key=key)

    def list(self, prefix: str) -> list[StoredObject]:
        paginator = self._client.get_paginator("list_objects_v2")
        objects: list[StoredObject] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            for entry in page.get("Contents", []):
                objects.append(
                    StoredObject(
                        key=entry["Key"],
                        size=int(entry.get("Size", 0)),
                        modified=entry["LastModified"].timestamp(),
                        checksum=str(entry.get("ETag", "")).strip('"') or None,
                    )
                )
        return objects


__all__ = [
    "LocalObjectStore",
    "MemoryObjectStore",
    "ObjectStore",
    "S3ObjectStore",
    "StoredObject",
    "content_type_for",
    "extension_for",
    "item_id_from_key",
    "key_from_url",
    "permanent_key",
    "public_url",
    "staging_key",
]
