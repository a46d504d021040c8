"""Scan directories and stage every discovered image for one owner."""

from __future__ import annotations

import mimetypes
from collections.abc import Iterable, Sequence
from pathlib import Path

import typer

from closet_ingest.config import load_settings
from closet_ingest.runtime import build_runtime
from closet_ingest.stager import BatchUpload
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "upload_cli"})

IMAGE_EXTENSIONS: frozenset[str] = frozenset({".jpg", ".jpeg", ".png", ".webp", ".heic", ".gif"})


def iter_images(roots: Sequence[Path]) -> Iterable[Path]:
    for root in roots:
        if root.is_file():
            if root.suffix.lower() in IMAGE_EXTENSIONS:
                yield root
            continue
        for path in sorted(root.rglob("*")):
            if path.is_file() and path.suffix.lower() in IMAGE_EXTENSIONS:
                yield path


def _to_upload(path: Path, owner_id: str) -> BatchUpload:
    content_type, _ = mimetypes.guess_type(path.name)
    return BatchUpload(name=str(path), data=path.read_bytes(), owner_id=owner_id, content_type=content_type)


def main(
    roots: list[Path] = typer.Argument(..., help="One or more image files or directories to scan."),
    owner: str = typer.Option(..., "--owner", "-o", help="Owner id the items are staged for."),
    concurrency: int | None = typer.Option(
        None,
        "--concurrency",
        "-c",
        help="Concurrent uploads in flight; defaults to upload.batch_concurrency.",
    ),
) -> None:
    """Stage images and enqueue them for ingestion with bounded parallelism."""

    settings = load_settings()
    if concurrency is not None:
        settings.upload.batch_concurrency = max(1, concurrency)

    paths = list(iter_images(roots))
    if not paths:
        LOGGER.warning("upload_no_files", extra={"roots": [str(root) for root in roots]})
        return

    LOGGER.info(
        "upload_start",
        extra={"files": len(paths), "owner_id": owner, "concurrency": settings.upload.batch_concurrency},
    )
    runtime = build_runtime(settings)
    results = runtime.batch_uploader().upload_many([_to_upload(path, owner) for path in paths])

    for result in results:
        if result.ok:
            typer.echo(f"staged {result.name} -> {result.item_id}")
        else:
            typer.echo(f"failed {result.name}: {result.error}", err=True)

    failed = sum(1 for result in results if not result.ok)
    LOGGER.info("upload_complete", extra={"staged": len(results) - failed, "failed": failed})
    if failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    typer.run(main)


__all__ = ["iter_images", "main"]
