"""Initialize the item database schema and ensure the local object store root exists."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure src/ is on sys.path so we can import shared logging and DB helpers.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.append(str(SRC_ROOT))

from closet_ingest.config import load_settings  # noqa: E402
from closet_ingest.db import open_session  # noqa: E402
from closet_ingest.db_helpers import sqlite_path_from_target  # noqa: E402
from utils.logging import get_logger  # noqa: E402

LOGGER = get_logger(__name__)


def _init_primary_db(target: str) -> None:
    session = open_session(target)
    session.close()
    LOGGER.info(
        "init_primary_db_ok",
        extra={"target": target, "sqlite_path": str(sqlite_path_from_target(target) or "")},
    )


def _init_storage_root(root: Path) -> None:
    root.mkdir(parents=True, exist_ok=True)
    LOGGER.info("init_storage_root_ok", extra={"root": str(root)})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the item database schema and storage root.")
    parser.add_argument(
        "--data-db",
        type=str,
        default=None,
        help="Database URL or path. Defaults to databases.primary_url in settings.yaml.",
    )
    parser.add_argument(
        "--storage-root",
        dest="storage_root",
        type=str,
        default=None,
        help="Local object store root. Defaults to storage.root in settings.yaml (local backend only).",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings()
    primary_target = args.data_db or settings.databases.primary_url
    _init_primary_db(primary_target)

    storage_root: Path | None = None
    if args.storage_root or settings.storage.backend == "local":
        storage_root = Path(args.storage_root or settings.storage.root).resolve()
        _init_storage_root(storage_root)

    LOGGER.info(
        "init_databases_complete",
        extra={"primary": primary_target, "storage_root": str(storage_root) if storage_root else None},
    )


if __name__ == "__main__":
    main()
