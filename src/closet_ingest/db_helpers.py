"""Shared helpers for database URL handling."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine.url import make_url


def normalize_database_url(target: str | Path) -> str:
    """Normalize database URL or path inputs to absolute URLs."""

    if isinstance(target, Path):
        return f"sqlite:///{target.resolve()}"

    raw = str(target).strip()
    if not raw:
        raise ValueError("database target cannot be empty")

    if "://" not in raw:
        return f"sqlite:///{Path(raw).resolve()}"

    url = make_url(raw)
    if url.drivername.startswith("sqlite"):
        database = url.database or ""
        if database not in {":memory:", ""}:
            db_path = Path(database)
            if not db_path.is_absolute():
                db_path = (Path.cwd() / db_path).resolve()
            url = url.set(database=str(db_path))
        return url.render_as_string(hide_password=False)

    return raw


def sqlite_path_from_target(target: str | Path) -> Path | None:
    """Return the filesystem path of a SQLite target, or ``None`` for other dialects."""

    if isinstance(target, Path):
        return target.resolve()

    raw = str(target).strip()
    if "://" not in raw:
        return Path(raw).resolve()

    url = make_url(raw)
    if not url.drivername.startswith("sqlite"):
        return None

    database = url.database or ""
    if database in {"", ":memory:"}:
        return None

    db_path = Path(database)
    if not db_path.is_absolute():
        db_path = (Path.cwd() / db_path).resolve()
    return db_path


__all__ = ["normalize_database_url", "sqlite_path_from_target"]
