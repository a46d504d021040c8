"""SQLAlchemy schema for catalog items and session management."""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any

from sqlalchemy import Float, Index, Integer, String, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from closet_ingest.db_helpers import normalize_database_url
from closet_ingest.item_state import ItemStatus
from utils.logging import get_logger

LOGGER = get_logger(__name__)

CATEGORIES: tuple[str, ...] = ("tops", "bottoms", "shoes", "outerwear", "accessories")
PLACEHOLDER_CATEGORY = CATEGORIES[0]
PLACEHOLDER_URL = "pending"


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class Item(Base):
    """One uploaded clothing item and its processing state."""

    __tablename__ = "items"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=ItemStatus.PENDING.value)
    staging_key: Mapped[str | None] = mapped_column(String, nullable=True)
    image_url: Mapped[str] = mapped_column(String, nullable=False, default=PLACEHOLDER_URL)
    thumbnail_url: Mapped[str] = mapped_column(String, nullable=False, default=PLACEHOLDER_URL)
    phash: Mapped[str | None] = mapped_column(String(16), nullable=True)

    # AI-derived attributes; the category placeholder is overwritten once analysis lands.
    category: Mapped[str] = mapped_column(String, nullable=False, default=PLACEHOLDER_CATEGORY)
    subcategory: Mapped[str | None] = mapped_column(String, nullable=True)
    colors: Mapped[str | None] = mapped_column(Text, nullable=True)
    brand: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[str | None] = mapped_column(Text, nullable=True)
    material: Mapped[str | None] = mapped_column(String, nullable=True)
    fit: Mapped[str | None] = mapped_column(String, nullable=True)
    style: Mapped[str | None] = mapped_column(String, nullable=True)
    season: Mapped[str | None] = mapped_column(String, nullable=True)
    boldness: Mapped[str | None] = mapped_column(String, nullable=True)
    raw_response: Mapped[str | None] = mapped_column(Text, nullable=True)

    # User-editable attributes owned by the UI layer.
    size: Mapped[str | None] = mapped_column(String, nullable=True)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    purchase_date: Mapped[str | None] = mapped_column(String, nullable=True)
    store: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("idx_items_owner_status", "owner_id", "status"),
        Index("idx_items_status_created", "status", "created_at"),
    )


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _ensure_parent_directory(path: Path) -> None:
    """Ensure the parent directory for a database file exists."""

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.error("db_parent_directory_error", extra={"path": str(path), "error": str(exc)})
        raise


def get_engine(target: str | Path) -> Engine:
    """Return a cached SQLAlchemy engine for the provided target, creating schema if needed."""

    normalized = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = sa_url.drivername.startswith("sqlite")
        in_memory = is_sqlite and sa_url.database in {None, "", ":memory:"}

        engine_kwargs: dict[str, Any] = {}
        if in_memory:
            # Every session must see the same in-memory database.
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            engine_kwargs["poolclass"] = StaticPool
        elif is_sqlite:
            _ensure_parent_directory(Path(sa_url.database or ""))
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite and not in_memory:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
                """Configure SQLite for concurrent workers."""

                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                finally:
                    cursor.close()

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            # Several Celery workers may race to create the schema on first start.
            if "already exists" in str(exc).lower():
                LOGGER.info("db_create_all_table_exists_race", extra={"target": normalized, "error": str(exc)})
            else:
                raise

        _ENGINE_CACHE[normalized] = engine
        return engine


def open_session(target: str | Path) -> Session:
    """Open a SQLAlchemy session for the metadata store."""

    return Session(get_engine(target), expire_on_commit=False)


def dispose_engines() -> None:
    """Dispose and forget every cached engine."""

    with _ENGINE_LOCK:
        for engine in _ENGINE_CACHE.values():
            engine.dispose()
        _ENGINE_CACHE.clear()


__all__ = [
    "Base",
    "CATEGORIES",
    "Item",
    "PLACEHOLDER_CATEGORY",
    "PLACEHOLDER_URL",
    "dispose_engines",
    "get_engine",
    "open_session",
]
