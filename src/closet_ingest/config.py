"""Configuration loader and typed settings for the closet ingestion service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

ENV_SETTINGS_PATH = "CLOSET_INGEST_SETTINGS"
ENV_INFERENCE_API_KEY = "CLOSET_INGEST_INFERENCE_API_KEY"
ENV_ADMIN_KEY = "CLOSET_INGEST_ADMIN_KEY"


@dataclass
class DatabaseConfig:
    """Metadata store connection target."""

    primary_url: str = "sqlite:///data/closet.db"


@dataclass
class StorageConfig:
    """Object store backend and key layout."""

    backend: str = "local"
    root: str = "data/objects"
    bucket: str = "closet-images"
    endpoint_url: str | None = None
    region: str | None = None
    staging_prefix: str = "staging"
    permanent_prefix: str = "items"
    public_url_prefix: str = "/images"


@dataclass
class QueueConfig:
    """Celery broker and redelivery configuration."""

    backend: str = "celery"
    broker_url: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"
    ingest_queue: str = "ingest"
    maintenance_queue: str = "maintenance"
    max_attempts: int = 3
    retry_delay_seconds: int = 10
    visibility_timeout_seconds: int = 600
    worker_concurrency: int = 4


@dataclass
class InferenceConfig:
    """Vision inference endpoint (any OpenAI-compatible server)."""

    base_url: str = "http://localhost:8000/v1"
    api_key: str = "closet-placeholder-key"
    model: str = "meta-llama/Llama-3.2-11B-Vision-Instruct"
    request_timeout: float = 60.0
    max_tokens: int = 300
    interactive_attempts: int = 2
    pipeline_attempts: int = 3
    retry_backoff: float = 1.0
    fallback_description_chars: int = 200


@dataclass
class TransformConfig:
    """Image transform service used for background removal."""

    backend: str = "local"
    url: str | None = None
    request_timeout: float = 60.0
    max_width: int = 800
    background_attempts: int = 2
    background_tolerance: float = 40.0


@dataclass
class TrimConfig:
    """Trim compute unit location and cropping constants."""

    backend: str = "local"
    url: str | None = None
    request_timeout: float = 30.0
    alpha_threshold: int = 10
    padding_ratio: float = 0.05
    min_padding: int = 5
    min_dimension: int = 300
    webp_quality: int = 90


@dataclass
class OutputConfig:
    """Final compact encoding of processed images."""

    max_side: int = 800
    quality: int = 90


@dataclass
class DuplicateConfig:
    """Near-duplicate detection tolerance."""

    hamming_threshold: int = 10


@dataclass
class SweeperConfig:
    """Reconciliation sweeper schedule and age threshold."""

    stale_after_seconds: float = 4 * 60 * 60
    interval_seconds: float = 60 * 60
    enabled: bool = True


@dataclass
class UploadConfig:
    """Upload limits and client-side batch parallelism."""

    max_bytes: int = 15 * 1024 * 1024
    batch_concurrency: int = 6
    default_extension: str = "jpg"


@dataclass
class AdminConfig:
    """Administrative HTTP endpoint access."""

    key: str | None = None


@dataclass
class Settings:
    """Top-level application settings."""

    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    transform: TransformConfig = field(default_factory=TransformConfig)
    trim: TrimConfig = field(default_factory=TrimConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover - defensive fallback
        return module_path.parent


def _build_default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    candidates: list[Path] = []
    for candidate in (
        (Path.cwd() / "config" / "settings.yaml").resolve(),
        (_project_root() / "config" / "settings.yaml").resolve(),
    ):
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv(ENV_SETTINGS_PATH)
    if env_override:
        return Path(env_override).expanduser().resolve()

    candidates = _build_default_settings_paths()
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _accepts(current: Any, value: Any) -> bool:
    """Return whether ``value`` may replace a field whose default is ``current``."""

    if isinstance(current, bool):
        return isinstance(value, bool)
    if isinstance(current, int):
        return isinstance(value, int) and not isinstance(value, bool)
    if isinstance(current, float):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(current, str):
        return isinstance(value, str)
    # Optional[str] fields default to None.
    return value is None or isinstance(value, str)


def _apply_section(section: Any, raw: dict[str, Any]) -> None:
    """Copy type-compatible values from ``raw`` onto a config dataclass."""

    for spec in fields(section):
        if spec.name not in raw:
            continue
        value = raw[spec.name]
        current = getattr(section, spec.name)
        if not _accepts(current, value):
            continue
        if isinstance(current, float) and not isinstance(current, bool):
            value = float(value)
        setattr(section, spec.name, value)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    The loader is deliberately defensive: if the file is missing or malformed,
    it returns a :class:`Settings` instance populated with default values, and
    values of the wrong type are ignored field by field.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if path.exists() and path.is_file():
        with path.open("r", encoding="utf-8") as fp:
            raw = yaml.safe_load(fp) or {}
        if isinstance(raw, dict):
            for spec in fields(settings):
                _apply_section(getattr(settings, spec.name), _as_dict(raw.get(spec.name)))

    api_key = os.getenv(ENV_INFERENCE_API_KEY)
    if api_key:
        settings.inference.api_key = api_key
    admin_key = os.getenv(ENV_ADMIN_KEY)
    if admin_key:
        settings.admin.key = admin_key

    return settings


__all__ = [
    "AdminConfig",
    "DatabaseConfig",
    "DuplicateConfig",
    "InferenceConfig",
    "OutputConfig",
    "QueueConfig",
    "Settings",
    "StorageConfig",
    "SweeperConfig",
    "TransformConfig",
    "TrimConfig",
    "UploadConfig",
    "load_settings",
]
