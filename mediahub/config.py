"""Configuration loading utilities for the MediaHub service."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".mediahub_write_check"

DEFAULT_MAX_CHUNK_BYTES = 1024 * 1024
DEFAULT_PROCESSING_STEPS = 10
DEFAULT_STEP_DELAY_SECONDS = 1.0
DEFAULT_NOTIFICATION_QUEUE_SIZE = 100
DEFAULT_CACHE_MAX_AGE = 86400


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. The flag in the returned tuple tells the
    caller whether a fallback had to be used. When nothing can be prepared the
    original ``preferred`` path is returned so that bootstrap can fail loudly.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _coerce_positive_int(mapping: Dict[str, Any], key: str, default: int) -> int:
    raw = mapping.get(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring invalid %s=%r; using %s", key, raw, default)
        return default
    if value <= 0:
        LOGGER.warning("Ignoring non-positive %s=%r; using %s", key, raw, default)
        return default
    return value


def _coerce_seconds(raw: Any, *, key: str, default: Optional[float]) -> Optional[float]:
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring invalid %s=%r; using %s", key, raw, default)
        return default
    if value < 0:
        LOGGER.warning("Ignoring negative %s=%r; using %s", key, raw, default)
        return default
    return value


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and tunables for the streaming and processing core."""

    storage_root: Path
    database_file: Path
    media_root: Path
    max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES
    processing_steps: int = DEFAULT_PROCESSING_STEPS
    step_delay_seconds: float = DEFAULT_STEP_DELAY_SECONDS
    analysis_timeout_seconds: Optional[float] = None
    notification_queue_size: int = DEFAULT_NOTIFICATION_QUEUE_SIZE
    cache_max_age: int = DEFAULT_CACHE_MAX_AGE

    @property
    def log_file(self) -> Path:
        """Default location of the application log file."""

        return (self.storage_root / "mediahub.log").resolve()

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".mediahub" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        preferred_media = (base_path / mapping["media_root"]).resolve()
        media_root, _ = _select_writable_directory(
            preferred_media,
            label="media",
            fallbacks=(storage_root / "_media",),
        )

        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            media_root=media_root,
            max_chunk_bytes=_coerce_positive_int(
                mapping, "max_chunk_bytes", DEFAULT_MAX_CHUNK_BYTES
            ),
            processing_steps=_coerce_positive_int(
                mapping, "processing_steps", DEFAULT_PROCESSING_STEPS
            ),
            step_delay_seconds=_coerce_seconds(
                mapping.get("step_delay_seconds"),
                key="step_delay_seconds",
                default=DEFAULT_STEP_DELAY_SECONDS,
            ),
            analysis_timeout_seconds=_coerce_seconds(
                mapping.get("analysis_timeout_seconds"),
                key="analysis_timeout_seconds",
                default=None,
            ),
            notification_queue_size=_coerce_positive_int(
                mapping, "notification_queue_size", DEFAULT_NOTIFICATION_QUEUE_SIZE
            ),
            cache_max_age=_coerce_positive_int(
                mapping, "cache_max_age", DEFAULT_CACHE_MAX_AGE
            ),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "load_config"]
