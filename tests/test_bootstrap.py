import sqlite3
from pathlib import Path

import pytest

import mediahub.config as config_module
from mediahub.bootstrap import BootstrapError, Bootstrapper
from mediahub.config import AppConfig


def _config(tmp_path: Path) -> AppConfig:
    storage_root = tmp_path / "storage"
    return AppConfig(
        storage_root=storage_root,
        database_file=storage_root / "media.db",
        media_root=storage_root / "media",
    )


def test_bootstrapper_creates_directories_and_schema(tmp_path: Path) -> None:
    config = _config(tmp_path)

    Bootstrapper(config).initialize()

    assert config.storage_root.is_dir()
    assert config.media_root.is_dir()
    connection = sqlite3.connect(config.database_file)
    try:
        columns = {row[1] for row in connection.execute("PRAGMA table_info(media)")}
    finally:
        connection.close()
    assert {
        "id",
        "owner_id",
        "location_ref",
        "content_type",
        "size_bytes",
        "state",
        "progress_percent",
        "score",
        "view_count",
    } <= columns


def test_bootstrapper_is_idempotent(tmp_path: Path) -> None:
    config = _config(tmp_path)

    Bootstrapper(config).initialize()
    Bootstrapper(config).initialize()

    assert config.database_file.exists()


def test_bootstrapper_raises_when_media_directory_unwritable(
    tmp_path: Path, monkeypatch
) -> None:
    config = _config(tmp_path)
    original_ensure = config_module._ensure_writable_directory

    def fake_ensure(path: Path) -> bool:
        if path.resolve() == config.media_root.resolve():
            return False
        return original_ensure(path)

    monkeypatch.setattr(config_module, "_ensure_writable_directory", fake_ensure)

    with pytest.raises(BootstrapError) as excinfo:
        Bootstrapper(config).initialize()

    assert "media" in str(excinfo.value).lower()


def test_schema_rejects_score_without_verdict(tmp_path: Path) -> None:
    config = _config(tmp_path)
    Bootstrapper(config).initialize()

    connection = sqlite3.connect(config.database_file)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            connection.execute(
                "INSERT INTO media(id, owner_id, location_ref, size_bytes, state, score, created_at) "
                "VALUES ('a', 'u', 'x.mp4', 1, 'pending', 50, '2024-01-01T00:00:00+00:00')"
            )
        with pytest.raises(sqlite3.IntegrityError):
            connection.execute(
                "INSERT INTO media(id, owner_id, location_ref, size_bytes, state, created_at) "
                "VALUES ('b', 'u', 'x.mp4', 1, 'safe', '2024-01-01T00:00:00+00:00')"
            )
    finally:
        connection.close()
