import json
from pathlib import Path

import mediahub.config as config_module
from mediahub.config import AppConfig, load_config


def _mapping(**overrides):
    mapping = {
        "storage_root": "storage",
        "database_file": "storage/media.db",
        "media_root": "media",
    }
    mapping.update(overrides)
    return mapping


def test_defaults_apply_when_tunables_are_missing(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(_mapping(), base_path=tmp_path)

    assert config.storage_root == (tmp_path / "storage").resolve()
    assert config.database_file == (tmp_path / "storage" / "media.db").resolve()
    assert config.media_root == (tmp_path / "media").resolve()
    assert config.max_chunk_bytes == 1024 * 1024
    assert config.processing_steps == 10
    assert config.step_delay_seconds == 1.0
    assert config.analysis_timeout_seconds is None
    assert config.notification_queue_size == 100
    assert config.cache_max_age == 86400
    assert config.log_file == (tmp_path / "storage" / "mediahub.log").resolve()


def test_invalid_tunables_fall_back_to_defaults(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(
        _mapping(max_chunk_bytes=0, processing_steps="many", step_delay_seconds=-1),
        base_path=tmp_path,
    )

    assert config.max_chunk_bytes == 1024 * 1024
    assert config.processing_steps == 10
    assert config.step_delay_seconds == 1.0


def test_media_root_falls_back_when_preferred_is_unusable(tmp_path: Path) -> None:
    storage = tmp_path / "storage"
    storage.mkdir()

    preferred_media = tmp_path / "media"
    preferred_media.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(_mapping(), base_path=tmp_path)

    expected_fallback = (storage / "_media").resolve()
    assert config.media_root == expected_fallback
    assert expected_fallback.is_dir()


def test_storage_root_falls_back_when_preferred_is_unusable(
    tmp_path: Path, monkeypatch
) -> None:
    home_dir = tmp_path / "home"
    monkeypatch.setattr(config_module.Path, "home", lambda: home_dir)

    (tmp_path / "storage").write_text("not a directory", encoding="utf-8")
    (tmp_path / "media").write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(_mapping(), base_path=tmp_path)

    expected_storage = (home_dir / ".mediahub" / "storage").resolve()
    assert config.storage_root == expected_storage
    assert config.database_file == (expected_storage / "media.db").resolve()
    assert config.media_root == (expected_storage / "_media").resolve()


def test_load_config_reads_explicit_file(tmp_path: Path) -> None:
    config_file = tmp_path / "custom.json"
    config_file.write_text(
        json.dumps(
            {
                "storage_root": str(tmp_path / "data"),
                "database_file": str(tmp_path / "data" / "catalogue.db"),
                "media_root": str(tmp_path / "data" / "objects"),
                "processing_steps": 4,
                "analysis_timeout_seconds": 2.5,
            }
        ),
        encoding="utf-8",
    )

    config = load_config(config_file)

    assert config.database_file == (tmp_path / "data" / "catalogue.db").resolve()
    assert config.processing_steps == 4
    assert config.analysis_timeout_seconds == 2.5
