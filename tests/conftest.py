from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mediahub.bootstrap import Bootstrapper
from mediahub.config import AppConfig
from mediahub.services.storage import MediaRepository


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"storage_root\": \"storage\",
            \"database_file\": \"storage/media.db\",
            \"media_root\": \"storage/media\",
            \"step_delay_seconds\": 0
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/media.db",
            "media_root": "storage/media",
            "step_delay_seconds": 0,
            "analysis_timeout_seconds": 5,
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> MediaRepository:
    return MediaRepository(temp_config)


@pytest.fixture()
def write_media(temp_config: AppConfig):
    def _write(relative: str, payload: bytes) -> Path:
        target = temp_config.media_root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)
        return target

    return _write


@pytest.fixture()
def sample_payload() -> bytes:
    return bytes(range(256)) * 64


@pytest.fixture()
def sample_media(repository: MediaRepository, write_media, sample_payload: bytes) -> str:
    write_media("owner-1/clip.mp4", sample_payload)
    return repository.add_media(
        owner_id="owner-1",
        location_ref="owner-1/clip.mp4",
        content_type="video/mp4",
        size_bytes=len(sample_payload),
        title="Clip",
    )
