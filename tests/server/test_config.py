import os
from pathlib import Path
from unittest.mock import patch

import yaml

from foliage.models.fs import RootCategory
from foliage.server.config import ServerConfig


def test_server_config_defaults(tmp_path: Path) -> None:
    """Test loading configuration with defaults."""
    config_file = tmp_path / "config.yaml"

    with patch.dict(os.environ, {}, clear=True):
        config = ServerConfig.load(config_file)

    assert config.database_url == "sqlite+aiosqlite:///./foliage.db"
    assert config.storage_dir == "storage"
    assert config.temporary_ttl_seconds == 7 * 24 * 60 * 60
    assert config.object_store.backend == "local"
    assert config.object_store.concurrency == 8
    assert config.object_store.presign_secret != ""  # Generated in-memory
    assert config.quota.max_bytes_for(RootCategory.ORGANIZATIONAL) == 10 * 1024**3

    # Verify NO config file was created (read-only)
    assert not config_file.exists()


def test_server_config_load_from_file(tmp_path: Path) -> None:
    """Test loading configuration from a file."""
    config_file = tmp_path / "config.yaml"
    data = {
        "database_url": "sqlite+aiosqlite:///./test.db",
        "log_level": "DEBUG",
        "quota": {"personal": 1000},
        "object_store": {
            "backend": "s3",
            "bucket": "files",
            "endpoint_url": "http://minio:9000",
            "concurrency": 2,
        },
    }
    with open(config_file, "w") as f:
        yaml.safe_dump(data, f)

    with patch.dict(os.environ, {}, clear=True):
        config = ServerConfig.load(config_file)

    assert config.database_url == "sqlite+aiosqlite:///./test.db"
    assert config.log_level == "DEBUG"
    assert config.quota.max_bytes_for(RootCategory.PERSONAL) == 1000
    assert config.quota.max_bytes_for(RootCategory.SHARED) == 1024**3
    assert config.object_store.backend == "s3"
    assert config.object_store.bucket == "files"
    assert config.object_store.concurrency == 2


def test_server_config_env_var_override(tmp_path: Path) -> None:
    """Test that environment variables override config file."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("storage_dir: from-file\n")

    with patch.dict(
        os.environ,
        {
            "FOLIAGE_CONFIG": str(config_file),
            "FOLIAGE_DATABASE_URL": "sqlite+aiosqlite:///./env.db",
            "FOLIAGE_STORAGE_DIR": "/data/blobs",
        },
    ):
        config = ServerConfig.load()
        assert config.database_url == "sqlite+aiosqlite:///./env.db"
        assert config.storage_dir == "/data/blobs"
