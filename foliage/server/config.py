"""Server configuration loaded from YAML with environment overrides."""

import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from mashumaro.config import BaseConfig
from mashumaro.mixins.yaml import DataClassYAMLMixin

from foliage.models.fs import RootCategory

logger = logging.getLogger(__name__)

__all__ = [
    "ServerConfig",
    "QuotaConfig",
    "ObjectStoreConfig",
    "DEFAULT_CONFIG_FILE",
]

DEFAULT_CONFIG_FILE = "config/config.yaml"

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024


@dataclass
class QuotaConfig(DataClassYAMLMixin):
    """Default byte ceiling per root category."""

    personal: int = GIB
    personal_temporary: int = 512 * MIB
    organizational: int = 10 * GIB
    shared: int = GIB

    def max_bytes_for(self, category: RootCategory) -> int:
        """Default quota for a new root of the given category."""
        return {
            RootCategory.PERSONAL: self.personal,
            RootCategory.PERSONAL_TEMPORARY: self.personal_temporary,
            RootCategory.ORGANIZATIONAL: self.organizational,
            RootCategory.SHARED: self.shared,
        }[category]

    class Config(BaseConfig):
        omit_none = True


@dataclass
class ObjectStoreConfig(DataClassYAMLMixin):
    """Object store backend settings."""

    backend: str = "local"
    """Either 'local' or 's3'."""

    concurrency: int = 8
    """Maximum object store calls in flight per batch."""

    timeout_seconds: float = 30.0
    """Timeout of a single object store call inside a batch."""

    presign_secret: str = ""
    """Secret for signing local download URLs. Generated in memory if empty."""

    base_url: str = ""
    """Prefix of signed local download URLs."""

    bucket: str | None = None
    endpoint_url: str | None = None
    region: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    prefix: str = ""

    class Config(BaseConfig):
        omit_none = True


@dataclass
class ServerConfig(DataClassYAMLMixin):
    """Top level configuration."""

    database_url: str = "sqlite+aiosqlite:///./foliage.db"
    storage_dir: str = "storage"
    log_level: str = "INFO"
    temporary_ttl_seconds: int = 7 * 24 * 60 * 60
    """Lifetime of files uploaded to a personal-temporary root."""

    max_name_length: int = 255
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    object_store: ObjectStoreConfig = field(default_factory=ObjectStoreConfig)

    class Config(BaseConfig):
        omit_none = True

    @property
    def storage_root(self) -> Path:
        return Path(self.storage_dir)

    @classmethod
    def load(cls, config_file: Path | str | None = None) -> "ServerConfig":
        """Load configuration from a YAML file and the environment.

        The file is read from config_file, or FOLIAGE_CONFIG, or the default
        location. A missing file yields the defaults. The file is never written.
        """
        if config_file is None:
            config_file = os.getenv("FOLIAGE_CONFIG", DEFAULT_CONFIG_FILE)
        path = Path(config_file)

        config = cls()
        if path.exists():
            logger.info(f"Loading config from {path}")
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            config = cls.from_dict(data)
        else:
            logger.debug(f"No config file at {path}, using defaults")

        if database_url := os.getenv("FOLIAGE_DATABASE_URL"):
            config.database_url = database_url
        if storage_dir := os.getenv("FOLIAGE_STORAGE_DIR"):
            config.storage_dir = storage_dir
        if log_level := os.getenv("FOLIAGE_LOG_LEVEL"):
            config.log_level = log_level

        if not config.object_store.presign_secret:
            config.object_store.presign_secret = secrets.token_hex(32)
        return config
