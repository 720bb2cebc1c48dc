"""Shared pytest fixtures for server tests.

This module is automatically discovered by pytest as a plugin.
"""

from pathlib import Path

import pytest
import pytest_asyncio

from foliage.models.fs import RootCategory, RootVO
from foliage.server.app import FileSystemApp, create_app
from foliage.server.config import ObjectStoreConfig, ServerConfig
from foliage.server.db.session import DatabaseSessionManager
from foliage.server.services.archive import ArchiveBuilder
from foliage.server.services.permissions import PermissionService
from foliage.server.services.tree import TreeService
from tests.conftest import OWNER
from tests.plugins.db_fixtures import TEST_DATABASE_URL
from tests.server.services.fakes import FakeBlobStorage


@pytest.fixture
def server_config(tmp_path: Path) -> ServerConfig:
    """Create a ServerConfig object for testing."""
    return ServerConfig(
        database_url=TEST_DATABASE_URL,
        storage_dir=str(tmp_path / "storage"),
        object_store=ObjectStoreConfig(
            presign_secret="test-secret", concurrency=4, timeout_seconds=5.0
        ),
    )


@pytest.fixture
def blob_storage() -> FakeBlobStorage:
    return FakeBlobStorage()


@pytest.fixture
def fs_app(
    server_config: ServerConfig,
    session_manager: DatabaseSessionManager,
    blob_storage: FakeBlobStorage,
) -> FileSystemApp:
    return create_app(
        server_config, session_manager=session_manager, blob_storage=blob_storage
    )


@pytest.fixture
def tree_service(fs_app: FileSystemApp) -> TreeService:
    return fs_app.tree


@pytest.fixture
def permission_service(fs_app: FileSystemApp) -> PermissionService:
    return fs_app.permissions


@pytest.fixture
def archive_builder(fs_app: FileSystemApp) -> ArchiveBuilder:
    return fs_app.archives


@pytest_asyncio.fixture
async def personal_root(tree_service: TreeService) -> RootVO:
    """Personal root of OWNER."""
    return await tree_service.get_or_create_root(OWNER, RootCategory.PERSONAL)
