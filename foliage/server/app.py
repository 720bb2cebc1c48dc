import logging
from dataclasses import dataclass

from .config import ServerConfig
from .db.session import DatabaseSessionManager
from .services.archive import ArchiveBuilder
from .services.blob import BlobStorage, LocalBlobStorage
from .services.integrity import IntegrityService
from .services.permissions import PermissionService
from .services.reaper import ExpiryReaper
from .services.s3 import S3BlobStorage
from .services.tree import TreeService
from .utils.url_signer import UrlSigner

logger = logging.getLogger(__name__)


@dataclass
class FileSystemApp:
    """The wired services of one file system instance."""

    config: ServerConfig
    session_manager: DatabaseSessionManager
    blob_storage: BlobStorage
    permissions: PermissionService
    tree: TreeService
    archives: ArchiveBuilder
    integrity: IntegrityService
    reaper: ExpiryReaper

    async def close(self) -> None:
        await self.session_manager.close()


def create_blob_storage(config: ServerConfig) -> BlobStorage:
    store = config.object_store
    if store.backend == "s3":
        if not store.bucket:
            raise ValueError("object_store.bucket is required for the s3 backend")
        return S3BlobStorage(
            bucket=store.bucket,
            endpoint_url=store.endpoint_url,
            region=store.region,
            access_key_id=store.access_key_id,
            secret_access_key=store.secret_access_key,
            prefix=store.prefix,
        )
    if store.backend != "local":
        raise ValueError(f"Unknown object store backend: {store.backend}")
    return LocalBlobStorage(
        config.storage_root, UrlSigner(store.presign_secret), base_url=store.base_url
    )


def create_app(
    config: ServerConfig,
    session_manager: DatabaseSessionManager | None = None,
    blob_storage: BlobStorage | None = None,
) -> FileSystemApp:
    """Wire the services for a configuration."""
    if session_manager is None:
        session_manager = DatabaseSessionManager(config.database_url)
    if blob_storage is None:
        blob_storage = create_blob_storage(config)
    logger.debug(f"Using {type(blob_storage).__name__} for content")

    permissions = PermissionService(session_manager)
    return FileSystemApp(
        config=config,
        session_manager=session_manager,
        blob_storage=blob_storage,
        permissions=permissions,
        tree=TreeService(session_manager, blob_storage, permissions, config),
        archives=ArchiveBuilder(session_manager, blob_storage, permissions, config),
        integrity=IntegrityService(session_manager, blob_storage),
        reaper=ExpiryReaper(session_manager, blob_storage, config),
    )
