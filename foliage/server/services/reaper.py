"""Removal of expired temporary content."""

import logging

from foliage.models.base import OperationStatus
from foliage.models.fs import DeleteResultVO
from foliage.server.config import ServerConfig
from foliage.server.db.models.node import now_ms
from foliage.server.db.session import DatabaseSessionManager
from foliage.server.services.blob import BlobStorage, content_keys
from foliage.server.services.quota import QuotaLedger
from foliage.server.services.vfs import RemovedFile, VirtualFileSystem
from foliage.server.utils.concurrency import run_bounded
from foliage.server.utils.paths import root_id

logger = logging.getLogger(__name__)

__all__ = ["ExpiryReaper"]


class ExpiryReaper:
    """Deletes files past their expiry time with their blobs.

    Safe to run repeatedly; a second run over the same state removes nothing.
    """

    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        blob_storage: BlobStorage,
        config: ServerConfig,
    ) -> None:
        self.session_manager = session_manager
        self.blob_storage = blob_storage
        self.config = config

    async def purge_expired(self, now: int | None = None) -> DeleteResultVO:
        """Delete every node whose expiry timestamp is at or before now (ms)."""
        now = now if now is not None else now_ms()
        removed: list[RemovedFile] = []
        count = 0
        async with self.session_manager.transaction() as session:
            vfs = VirtualFileSystem(session)
            ledger = QuotaLedger(session)
            for node in await vfs.expired_files(now):
                deleted, files = await vfs.delete_subtree(node.node_path)
                await ledger.charge(root_id(node.node_path), -sum(f.size for f in files))
                count += deleted
                removed.extend(files)

        async def delete_content(item: RemovedFile) -> bool:
            results = [
                await self.blob_storage.delete(key)
                for key in content_keys(item.id, item.metadata)
            ]
            return all(results)

        results = await run_bounded(
            removed,
            delete_content,
            self.config.object_store.concurrency,
            self.config.object_store.timeout_seconds,
        )
        deleted_blobs = sum(results)
        failed = len(results) - deleted_blobs
        if count:
            logger.info(
                f"Purged {count} expired nodes: {deleted_blobs} blobs deleted, "
                f"{failed} failed"
            )
        return DeleteResultVO(
            deleted_count=count,
            s3_deleted_count=deleted_blobs,
            s3_failed_count=failed,
            status=OperationStatus.PARTIAL if failed else OperationStatus.OK,
        )
