import logging
from dataclasses import dataclass, field

from foliage.server.db.session import DatabaseSessionManager
from foliage.server.exceptions import NotFoundException
from foliage.server.services.blob import BlobStorage, content_keys
from foliage.server.services.quota import QuotaLedger
from foliage.server.services.vfs import VirtualFileSystem

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    root_id: int
    scanned: int = 0
    missing_blob: int = 0
    ok: int = 0
    used_bytes: int = 0
    """Counter stored on the root."""

    actual_bytes: int = 0
    """Sum of the sizes of the root's files."""

    missing_keys: list[str] = field(default_factory=list)

    @property
    def drift(self) -> int:
        return self.used_bytes - self.actual_bytes


class IntegrityService:
    """Service to verify consistency between the tree and the object store."""

    def __init__(
        self, session_manager: DatabaseSessionManager, blob_storage: BlobStorage
    ) -> None:
        """Create an integrity service instance."""
        self.session_manager = session_manager
        self.blob_storage = blob_storage

    async def verify_root(self, root_id: int) -> IntegrityReport:
        """Check every file of a root has its content and the quota is exact."""
        async with self.session_manager.session() as session:
            vfs = VirtualFileSystem(session)
            root = await vfs.get_root(root_id)
            if root is None:
                raise NotFoundException(f"Root {root_id} not found")
            files = await vfs.list_files((root_id,))
            report = IntegrityReport(root_id=root_id, used_bytes=root.used_bytes)

        for file_do in files:
            report.scanned += 1
            report.actual_bytes += file_do.size
            missing = [
                key
                for key in content_keys(file_do.id, file_do.extra_metadata)
                if not await self.blob_storage.exists(key)
            ]
            if missing:
                logger.error(
                    f"Integrity Fail: File {file_do.id} ({file_do.name}) missing {missing}"
                )
                report.missing_blob += 1
                report.missing_keys.extend(missing)
                continue
            report.ok += 1

        if report.drift:
            logger.warning(
                f"Quota drift on root {root_id}: stored {report.used_bytes}, "
                f"actual {report.actual_bytes}"
            )
        logger.info(
            f"Verified root {root_id}: {report.scanned} files, "
            f"{report.missing_blob} missing content"
        )
        return report

    async def reconcile_quota(self, root_id: int) -> int:
        """Reset the root's counter to the sum of its file sizes."""
        async with self.session_manager.transaction() as session:
            ledger = QuotaLedger(session)
            usage = await ledger.usage(root_id)
            actual = await ledger.recompute(root_id)
            if actual != usage.used:
                logger.warning(
                    f"Reconciling root {root_id}: {usage.used} -> {actual} bytes"
                )
                await ledger.reset(root_id, actual)
        return actual
