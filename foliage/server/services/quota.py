"""Per root byte accounting.

The counter tracks intended state: it changes in the same transaction that
inserts or removes file rows, regardless of what later happens to the blobs.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from foliage.models.fs import UsageVO
from foliage.server.db.models.node import RootDO
from foliage.server.exceptions import NotFoundException, QuotaExceededException
from foliage.server.services.vfs import VirtualFileSystem

logger = logging.getLogger(__name__)

__all__ = ["QuotaLedger", "usage_of"]


def usage_of(root: RootDO) -> UsageVO:
    """Usage summary of a root record."""
    used = root.used_bytes
    limit = root.max_bytes
    if limit > 0:
        percent = round(used / limit * 100)
    else:
        percent = 100 if used > 0 else 0
    return UsageVO(
        root_id=root.id,
        used=used,
        max=limit,
        remaining=max(limit - used, 0),
        percent=percent,
    )


class QuotaLedger:
    """Quota operations inside the caller's transaction."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def _root(self, root_id: int) -> RootDO:
        result = await self.db.execute(
            select(RootDO)
            .where(RootDO.id == root_id)
            .execution_options(populate_existing=True)
        )
        root = result.scalar_one_or_none()
        if root is None:
            raise NotFoundException(f"Root {root_id} not found")
        return root

    async def reserve(self, root_id: int, nbytes: int) -> bool:
        """Check that nbytes more fit under the root's ceiling."""
        root = await self._root(root_id)
        return root.used_bytes + nbytes <= root.max_bytes

    async def require(self, root_id: int, nbytes: int) -> None:
        """Raise QuotaExceededException unless nbytes more fit."""
        root = await self._root(root_id)
        if root.used_bytes + nbytes > root.max_bytes:
            raise QuotaExceededException(root.used_bytes, root.max_bytes, nbytes)

    async def charge(
        self, root_id: int, delta: int, enforce_limit: bool = False
    ) -> None:
        """Apply a signed delta to the root's counter.

        With enforce_limit a positive delta is only applied if it fits, checked
        and applied in a single statement.
        """
        if delta == 0:
            return
        stmt = update(RootDO).where(RootDO.id == root_id)
        if enforce_limit and delta > 0:
            stmt = stmt.where(RootDO.used_bytes + delta <= RootDO.max_bytes)
        result = await self.db.execute(
            stmt.values(used_bytes=RootDO.used_bytes + delta).execution_options(
                synchronize_session=False
            )
        )
        if result.rowcount == 0:
            root = await self._root(root_id)
            raise QuotaExceededException(root.used_bytes, root.max_bytes, delta)
        logger.debug(f"Charged {delta} bytes to root {root_id}")

    async def transfer(self, from_root: int, to_root: int, nbytes: int) -> None:
        """Move nbytes of accounted usage from one root to another."""
        if from_root == to_root or nbytes == 0:
            return
        await self.charge(to_root, nbytes, enforce_limit=True)
        await self.charge(from_root, -nbytes)

    async def usage(self, root_id: int) -> UsageVO:
        return usage_of(await self._root(root_id))

    async def recompute(self, root_id: int) -> int:
        """Sum of the sizes of all files under the root."""
        return await VirtualFileSystem(self.db).subtree_file_bytes((root_id,))

    async def reset(self, root_id: int, used_bytes: int) -> None:
        await self.db.execute(
            update(RootDO)
            .where(RootDO.id == root_id)
            .values(used_bytes=used_bytes)
            .execution_options(synchronize_session=False)
        )
