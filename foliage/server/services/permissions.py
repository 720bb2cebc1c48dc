"""Permission resolution and grant management.

Effective access is never stored per node. It is derived by walking a node's
materialized path from the node towards its root: the nearest folder holding
an explicit grant for the user decides the level, even if a farther grant is
higher. No grant anywhere on the path means no access.
"""

import logging
from collections.abc import Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from foliage.models.fs import EDITABLE_LEVELS, GrantChangeVO, GrantVO, PermissionLevel
from foliage.server.db.models.grant import GrantDO
from foliage.server.db.models.node import NodeDO
from foliage.server.db.session import DatabaseSessionManager
from foliage.server.exceptions import (
    ForbiddenException,
    InvalidInputException,
    NotFoundException,
)
from foliage.server.services.vfs import VirtualFileSystem
from foliage.server.utils.paths import NodePath, descendants_clause

logger = logging.getLogger(__name__)

__all__ = ["PermissionResolver", "PermissionService"]


class PermissionResolver:
    """Pure resolver over an immutable snapshot of grants.

    Safe to share between concurrent callers; nothing is mutated after
    construction.
    """

    def __init__(self, grants: Mapping[tuple[str, int], PermissionLevel]) -> None:
        self._grants = dict(grants)

    @classmethod
    def from_grants(cls, grants: Iterable[GrantDO]) -> "PermissionResolver":
        """Build a snapshot from grant rows.

        Raises ValueError if a row carries an unknown level.
        """
        return cls(
            {
                (grant.user_id, grant.folder_id): PermissionLevel.from_value(
                    grant.level
                )
                for grant in grants
            }
        )

    def resolve_grant(
        self, user_id: str, path: NodePath
    ) -> tuple[int, PermissionLevel] | None:
        """Nearest grant on path for the user as (folder id, level)."""
        for folder_id in reversed(path):
            level = self._grants.get((user_id, folder_id))
            if level is not None:
                return folder_id, level
        return None

    def resolve(self, user_id: str, path: NodePath) -> PermissionLevel | None:
        """Effective level of the user at path, None if denied."""
        found = self.resolve_grant(user_id, path)
        return found[1] if found else None

    def authorize(
        self, user_id: str, path: NodePath, required: PermissionLevel
    ) -> bool:
        level = self.resolve(user_id, path)
        return level is not None and level.satisfies(required)


class PermissionService:
    """Loads grant snapshots from the metadata store and manages grants."""

    def __init__(self, session_manager: DatabaseSessionManager) -> None:
        self.session_manager = session_manager

    async def load_resolver(
        self, vfs: VirtualFileSystem, path: NodePath, user_id: str | None = None
    ) -> PermissionResolver:
        """Snapshot of the grants on the folders of path."""
        stmt = select(GrantDO).where(GrantDO.folder_id.in_(path))
        if user_id is not None:
            stmt = stmt.where(GrantDO.user_id == user_id)
        result = await vfs.db.execute(stmt)
        return PermissionResolver.from_grants(result.scalars().all())

    async def resolve(
        self, vfs: VirtualFileSystem, user_id: str, path: NodePath
    ) -> PermissionLevel | None:
        """Effective level of the user at path.

        Fails closed: a lookup error denies access.
        """
        try:
            resolver = await self.load_resolver(vfs, path, user_id)
        except (SQLAlchemyError, ValueError):
            logger.exception(f"Permission lookup for {user_id} at {path} failed")
            return None
        return resolver.resolve(user_id, path)

    async def require(
        self,
        vfs: VirtualFileSystem,
        user_id: str,
        node: NodeDO,
        required: PermissionLevel,
        what: str = "node",
    ) -> PermissionLevel:
        """Raise ForbiddenException unless the user has required on node."""
        level = await self.resolve(vfs, user_id, node.node_path)
        if level is None or not level.satisfies(required):
            raise ForbiddenException(
                f"Insufficient permissions on {what} {node.id}: "
                f"{required.value} required"
            )
        return level

    async def require_descendants(
        self,
        vfs: VirtualFileSystem,
        user_id: str,
        path: NodePath,
        required: PermissionLevel,
    ) -> None:
        """Check closer grants inside a subtree.

        A descendant folder with its own grant for the user overrides the
        level inherited from above, so each such grant must satisfy required.
        """
        stmt = (
            select(GrantDO.level)
            .join(NodeDO, NodeDO.id == GrantDO.folder_id)
            .where(
                GrantDO.user_id == user_id,
                descendants_clause(NodeDO.path, path),
            )
        )
        try:
            levels = (await vfs.db.execute(stmt)).scalars().all()
            denied = any(
                not PermissionLevel.from_value(level).satisfies(required)
                for level in levels
            )
        except (SQLAlchemyError, ValueError):
            logger.exception(f"Descendant permission lookup for {user_id} failed")
            denied = True
        if denied:
            raise ForbiddenException("Insufficient permissions on contents")

    async def list_grants(self, actor_id: str, folder_id: int) -> list[GrantVO]:
        """Effective level of every user with access at a folder."""
        async with self.session_manager.session() as session:
            vfs = VirtualFileSystem(session)
            folder = await vfs.require_folder(folder_id)
            await self.require(vfs, actor_id, folder, PermissionLevel.ADMIN, "folder")
            rows = (
                await session.execute(
                    select(GrantDO).where(GrantDO.folder_id.in_(folder.node_path))
                )
            ).scalars().all()
        resolver = PermissionResolver.from_grants(rows)
        grants = []
        for user_id in sorted({row.user_id for row in rows}):
            if found := resolver.resolve_grant(user_id, folder.node_path):
                grants.append(
                    GrantVO(user_id=user_id, folder_id=found[0], permission=found[1])
                )
        return grants

    async def add_grant(
        self,
        actor_id: str,
        folder_id: int,
        user_id: str,
        level: PermissionLevel,
    ) -> GrantChangeVO:
        """Grant a level on a folder.

        A no-op when the user already has an equal or higher effective level.
        """
        _check_editable(level)
        async with self.session_manager.transaction() as session:
            vfs = VirtualFileSystem(session)
            folder = await vfs.require_folder(folder_id)
            await self.require(vfs, actor_id, folder, PermissionLevel.ADMIN, "folder")
            current = await self.resolve(vfs, user_id, folder.node_path)
            if current is not None and current.satisfies(level):
                return GrantChangeVO(
                    message=f"User already has {current.value} access"
                )
            existing = await session.get(GrantDO, (user_id, folder_id))
            if existing is not None:
                if existing.level == PermissionLevel.OWNER.value:
                    raise InvalidInputException("Owner grant cannot be changed")
                existing.level = level.value
            else:
                session.add(
                    GrantDO(user_id=user_id, folder_id=folder_id, level=level.value)
                )
        logger.info(f"Granted {level.value} on {folder_id} to {user_id}")
        return GrantChangeVO(message=f"Granted {level.value} access")

    async def update_grant(
        self,
        actor_id: str,
        folder_id: int,
        user_id: str,
        level: PermissionLevel,
    ) -> GrantChangeVO:
        _check_editable(level)
        async with self.session_manager.transaction() as session:
            vfs = VirtualFileSystem(session)
            folder = await vfs.require_folder(folder_id)
            await self.require(vfs, actor_id, folder, PermissionLevel.ADMIN, "folder")
            grant = await session.get(GrantDO, (user_id, folder_id))
            if grant is None:
                raise NotFoundException(
                    f"No grant for {user_id} on folder {folder_id}"
                )
            if grant.level == PermissionLevel.OWNER.value:
                raise InvalidInputException("Owner grant cannot be changed")
            grant.level = level.value
        logger.info(f"Updated grant of {user_id} on {folder_id} to {level.value}")
        return GrantChangeVO(message=f"Updated to {level.value} access")

    async def remove_grant(
        self, actor_id: str, folder_id: int, user_id: str
    ) -> GrantChangeVO:
        async with self.session_manager.transaction() as session:
            vfs = VirtualFileSystem(session)
            folder = await vfs.require_folder(folder_id)
            await self.require(vfs, actor_id, folder, PermissionLevel.ADMIN, "folder")
            grant = await session.get(GrantDO, (user_id, folder_id))
            if grant is None:
                raise NotFoundException(
                    f"No grant for {user_id} on folder {folder_id}"
                )
            if grant.level == PermissionLevel.OWNER.value:
                raise InvalidInputException("Owner grant cannot be removed")
            await session.delete(grant)
        logger.info(f"Removed grant of {user_id} on {folder_id}")
        return GrantChangeVO(message="Access removed")


def _check_editable(level: PermissionLevel) -> None:
    if level not in EDITABLE_LEVELS:
        raise InvalidInputException(f"Level {level.value} cannot be granted")
