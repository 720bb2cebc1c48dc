import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from foliage.models.fs import NodeType, PermissionLevel, RootCategory
from foliage.server.db.models.grant import GrantDO
from foliage.server.db.models.node import NodeDO, RootDO, now_ms
from foliage.server.exceptions import (
    ConflictException,
    InvalidInputException,
    NotFoundException,
)
from foliage.server.utils.paths import (
    NodePath,
    child_path,
    descendants_clause,
    encode_path,
    rebased_column,
    root_id,
    subtree_clause,
)
from foliage.server.utils.snowflake import next_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemovedFile:
    """A file row removed from the metadata store whose content must be deleted."""

    id: int
    size: int
    metadata: Optional[dict[str, Any]]


class VirtualFileSystem:
    """
    Row level operations on the materialized path tree.

    All methods run inside the caller's session; the caller owns the transaction.
    Subtree reads and writes are range scans on the path index, never recursive
    walks over parent links.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def _nodes(self, stmt: Select[tuple[NodeDO]]) -> list[NodeDO]:
        # Bulk path rewrites bypass the identity map, so always reload rows.
        result = await self.db.execute(
            stmt.execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_node(self, node_id: int) -> Optional[NodeDO]:
        nodes = await self._nodes(select(NodeDO).where(NodeDO.id == node_id))
        return nodes[0] if nodes else None

    async def require_node(self, node_id: int) -> NodeDO:
        node = await self.get_node(node_id)
        if node is None:
            raise NotFoundException(f"Node {node_id} not found")
        return node

    async def require_folder(self, node_id: int) -> NodeDO:
        node = await self.require_node(node_id)
        if not node.is_folder:
            raise InvalidInputException(f"Node {node_id} is not a folder")
        return node

    async def get_nodes(self, node_ids: Sequence[int]) -> list[NodeDO]:
        """Load nodes by id, in the order requested. Missing ids are skipped."""
        if not node_ids:
            return []
        nodes = await self._nodes(select(NodeDO).where(NodeDO.id.in_(node_ids)))
        by_id = {node.id: node for node in nodes}
        return [by_id[node_id] for node_id in node_ids if node_id in by_id]

    async def list_children(self, parent_id: int) -> list[NodeDO]:
        """Children of a folder, folders first then by name."""
        stmt = (
            select(NodeDO)
            .where(NodeDO.parent_id == parent_id)
            .order_by(NodeDO.node_type.desc(), NodeDO.name)
        )
        return await self._nodes(stmt)

    async def find_child(self, parent_id: int, name: str) -> Optional[NodeDO]:
        nodes = await self._nodes(
            select(NodeDO).where(NodeDO.parent_id == parent_id, NodeDO.name == name)
        )
        return nodes[0] if nodes else None

    async def list_descendants(self, path: NodePath) -> list[NodeDO]:
        """All proper descendants of path, shallowest first."""
        nodes = await self._nodes(
            select(NodeDO).where(descendants_clause(NodeDO.path, path))
        )
        nodes.sort(key=lambda node: (len(node.node_path), node.id))
        return nodes

    async def subtree_file_bytes(self, path: NodePath) -> int:
        """Sum of the sizes of all files at or below path."""
        stmt = select(func.coalesce(func.sum(NodeDO.size), 0)).where(
            subtree_clause(NodeDO.path, path),
            NodeDO.node_type == NodeType.FILE.value,
        )
        return int((await self.db.execute(stmt)).scalar_one())

    async def get_root(self, node_id: int) -> Optional[RootDO]:
        result = await self.db.execute(
            select(RootDO)
            .where(RootDO.id == node_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def root_of(self, node: NodeDO) -> RootDO:
        """The root record of the hierarchy a node belongs to."""
        root = await self.get_root(root_id(node.node_path))
        if root is None:
            raise NotFoundException(f"Root of node {node.id} not found")
        return root

    async def create_node(
        self,
        parent: NodeDO,
        name: str,
        node_type: NodeType,
        *,
        node_id: Optional[int] = None,
        size: int = 0,
        content_type: Optional[str] = None,
        expire_time: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> NodeDO:
        """Insert a child of parent. The caller checks for name conflicts."""
        node_id = node_id if node_id is not None else next_id()
        node = NodeDO(
            id=node_id,
            node_type=node_type.value,
            name=name,
            parent_id=parent.id,
            path=encode_path(child_path(parent.node_path, node_id)),
            content_type=content_type,
            size=size if node_type == NodeType.FILE else 0,
            create_time=now_ms(),
            expire_time=expire_time,
            extra_metadata=metadata,
        )
        self.db.add(node)
        await self._flush(name, parent.id)
        return node

    async def create_root(
        self, name: str, category: RootCategory, max_bytes: int, owner_id: str
    ) -> tuple[NodeDO, RootDO]:
        """Insert a root folder, its root record and the owner grant."""
        node_id = next_id()
        node = NodeDO(
            id=node_id,
            node_type=NodeType.FOLDER.value,
            name=name,
            parent_id=None,
            path=encode_path((node_id,)),
            size=0,
            create_time=now_ms(),
        )
        self.db.add(node)
        await self.db.flush()
        root = RootDO(
            id=node_id, category=category.value, max_bytes=max_bytes, used_bytes=0
        )
        self.db.add(root)
        self.db.add(
            GrantDO(
                user_id=owner_id, folder_id=node_id, level=PermissionLevel.OWNER.value
            )
        )
        await self.db.flush()
        return node, root

    async def owned_roots(
        self, user_id: str, category: Optional[RootCategory] = None
    ) -> list[RootDO]:
        """Roots on which the user holds the owner grant."""
        stmt = (
            select(RootDO)
            .join(GrantDO, GrantDO.folder_id == RootDO.id)
            .where(
                GrantDO.user_id == user_id,
                GrantDO.level == PermissionLevel.OWNER.value,
            )
        )
        if category is not None:
            stmt = stmt.where(RootDO.category == category.value)
        result = await self.db.execute(stmt.order_by(RootDO.id))
        return list(result.scalars().all())

    async def relocate(
        self, node: NodeDO, new_parent: NodeDO, new_name: str
    ) -> NodePath:
        """Move a node under new_parent and rebase every descendant's path.

        Returns the node's new path.
        """
        old_path = node.node_path
        new_path = child_path(new_parent.node_path, node.id)
        if new_path != old_path:
            await self.db.execute(
                update(NodeDO)
                .where(descendants_clause(NodeDO.path, old_path))
                .values(path=rebased_column(NodeDO.path, old_path, new_path))
                .execution_options(synchronize_session=False)
            )
        node.parent_id = new_parent.id
        node.path = encode_path(new_path)
        node.name = new_name
        await self._flush(new_name, new_parent.id)
        return new_path

    async def rename(self, node: NodeDO, new_name: str) -> None:
        node.name = new_name
        await self._flush(new_name, node.parent_id)

    async def delete_subtree(self, path: NodePath) -> tuple[int, list[RemovedFile]]:
        """Delete the node at path and all of its descendants.

        Grants and root records attached to removed folders go with them.
        Returns the number of rows removed and the removed files.
        """
        scope = subtree_clause(NodeDO.path, path)
        rows = (
            await self.db.execute(
                select(
                    NodeDO.id, NodeDO.node_type, NodeDO.size, NodeDO.extra_metadata
                ).where(scope)
            )
        ).all()
        if not rows:
            return 0, []
        subtree_ids = select(NodeDO.id).where(scope).scalar_subquery()
        await self.db.execute(
            delete(GrantDO)
            .where(GrantDO.folder_id.in_(subtree_ids))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(RootDO)
            .where(RootDO.id.in_(subtree_ids))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(NodeDO).where(scope).execution_options(synchronize_session=False)
        )
        files = [
            RemovedFile(id=row.id, size=row.size, metadata=row.extra_metadata)
            for row in rows
            if row.node_type == NodeType.FILE.value
        ]
        return len(rows), files

    async def expired_files(self, now: int) -> list[NodeDO]:
        """Files whose expiry timestamp has passed."""
        return await self._nodes(
            select(NodeDO)
            .where(NodeDO.expire_time.is_not(None), NodeDO.expire_time <= now)
            .order_by(NodeDO.id)
        )

    async def list_files(self, path: NodePath) -> list[NodeDO]:
        """All files at or below path."""
        return await self._nodes(
            select(NodeDO)
            .where(
                subtree_clause(NodeDO.path, path),
                NodeDO.node_type == NodeType.FILE.value,
            )
            .order_by(NodeDO.id)
        )

    async def _flush(self, name: str, parent_id: Optional[int]) -> None:
        try:
            await self.db.flush()
        except IntegrityError as err:
            # Lost a race with a concurrent insert of the same name
            raise ConflictException(name, parent_id) from err
