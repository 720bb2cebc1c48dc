"""Tree mutation engine.

Every operation commits its metadata change in a single transaction or not at
all. Object store calls happen after the commit, fan out with bounded
concurrency and are reported as counts; they never roll back metadata.
"""

import copy
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select

from foliage.models.base import OperationStatus
from foliage.models.fs import (
    CopyResultVO,
    DeleteResultVO,
    MoveResultVO,
    NodeType,
    NodeVO,
    PermissionLevel,
    RootCategory,
    RootVO,
    UsageVO,
)
from foliage.server.config import ServerConfig
from foliage.server.db.models.grant import GrantDO
from foliage.server.db.models.node import NodeDO, RootDO, now_ms
from foliage.server.db.session import DatabaseSessionManager
from foliage.server.exceptions import (
    ConflictException,
    InvalidInputException,
    NotFoundException,
)
from foliage.server.services.blob import (
    BlobStorage,
    content_keys,
    guess_content_type,
    object_key,
)
from foliage.server.services.permissions import PermissionResolver, PermissionService
from foliage.server.services.quota import QuotaLedger, usage_of
from foliage.server.services.vfs import RemovedFile, VirtualFileSystem
from foliage.server.utils.concurrency import run_bounded
from foliage.server.utils.paths import is_descendant_of
from foliage.server.utils.snowflake import next_id

logger = logging.getLogger(__name__)

__all__ = ["TreeService"]

DEFAULT_ROOT_NAMES = {
    RootCategory.PERSONAL: "Personal",
    RootCategory.PERSONAL_TEMPORARY: "Temporary",
}

_FORBIDDEN_NAME_CHARS = set('/\\') | {chr(c) for c in range(32)}


@dataclass
class _CopiedFile:
    source_id: int
    new_id: int
    metadata: dict[str, Any] | None


@dataclass
class _Removal:
    """Rows removed inside a transaction whose blobs are deleted afterwards."""

    count: int = 0
    files: list[RemovedFile] = field(default_factory=list)

    def add(self, count: int, files: list[RemovedFile]) -> None:
        self.count += count
        self.files.extend(files)


def node_vo(node: NodeDO, permission: PermissionLevel | None = None) -> NodeVO:
    """Convert a node row to its value object."""
    return NodeVO(
        id=node.id,
        name=node.name,
        node_type=NodeType.from_value(node.node_type),
        parent_id=node.parent_id,
        path=list(node.node_path),
        create_time=node.create_time,
        size=node.size,
        content_type=node.content_type,
        expire_time=node.expire_time,
        metadata=node.extra_metadata,
        permission=permission,
    )


def _unique_ids(node_ids: Sequence[int]) -> list[int]:
    if not node_ids:
        raise InvalidInputException("No items selected")
    return list(dict.fromkeys(node_ids))


def _check_distinct_names(nodes: Sequence[NodeDO]) -> None:
    """Items placed under one folder in a single batch need distinct names."""
    seen: set[str] = set()
    for node in nodes:
        if node.name in seen:
            raise InvalidInputException(
                f"Multiple selected items are named {node.name}"
            )
        seen.add(node.name)


class TreeService:
    """Create, list, rename, move, copy and delete nodes."""

    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        blob_storage: BlobStorage,
        permission_service: PermissionService,
        config: ServerConfig,
    ) -> None:
        self.session_manager = session_manager
        self.blob_storage = blob_storage
        self.permissions = permission_service
        self.config = config

    def validate_name(self, name: str) -> str:
        """Return the normalized display name or raise InvalidInputException."""
        name = (name or "").strip()
        if not name:
            raise InvalidInputException("Name cannot be empty")
        if len(name) > self.config.max_name_length:
            raise InvalidInputException(
                f"Name longer than {self.config.max_name_length} characters"
            )
        if name in (".", "..") or any(c in _FORBIDDEN_NAME_CHARS for c in name):
            raise InvalidInputException(f"Invalid name: {name!r}")
        return name

    # Roots

    async def create_root(
        self,
        owner_id: str,
        category: RootCategory,
        name: str | None = None,
        max_bytes: int | None = None,
    ) -> RootVO:
        """Create a root folder, its quota record and the owner grant."""
        if name is None:
            name = DEFAULT_ROOT_NAMES.get(category)
            if name is None:
                raise InvalidInputException(f"A {category.value} root needs a name")
        name = self.validate_name(name)
        if max_bytes is None:
            max_bytes = self.config.quota.max_bytes_for(category)
        if max_bytes < 0:
            raise InvalidInputException("max_bytes cannot be negative")
        async with self.session_manager.transaction() as session:
            node, root = await VirtualFileSystem(session).create_root(
                name, category, max_bytes, owner_id
            )
        logger.info(f"Created {category.value} root {node.id} for {owner_id}")
        return _root_vo(node, root, PermissionLevel.OWNER)

    async def get_or_create_root(
        self, user_id: str, category: RootCategory
    ) -> RootVO:
        """Return the user's personal or temporary root, creating it on first use."""
        if category not in DEFAULT_ROOT_NAMES:
            raise InvalidInputException(
                f"Only personal roots are provisioned per user, not {category.value}"
            )
        async with self.session_manager.session() as session:
            vfs = VirtualFileSystem(session)
            roots = await vfs.owned_roots(user_id, category)
            if roots:
                node = await vfs.require_node(roots[0].id)
                return _root_vo(node, roots[0], PermissionLevel.OWNER)
        return await self.create_root(user_id, category)

    async def list_roots(self, user_id: str) -> list[RootVO]:
        """Roots the user can open at the top level.

        Personal and temporary roots are listed for their owner only, other
        categories for any user with a grant on the root folder.
        """
        async with self.session_manager.session() as session:
            stmt = (
                select(RootDO, NodeDO, GrantDO.level)
                .join(NodeDO, NodeDO.id == RootDO.id)
                .join(GrantDO, GrantDO.folder_id == RootDO.id)
                .where(GrantDO.user_id == user_id)
                .order_by(RootDO.id)
            )
            rows = (await session.execute(stmt)).all()
        roots = []
        for root, node, level in rows:
            permission = PermissionLevel.from_value(level)
            category = RootCategory.from_value(root.category)
            if category in DEFAULT_ROOT_NAMES and permission != PermissionLevel.OWNER:
                continue
            roots.append(_root_vo(node, root, permission))
        return roots

    async def list_shared(self, user_id: str) -> list[NodeVO]:
        """Nodes inside other users' personal roots the user was granted."""
        async with self.session_manager.session() as session:
            stmt = (
                select(NodeDO, GrantDO.level)
                .join(GrantDO, GrantDO.folder_id == NodeDO.id)
                .where(
                    GrantDO.user_id == user_id,
                    GrantDO.level != PermissionLevel.OWNER.value,
                )
                .order_by(NodeDO.name)
            )
            rows = (await session.execute(stmt)).all()
            vfs = VirtualFileSystem(session)
            own_roots = {root.id for root in await vfs.owned_roots(user_id)}
            shared = []
            for node, level in rows:
                root = await vfs.root_of(node)
                if root.id in own_roots or root.category != RootCategory.PERSONAL:
                    continue
                shared.append(node_vo(node, PermissionLevel.from_value(level)))
        return shared

    # Reads

    async def get_node(self, user_id: str, node_id: int) -> NodeVO:
        async with self.session_manager.session() as session:
            vfs = VirtualFileSystem(session)
            node = await vfs.require_node(node_id)
            level = await self.permissions.require(
                vfs, user_id, node, PermissionLevel.READ
            )
        return node_vo(node, level)

    async def list_children(self, user_id: str, folder_id: int) -> list[NodeVO]:
        """Children of a folder with the caller's effective level on each."""
        async with self.session_manager.session() as session:
            vfs = VirtualFileSystem(session)
            folder = await vfs.require_folder(folder_id)
            await self.permissions.require(
                vfs, user_id, folder, PermissionLevel.READ, "folder"
            )
            children = await vfs.list_children(folder.id)
            grants = (
                await session.execute(
                    select(GrantDO).where(
                        GrantDO.user_id == user_id,
                        GrantDO.folder_id.in_(
                            list(folder.node_path) + [child.id for child in children]
                        ),
                    )
                )
            ).scalars()
            resolver = PermissionResolver.from_grants(grants)
        return [
            node_vo(child, resolver.resolve(user_id, child.node_path))
            for child in children
        ]

    async def get_usage(self, user_id: str, root_id: int) -> UsageVO:
        async with self.session_manager.session() as session:
            vfs = VirtualFileSystem(session)
            node = await vfs.require_node(root_id)
            await self.permissions.require(vfs, user_id, node, PermissionLevel.READ)
            root = await vfs.root_of(node)
        return usage_of(root)

    async def get_download_url(
        self, user_id: str, node_id: int, ttl_seconds: int = 3600
    ) -> str:
        """Time limited URL for a file, named after the node."""
        if ttl_seconds <= 0:
            raise InvalidInputException("ttl_seconds must be positive")
        async with self.session_manager.session() as session:
            vfs = VirtualFileSystem(session)
            node = await vfs.require_node(node_id)
            await self.permissions.require(vfs, user_id, node, PermissionLevel.READ)
        if node.is_folder:
            raise InvalidInputException(f"Node {node_id} is not a file")
        return await self.blob_storage.presigned_url(
            object_key(node.id), ttl_seconds, node.name
        )

    # Mutations

    async def create_folder(self, user_id: str, parent_id: int, name: str) -> NodeVO:
        name = self.validate_name(name)
        async with self.session_manager.transaction() as session:
            vfs = VirtualFileSystem(session)
            parent = await vfs.require_folder(parent_id)
            level = await self.permissions.require(
                vfs, user_id, parent, PermissionLevel.WRITE, "parent"
            )
            if await vfs.find_child(parent.id, name) is not None:
                raise ConflictException(name, parent.id)
            folder = await vfs.create_node(parent, name, NodeType.FOLDER)
        logger.info(f"Created folder {folder.id} ({name}) under {parent_id}")
        return node_vo(folder, level)

    async def upload_file(
        self,
        user_id: str,
        parent_id: int,
        name: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        override: bool = False,
    ) -> NodeVO:
        """Store bytes and create the file row charging the root's quota.

        The blob is written first under the new node's key; if the metadata
        transaction then fails the blob is removed again.
        """
        name = self.validate_name(name)
        size = len(data)
        content_type = content_type or guess_content_type(name)

        async with self.session_manager.session() as session:
            vfs = VirtualFileSystem(session)
            parent = await vfs.require_folder(parent_id)
            await self.permissions.require(
                vfs, user_id, parent, PermissionLevel.WRITE, "parent"
            )
            root = await vfs.root_of(parent)
            existing = await vfs.find_child(parent.id, name)
            if existing is not None and not override:
                raise ConflictException(name, parent.id)
            await QuotaLedger(session).require(
                root.id, size - (existing.size if existing is not None else 0)
            )

        node_id = next_id()
        await self.blob_storage.put(object_key(node_id), data, content_type)

        removal = _Removal()
        try:
            async with self.session_manager.transaction() as session:
                vfs = VirtualFileSystem(session)
                ledger = QuotaLedger(session)
                parent = await vfs.require_folder(parent_id)
                level = await self.permissions.require(
                    vfs, user_id, parent, PermissionLevel.WRITE, "parent"
                )
                root = await vfs.root_of(parent)
                await self._replace_conflict(
                    vfs, ledger, user_id, parent, name, root, override, removal
                )
                await ledger.charge(root.id, size, enforce_limit=True)
                expire_time = None
                if root.category == RootCategory.PERSONAL_TEMPORARY:
                    expire_time = now_ms() + self.config.temporary_ttl_seconds * 1000
                node = await vfs.create_node(
                    parent,
                    name,
                    NodeType.FILE,
                    node_id=node_id,
                    size=size,
                    content_type=content_type,
                    expire_time=expire_time,
                    metadata=metadata,
                )
        except Exception:
            if not await self.blob_storage.delete(object_key(node_id)):
                logger.warning(f"Orphaned blob {object_key(node_id)} after failed upload")
            raise

        await self._delete_blobs(removal.files)
        logger.info(f"Uploaded file {node.id} ({name}, {size} bytes) to {parent_id}")
        return node_vo(node, level)

    async def update_node(
        self,
        user_id: str,
        node_id: int,
        name: str | None = None,
        parent_id: int | None = None,
        override: bool = False,
    ) -> NodeVO:
        """Rename a node and/or move it under a new parent."""
        new_name = self.validate_name(name) if name is not None else None
        removal = _Removal()
        async with self.session_manager.transaction() as session:
            vfs = VirtualFileSystem(session)
            ledger = QuotaLedger(session)
            node = await vfs.require_node(node_id)
            new_name = new_name or node.name
            reparent = parent_id is not None and parent_id != node.parent_id

            if node.parent_id is None:
                if reparent:
                    raise InvalidInputException("Cannot move root folders")
                await self.permissions.require(
                    vfs, user_id, node, PermissionLevel.ADMIN, "root"
                )
                await vfs.rename(node, new_name)
                return node_vo(node)

            old_parent = await vfs.require_node(node.parent_id)
            await self.permissions.require(
                vfs, user_id, old_parent, PermissionLevel.WRITE, "parent"
            )
            if not reparent:
                if new_name != node.name:
                    await self._replace_conflict(
                        vfs, ledger, user_id, old_parent, new_name, None, override,
                        removal, keep=node,
                    )
                    await vfs.rename(node, new_name)
            else:
                assert parent_id is not None
                target = await vfs.require_folder(parent_id)
                await self._relocate(
                    vfs, ledger, user_id, node, target, new_name, override, removal
                )
            level = await self.permissions.resolve(vfs, user_id, node.node_path)

        await self._delete_blobs(removal.files)
        logger.info(f"Updated node {node_id}: name={new_name} parent={node.parent_id}")
        return node_vo(node, level)

    async def move_nodes(
        self,
        user_id: str,
        node_ids: Sequence[int],
        target_id: int,
        override: bool = False,
    ) -> MoveResultVO:
        """Relocate a batch of nodes under a target folder.

        A move only rewrites paths; object keys derive from ids and stay put.
        """
        ids = _unique_ids(node_ids)
        removal = _Removal()
        async with self.session_manager.transaction() as session:
            vfs = VirtualFileSystem(session)
            ledger = QuotaLedger(session)
            target = await vfs.require_folder(target_id)
            _check_distinct_names([await vfs.require_node(i) for i in ids])
            for node_id in ids:
                node = await vfs.require_node(node_id)
                if node.parent_id is None:
                    raise InvalidInputException("Cannot move root folders")
                old_parent = await vfs.require_node(node.parent_id)
                await self.permissions.require(
                    vfs, user_id, old_parent, PermissionLevel.WRITE, "source"
                )
                await self._relocate(
                    vfs, ledger, user_id, node, target, node.name, override, removal
                )

        await self._delete_blobs(removal.files)
        logger.info(f"Moved {len(ids)} nodes to {target_id}")
        return MoveResultVO(moved_count=len(ids))

    async def copy_nodes(
        self,
        user_id: str,
        node_ids: Sequence[int],
        target_id: int,
        override: bool = False,
    ) -> CopyResultVO:
        """Duplicate a batch of nodes and their subtrees under a target folder.

        Metadata commits first. Content is then copied per file onto the new
        file's keys; failures are counted and reported by new file id.
        """
        ids = _unique_ids(node_ids)
        removal = _Removal()
        copied: list[_CopiedFile] = []
        copied_count = 0
        async with self.session_manager.transaction() as session:
            vfs = VirtualFileSystem(session)
            ledger = QuotaLedger(session)
            target = await vfs.require_folder(target_id)
            target_root = await vfs.root_of(target)
            if target_root.category == RootCategory.PERSONAL_TEMPORARY:
                raise InvalidInputException("Cannot copy/move to temporary folders")
            await self.permissions.require(
                vfs, user_id, target, PermissionLevel.WRITE, "target"
            )
            _check_distinct_names([await vfs.require_node(i) for i in ids])
            for node_id in ids:
                source = await vfs.require_node(node_id)
                if source.parent_id is None:
                    raise InvalidInputException("Cannot copy root folders")
                await self.permissions.require(
                    vfs, user_id, source, PermissionLevel.READ, "source"
                )
                self._check_destination(source, target, "copy")

                subtree = [source] + await vfs.list_descendants(source.node_path)
                nbytes = sum(n.size for n in subtree if not n.is_folder)
                await self._replace_conflict(
                    vfs, ledger, user_id, target, source.name, target_root,
                    override, removal, keep=source,
                )
                await ledger.charge(target_root.id, nbytes, enforce_limit=True)

                new_nodes: dict[int, NodeDO] = {}
                for original in subtree:
                    parent = (
                        target
                        if original.id == source.id
                        else new_nodes[original.parent_id]  # type: ignore[index]
                    )
                    metadata = copy.deepcopy(original.extra_metadata)
                    duplicate = await vfs.create_node(
                        parent,
                        original.name,
                        NodeType.from_value(original.node_type),
                        size=original.size,
                        content_type=original.content_type,
                        metadata=metadata,
                    )
                    new_nodes[original.id] = duplicate
                    if not original.is_folder:
                        copied.append(
                            _CopiedFile(original.id, duplicate.id, metadata)
                        )
                copied_count += len(subtree)

        async def copy_content(item: _CopiedFile) -> bool:
            ok = True
            for src, dst in zip(
                content_keys(item.source_id, item.metadata),
                content_keys(item.new_id, item.metadata),
            ):
                if not await self.blob_storage.copy(src, dst):
                    logger.warning(f"Failed to copy object {src} to {dst}")
                    ok = False
            return ok

        results = await run_bounded(
            copied,
            copy_content,
            self.config.object_store.concurrency,
            self.config.object_store.timeout_seconds,
        )
        failed_ids = [item.new_id for item, ok in zip(copied, results) if not ok]
        await self._delete_blobs(removal.files)
        result = CopyResultVO(
            copied_count=copied_count,
            s3_success_count=len(results) - len(failed_ids),
            s3_fail_count=len(failed_ids),
            failed_ids=failed_ids,
            status=OperationStatus.PARTIAL if failed_ids else OperationStatus.OK,
        )
        logger.info(
            f"Copied {copied_count} nodes to {target_id}: "
            f"{result.s3_success_count} blobs copied, {result.s3_fail_count} failed"
        )
        return result

    async def delete_nodes(
        self, user_id: str, node_ids: Sequence[int]
    ) -> DeleteResultVO:
        """Delete nodes with their subtrees, then their blobs."""
        ids = _unique_ids(node_ids)
        removal = _Removal()
        async with self.session_manager.transaction() as session:
            vfs = VirtualFileSystem(session)
            ledger = QuotaLedger(session)
            nodes = await vfs.get_nodes(ids)
            if len(nodes) != len(ids):
                missing = set(ids) - {node.id for node in nodes}
                raise NotFoundException(f"Nodes not found: {sorted(missing)}")
            # Parents first so nested selections are already gone
            nodes.sort(key=lambda n: len(n.node_path))
            deleted_paths: list[tuple[int, ...]] = []
            for node in nodes:
                if any(is_descendant_of(node.node_path, p) for p in deleted_paths):
                    continue
                if node.parent_id is None:
                    raise InvalidInputException("Cannot delete root folders")
                parent = await vfs.require_node(node.parent_id)
                await self.permissions.require(
                    vfs, user_id, parent, PermissionLevel.WRITE, "parent"
                )
                await self._remove_subtree(vfs, ledger, user_id, node, removal)
                deleted_paths.append(node.node_path)

        deleted, failed = await self._delete_blobs(removal.files)
        result = DeleteResultVO(
            deleted_count=removal.count,
            s3_deleted_count=deleted,
            s3_failed_count=failed,
            status=OperationStatus.PARTIAL if failed else OperationStatus.OK,
        )
        logger.info(
            f"Deleted {removal.count} nodes: {deleted} blobs deleted, {failed} failed"
        )
        return result

    async def delete_node(self, user_id: str, node_id: int) -> DeleteResultVO:
        return await self.delete_nodes(user_id, [node_id])

    # Internals

    def _check_destination(self, source: NodeDO, target: NodeDO, action: str) -> None:
        if source.id == target.id or is_descendant_of(
            target.node_path, source.node_path
        ):
            raise InvalidInputException(
                f"Cannot {action} a folder into itself or its descendant"
            )
        if source.parent_id == target.id:
            raise InvalidInputException("Cannot copy/move to same folder")

    async def _relocate(
        self,
        vfs: VirtualFileSystem,
        ledger: QuotaLedger,
        user_id: str,
        node: NodeDO,
        target: NodeDO,
        new_name: str,
        override: bool,
        removal: _Removal,
    ) -> None:
        """Move node under target, moving its bytes between roots if needed."""
        self._check_destination(node, target, "move")
        source_root = await vfs.root_of(node)
        if source_root.category == RootCategory.PERSONAL_TEMPORARY:
            raise InvalidInputException("Cannot move temporary content")
        target_root = await vfs.root_of(target)
        if target_root.category == RootCategory.PERSONAL_TEMPORARY:
            raise InvalidInputException("Cannot copy/move to temporary folders")
        await self.permissions.require(
            vfs, user_id, target, PermissionLevel.WRITE, "target"
        )
        await self.permissions.require(vfs, user_id, node, PermissionLevel.WRITE)
        await self.permissions.require_descendants(
            vfs, user_id, node.node_path, PermissionLevel.WRITE
        )
        await self._replace_conflict(
            vfs, ledger, user_id, target, new_name, target_root, override, removal,
            keep=node,
        )
        nbytes = await vfs.subtree_file_bytes(node.node_path)
        await ledger.transfer(source_root.id, target_root.id, nbytes)
        await vfs.relocate(node, target, new_name)

    async def _replace_conflict(
        self,
        vfs: VirtualFileSystem,
        ledger: QuotaLedger,
        user_id: str,
        parent: NodeDO,
        name: str,
        root: RootDO | None,
        override: bool,
        removal: _Removal,
        keep: NodeDO | None = None,
    ) -> None:
        """Delete a sibling named name under parent when override is set.

        Raises ConflictException if one exists and override is not set.
        """
        conflict = await vfs.find_child(parent.id, name)
        if conflict is None or (keep is not None and conflict.id == keep.id):
            return
        if not override:
            raise ConflictException(name, parent.id)
        if keep is not None and is_descendant_of(keep.node_path, conflict.node_path):
            raise InvalidInputException(
                f"Cannot replace {name}: it contains the item being placed"
            )
        logger.debug(f"Replacing {conflict.id} ({name}) under {parent.id}")
        await self._remove_subtree(vfs, ledger, user_id, conflict, removal, root)

    async def _remove_subtree(
        self,
        vfs: VirtualFileSystem,
        ledger: QuotaLedger,
        user_id: str,
        node: NodeDO,
        removal: _Removal,
        root: RootDO | None = None,
    ) -> None:
        await self.permissions.require(vfs, user_id, node, PermissionLevel.WRITE)
        await self.permissions.require_descendants(
            vfs, user_id, node.node_path, PermissionLevel.WRITE
        )
        if root is None:
            root = await vfs.root_of(node)
        count, files = await vfs.delete_subtree(node.node_path)
        await ledger.charge(root.id, -sum(f.size for f in files))
        removal.add(count, files)

    async def _delete_blobs(self, files: list[RemovedFile]) -> tuple[int, int]:
        """Delete the content of removed files. Returns (deleted, failed)."""
        if not files:
            return 0, 0

        async def delete_content(item: RemovedFile) -> bool:
            ok = True
            for key in content_keys(item.id, item.metadata):
                if not await self.blob_storage.delete(key):
                    logger.warning(f"Failed to delete object {key}")
                    ok = False
            return ok

        results = await run_bounded(
            files,
            delete_content,
            self.config.object_store.concurrency,
            self.config.object_store.timeout_seconds,
        )
        deleted = sum(results)
        return deleted, len(results) - deleted


def _root_vo(
    node: NodeDO, root: RootDO, permission: PermissionLevel | None = None
) -> RootVO:
    return RootVO(
        id=root.id,
        name=node.name,
        category=RootCategory.from_value(root.category),
        max_bytes=root.max_bytes,
        used_bytes=root.used_bytes,
        permission=permission,
    )
