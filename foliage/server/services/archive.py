"""Batch download of a mixed selection of files and folders as one zip."""

import io
import logging
import posixpath
import shutil
import tempfile
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import IO, BinaryIO

from foliage.models.fs import PermissionLevel
from foliage.server.config import ServerConfig
from foliage.server.db.models.node import NodeDO
from foliage.server.db.session import DatabaseSessionManager
from foliage.server.exceptions import InvalidInputException, NotFoundException
from foliage.server.services.blob import CHUNK_SIZE, BlobStorage, object_key
from foliage.server.services.permissions import PermissionService
from foliage.server.services.vfs import VirtualFileSystem
from foliage.server.utils.concurrency import run_bounded

logger = logging.getLogger(__name__)

__all__ = ["ArchiveBuilder", "ArchiveEntry", "ArchiveResult", "plan_entries"]

DEFAULT_ARCHIVE_NAME = "download"

# Larger objects spill from memory to a temporary file while fetched
SPOOL_MAX_BYTES = 1024 * 1024


@dataclass(frozen=True)
class ArchiveEntry:
    node_id: int
    arcname: str


@dataclass
class ArchiveResult:
    filename: str
    data: bytes
    """Archive bytes, empty when the archive was written to a given output."""

    entries: list[str] = field(default_factory=list)
    """Names written to the archive, in order."""

    skipped_ids: list[int] = field(default_factory=list)
    """Files left out because their content could not be fetched."""


def _dedupe_name(name: str, used: set[str]) -> str:
    if name not in used:
        return name
    stem, ext = posixpath.splitext(name)
    n = 1
    while f"{stem}({n}){ext}" in used:
        n += 1
    return f"{stem}({n}){ext}"


def plan_entries(
    selected: Sequence[NodeDO], descendants: Sequence[NodeDO]
) -> list[ArchiveEntry]:
    """Compute the archive relative path of every file in a selection.

    A file is placed relative to its nearest selected folder ancestor, with
    the intermediate folder names resolved through their ids. Files without
    one sit at the archive root. When more than one item is selected,
    folder derived paths start with the selected folder's own name.
    """
    selected_folders = {node.id for node in selected if node.is_folder}
    names = {node.id: node.name for node in (*selected, *descendants) if node.is_folder}
    use_prefix = len(selected) > 1

    files: dict[int, NodeDO] = {}
    for node in (*selected, *descendants):
        if not node.is_folder:
            files.setdefault(node.id, node)

    entries = []
    used: set[str] = set()
    for node in files.values():
        path = node.node_path
        anchor = next(
            (i for i in range(len(path) - 2, -1, -1) if path[i] in selected_folders),
            None,
        )
        if anchor is None:
            parts = [node.name]
        else:
            start = anchor if use_prefix else anchor + 1
            parts = [names[folder_id] for folder_id in path[start:-1]] + [node.name]
        arcname = _dedupe_name("/".join(parts), used)
        used.add(arcname)
        entries.append(ArchiveEntry(node.id, arcname))
    return entries


class ArchiveBuilder:
    """Resolves a selection to files and zips their content."""

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

    async def build(
        self,
        user_id: str,
        node_ids: Sequence[int],
        output: BinaryIO | None = None,
    ) -> ArchiveResult:
        """Zip the selected files and folders.

        Objects are streamed into bounded spool files, at most `concurrency`
        at a time, and each complete spool is appended to the archive. A file
        that fails part way is therefore skipped without leaving a truncated
        entry. When output is given the archive is written there instead of
        being returned in memory.
        """
        if not node_ids:
            raise InvalidInputException("No items selected")
        ids = list(dict.fromkeys(node_ids))

        async with self.session_manager.session() as session:
            vfs = VirtualFileSystem(session)
            selected = await vfs.get_nodes(ids)
            if len(selected) != len(ids):
                missing = set(ids) - {node.id for node in selected}
                raise NotFoundException(f"Nodes not found: {sorted(missing)}")
            descendants: list[NodeDO] = []
            for node in selected:
                await self.permissions.require(vfs, user_id, node, PermissionLevel.READ)
                if node.is_folder:
                    descendants.extend(await vfs.list_descendants(node.node_path))

        entries = plan_entries(selected, descendants)
        window = self.config.object_store.concurrency
        spools: dict[int, IO[bytes]] = {}

        async def fetch(entry: ArchiveEntry) -> bool:
            spools[entry.node_id] = await self._spool(entry.node_id)
            return True

        buffer = io.BytesIO()
        target = output if output is not None else buffer
        written = []
        skipped = []
        with zipfile.ZipFile(target, "w", zipfile.ZIP_DEFLATED) as archive:
            for start in range(0, len(entries), window):
                batch = entries[start : start + window]
                try:
                    results = await run_bounded(
                        batch, fetch, window, self.config.object_store.timeout_seconds
                    )
                    for entry, ok in zip(batch, results):
                        spool = spools.get(entry.node_id)
                        if not ok or spool is None:
                            logger.warning(
                                f"Skipping {entry.arcname} ({entry.node_id}) in archive"
                            )
                            skipped.append(entry.node_id)
                            continue
                        spool.seek(0, io.SEEK_END)
                        size = spool.tell()
                        spool.seek(0)
                        with archive.open(
                            entry.arcname, "w", force_zip64=size >= zipfile.ZIP64_LIMIT
                        ) as dest:
                            shutil.copyfileobj(spool, dest, CHUNK_SIZE)
                        written.append(entry.arcname)
                finally:
                    for spool in spools.values():
                        spool.close()
                    spools.clear()

        name = selected[0].name if len(selected) == 1 else DEFAULT_ARCHIVE_NAME
        logger.info(
            f"Built archive {name}.zip with {len(written)} entries, "
            f"{len(skipped)} skipped"
        )
        return ArchiveResult(
            filename=f"{name}.zip",
            data=buffer.getvalue() if output is None else b"",
            entries=written,
            skipped_ids=skipped,
        )

    async def _spool(self, node_id: int) -> IO[bytes]:
        spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES)
        try:
            async for chunk in self.blob_storage.get(object_key(node_id)):
                spool.write(chunk)
        except BaseException:
            spool.close()
            raise
        return spool
