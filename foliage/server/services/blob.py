"""Object store gateway.

Keys are derived from node ids and never stored on the node. A file's content
lives at ``files/<id>``; tabular artifacts generated from a spreadsheet live at
``derived/<id>/<table>.parquet`` with the table names recorded in the node's
metadata under ``sheets``.
"""

import asyncio
import logging
import mimetypes
import shutil
import urllib.parse
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from pathlib import Path, PurePosixPath
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import ObjectStoreException
from ..utils.url_signer import UrlSigner

logger = logging.getLogger(__name__)

__all__ = [
    "BlobStorage",
    "BlobNotFoundException",
    "LocalBlobStorage",
    "object_key",
    "derived_key",
    "derived_table_names",
    "content_keys",
    "guess_content_type",
]

CHUNK_SIZE = 64 * 1024


class BlobNotFoundException(ObjectStoreException):
    """No object exists under the key."""


def object_key(node_id: int) -> str:
    """Key of a file's primary content."""
    return f"files/{node_id}"


def derived_key(node_id: int, table_name: str) -> str:
    """Key of a derived tabular artifact of a file."""
    return f"derived/{node_id}/{table_name}.parquet"


def derived_table_names(metadata: Mapping[str, Any] | None) -> list[str]:
    """Table names of derived artifacts recorded in a node's metadata."""
    if not metadata:
        return []
    names = []
    for sheet in metadata.get("sheets") or []:
        if isinstance(sheet, Mapping) and (name := sheet.get("tableName")):
            names.append(str(name))
    return names


def content_keys(node_id: int, metadata: Mapping[str, Any] | None) -> list[str]:
    """All keys holding content for a file node."""
    return [object_key(node_id)] + [
        derived_key(node_id, name) for name in derived_table_names(metadata)
    ]


class BlobStorage(ABC):
    """Interface for the object store holding file bytes."""

    @abstractmethod
    async def put(
        self, key: str, data: bytes, content_type: str | None = None
    ) -> None:
        """Store bytes under key, raising ObjectStoreException on failure."""

    @abstractmethod
    def get(self, key: str) -> AsyncIterator[bytes]:
        """Stream the bytes stored under key.

        Raises BlobNotFoundException when iterated if the key does not exist.
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete the object under key. Returns False on failure."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if an object exists under key."""

    @abstractmethod
    async def copy(self, source_key: str, dest_key: str) -> bool:
        """Copy an object. Returns False on failure."""

    @abstractmethod
    async def presigned_url(
        self, key: str, ttl_seconds: int, download_name: str | None = None
    ) -> str:
        """Return a time limited URL for downloading the object."""

    async def read(self, key: str) -> bytes:
        """Read the full content of an object."""
        chunks = [chunk async for chunk in self.get(key)]
        return b"".join(chunks)


class LocalBlobStorage(BlobStorage):
    """Local filesystem implementation of the object store.

    Path structure: <root>/blobs/<key>
    Example: storage/blobs/files/123456789
    """

    def __init__(
        self, storage_root: Path, signer: UrlSigner, base_url: str = ""
    ) -> None:
        """Create a local blob storage instance."""
        self.root = storage_root / "blobs"
        self.root.mkdir(parents=True, exist_ok=True)
        self.signer = signer
        self.base_url = base_url.rstrip("/")

    def _get_path(self, key: str) -> Path:
        """Get physical path of the object."""
        parts = PurePosixPath(key).parts
        if not parts or any(part in ("..", "/", "") for part in parts):
            raise ObjectStoreException(key, f"Invalid object key: {key}")
        return self.root.joinpath(*parts)

    async def put(
        self, key: str, data: bytes, content_type: str | None = None
    ) -> None:
        path = self._get_path(key)
        temp_path = path.with_suffix(".tmp")
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            # Write to temp file and move for atomicity
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(temp_path, path)
        except OSError as err:
            raise ObjectStoreException(key, f"Failed to write {key}: {err}") from err

    async def get(self, key: str) -> AsyncIterator[bytes]:
        path = self._get_path(key)
        try:
            f = await aiofiles.open(path, "rb")
        except FileNotFoundError as err:
            raise BlobNotFoundException(key, f"Object {key} not found") from err
        except OSError as err:
            raise ObjectStoreException(key, f"Failed to read {key}: {err}") from err
        async with f:
            while chunk := await f.read(CHUNK_SIZE):
                yield chunk

    async def delete(self, key: str) -> bool:
        path = self._get_path(key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            # Already gone
            return True
        except OSError as err:
            logger.warning(f"Failed to delete object {key}: {err}")
            return False
        return True

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.isfile(self._get_path(key))

    async def copy(self, source_key: str, dest_key: str) -> bool:
        source = self._get_path(source_key)
        dest = self._get_path(dest_key)
        try:
            await aiofiles.os.makedirs(dest.parent, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, source, dest)
        except OSError as err:
            logger.warning(f"Failed to copy object {source_key} to {dest_key}: {err}")
            return False
        return True

    async def presigned_url(
        self, key: str, ttl_seconds: int, download_name: str | None = None
    ) -> str:
        self._get_path(key)
        params = self.signer.sign(key, ttl_seconds, download_name or "")
        query = {
            "signature": params.signature,
            "expires": str(params.expires),
            "nonce": params.nonce,
        }
        if download_name:
            query["filename"] = download_name
        quoted_key = urllib.parse.quote(key)
        return f"{self.base_url}/blobs/{quoted_key}?{urllib.parse.urlencode(query)}"

    def verify_url(
        self,
        key: str,
        signature: str,
        expires: int,
        nonce: str,
        download_name: str | None = None,
    ) -> bool:
        """Check the query parameters of a URL built by presigned_url."""
        return self.signer.verify(key, signature, expires, nonce, download_name or "")


def guess_content_type(name: str) -> str:
    """Guess a MIME type from a file name."""
    mime, _ = mimetypes.guess_type(name)
    return mime or "application/octet-stream"
