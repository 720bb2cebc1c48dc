import time
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from foliage.server.db.base import Base
from foliage.server.utils.paths import NodePath, decode_path
from foliage.server.utils.snowflake import next_id


def now_ms() -> int:
    return int(time.time() * 1000)


class NodeDO(Base):
    """A file or folder in the tree."""

    __tablename__ = "fs_nodes"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, default=next_id)
    """Node id, time ordered."""

    node_type: Mapped[str] = mapped_column(String, nullable=False)
    """Either 'file' or 'folder'."""

    name: Mapped[str] = mapped_column(String, nullable=False)
    """Display name."""

    parent_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, index=True, nullable=True
    )
    """Parent folder id, NULL only for a root folder."""

    path: Mapped[str] = mapped_column(Text, index=True, nullable=False)
    """Materialized path: ancestor ids and the node's own id joined with '.'."""

    content_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    """MIME type of a file."""

    size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    """Byte size, always 0 for folders."""

    create_time: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    """Creation timestamp in milliseconds."""

    expire_time: Mapped[Optional[int]] = mapped_column(
        BigInteger, index=True, nullable=True
    )
    """Expiry timestamp in milliseconds for temporary content."""

    extra_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, nullable=True
    )
    """Opaque metadata, e.g. the schema of derived tabular artifacts."""

    __table_args__ = (
        UniqueConstraint("parent_id", "name", name="uq_fs_nodes_parent_name"),
    )

    @property
    def node_path(self) -> NodePath:
        return decode_path(self.path)

    @property
    def is_folder(self) -> bool:
        return self.node_type == "folder"

    def __repr__(self) -> str:
        return f"<NodeDO(id={self.id}, name='{self.name}', path='{self.path}')>"


class RootDO(Base):
    """A hierarchy root with its quota ledger."""

    __tablename__ = "fs_roots"

    id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("fs_nodes.id"), primary_key=True
    )
    """Id of the root folder node."""

    category: Mapped[str] = mapped_column(String, index=True, nullable=False)
    """personal, personal-temporary, organizational or shared."""

    max_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    """Quota ceiling."""

    used_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    """Sum of the sizes of all files under the root, maintained incrementally."""

    def __repr__(self) -> str:
        return f"<RootDO(id={self.id}, category='{self.category}')>"
