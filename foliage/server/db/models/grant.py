from sqlalchemy import BigInteger, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from foliage.server.db.base import Base


class GrantDO(Base):
    """Explicit permission of a user on a folder."""

    __tablename__ = "fs_grants"

    user_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    """Opaque caller identity."""

    folder_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("fs_nodes.id", ondelete="CASCADE"), primary_key=True
    )
    """Folder the grant is attached to."""

    level: Mapped[str] = mapped_column(String, nullable=False)
    """read, write, admin or owner."""

    def __repr__(self) -> str:
        return (
            f"<GrantDO(user_id='{self.user_id}', folder_id={self.folder_id}, "
            f"level='{self.level}')>"
        )
