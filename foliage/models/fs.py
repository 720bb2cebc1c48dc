"""File system data models returned to callers."""

from dataclasses import dataclass, field
from typing import Any

from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.mixins.json import DataClassJSONMixin

from .base import BaseEnum, BaseResponse, OperationStatus


class NodeType(str, BaseEnum):
    """Discriminant of a node."""

    FILE = "file"
    FOLDER = "folder"


class RootCategory(str, BaseEnum):
    """Category of a hierarchy root."""

    PERSONAL = "personal"
    PERSONAL_TEMPORARY = "personal-temporary"
    ORGANIZATIONAL = "organizational"
    SHARED = "shared"


class PermissionLevel(str, BaseEnum):
    """Permission levels, totally ordered read < write < admin < owner."""

    READ = "read"
    WRITE = "write"
    ADMIN = "admin"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        """Position of the level in the total order."""
        return _LEVEL_RANK[self]

    def satisfies(self, required: "PermissionLevel") -> bool:
        """Return True if this level is at least the required level."""
        return self.rank >= required.rank


_LEVEL_RANK = {
    PermissionLevel.READ: 1,
    PermissionLevel.WRITE: 2,
    PermissionLevel.ADMIN: 3,
    PermissionLevel.OWNER: 4,
}

EDITABLE_LEVELS = (PermissionLevel.READ, PermissionLevel.WRITE, PermissionLevel.ADMIN)
"""Levels that may be granted explicitly; owner is only seeded with a root."""


@dataclass
class NodeVO(DataClassJSONMixin):
    """A file or folder."""

    id: int
    name: str
    node_type: NodeType = field(metadata=field_options(alias="type"))
    parent_id: int | None = field(metadata=field_options(alias="parentId"))
    path: list[int]
    create_time: int = field(metadata=field_options(alias="createTime"))
    size: int = 0
    content_type: str | None = field(
        metadata=field_options(alias="contentType"), default=None
    )
    expire_time: int | None = field(
        metadata=field_options(alias="expireTime"), default=None
    )
    metadata: dict[str, Any] | None = None
    permission: PermissionLevel | None = None
    """Effective level of the caller, when resolved."""

    @property
    def is_folder(self) -> bool:
        return self.node_type == NodeType.FOLDER

    class Config(BaseConfig):
        serialize_by_alias = True
        omit_none = True


@dataclass
class RootVO(DataClassJSONMixin):
    """A hierarchy root."""

    id: int
    name: str
    category: RootCategory
    max_bytes: int = field(metadata=field_options(alias="maxBytes"))
    used_bytes: int = field(metadata=field_options(alias="usedBytes"))
    permission: PermissionLevel | None = None

    class Config(BaseConfig):
        serialize_by_alias = True
        omit_none = True


@dataclass
class UsageVO(BaseResponse):
    """Quota usage of a root."""

    root_id: int = field(metadata=field_options(alias="rootId"), default=0)
    used: int = field(metadata=field_options(alias="usedBytes"), default=0)
    max: int = field(metadata=field_options(alias="maxBytes"), default=0)
    remaining: int = field(metadata=field_options(alias="remainingBytes"), default=0)
    percent: int = field(metadata=field_options(alias="usagePercent"), default=0)


@dataclass
class CopyResultVO(BaseResponse):
    """Outcome of a copy."""

    copied_count: int = field(metadata=field_options(alias="copiedCount"), default=0)
    """Metadata rows duplicated."""

    s3_success_count: int = field(
        metadata=field_options(alias="s3SuccessCount"), default=0
    )
    s3_fail_count: int = field(metadata=field_options(alias="s3FailCount"), default=0)
    failed_ids: list[int] = field(
        metadata=field_options(alias="failedIds"), default_factory=list
    )
    """Ids of the new file nodes whose content could not be copied."""

    status: OperationStatus = OperationStatus.OK


@dataclass
class MoveResultVO(BaseResponse):
    """Outcome of a move."""

    moved_count: int = field(metadata=field_options(alias="movedCount"), default=0)
    s3_success_count: int = field(
        metadata=field_options(alias="s3SuccessCount"), default=0
    )
    s3_fail_count: int = field(metadata=field_options(alias="s3FailCount"), default=0)
    status: OperationStatus = OperationStatus.OK


@dataclass
class DeleteResultVO(BaseResponse):
    """Outcome of a delete."""

    deleted_count: int = field(metadata=field_options(alias="deletedCount"), default=0)
    s3_deleted_count: int = field(
        metadata=field_options(alias="s3DeletedCount"), default=0
    )
    s3_failed_count: int = field(
        metadata=field_options(alias="s3FailedCount"), default=0
    )
    status: OperationStatus = OperationStatus.OK


@dataclass
class GrantVO(DataClassJSONMixin):
    """Effective permission of a user at a folder."""

    user_id: str = field(metadata=field_options(alias="userId"))
    folder_id: int = field(metadata=field_options(alias="folderId"))
    """Folder holding the grant that decided the level."""

    permission: PermissionLevel

    class Config(BaseConfig):
        serialize_by_alias = True


@dataclass
class GrantChangeVO(BaseResponse):
    """Outcome of a grant mutation."""

    message: str | None = None
