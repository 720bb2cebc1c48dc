"""Typed errors raised by the file system services."""

__all__ = [
    "FileSystemException",
    "NotFoundException",
    "ForbiddenException",
    "InvalidInputException",
    "ConflictException",
    "QuotaExceededException",
    "ObjectStoreException",
    "InternalException",
]


class FileSystemException(Exception):
    """Base class for all file system errors."""

    error_code = "E500"


class NotFoundException(FileSystemException):
    """A node, root or grant does not exist."""

    error_code = "E404"


class ForbiddenException(FileSystemException):
    """The caller lacks the required permission level."""

    error_code = "E403"


class InvalidInputException(FileSystemException):
    """Malformed name, empty selection or an operation on the wrong node type."""

    error_code = "E400"


class ConflictException(FileSystemException):
    """A sibling with the same name already exists."""

    error_code = "E409"

    def __init__(self, name: str, parent_id: int | None = None) -> None:
        super().__init__(f"Name already exists: {name}")
        self.name = name
        self.parent_id = parent_id


class QuotaExceededException(FileSystemException):
    """Reserving bytes would exceed the root's quota."""

    error_code = "E507"

    def __init__(self, used: int, limit: int, required: int) -> None:
        super().__init__(
            f"Storage limit exceeded: {used} + {required} bytes > {limit} bytes"
        )
        self.used = used
        self.limit = limit
        self.required = required


class ObjectStoreException(FileSystemException):
    """A blob operation failed for a specific key."""

    error_code = "E502"

    def __init__(self, key: str, message: str | None = None) -> None:
        super().__init__(message or f"Object store operation failed for {key}")
        self.key = key


class InternalException(FileSystemException):
    """Unexpected fault in the metadata store."""

    error_code = "E500"
