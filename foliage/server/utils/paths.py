"""Materialized path helpers.

A node's path is the ordered tuple of its ancestor ids, ending with its own
id. The root's path is the singleton tuple of its own id. In the metadata store
the path is stored as the ids joined with ``.`` (e.g. ``"17.42.99"``) so that a
subtree is every row whose path starts with ``"17.42."``.

All helpers are pure and run in time proportional to the path length.
"""

from sqlalchemy import ColumnElement, func, literal
from sqlalchemy.orm import InstrumentedAttribute

__all__ = [
    "NodePath",
    "SEPARATOR",
    "encode_path",
    "decode_path",
    "is_descendant_of",
    "depth",
    "rebase",
    "child_path",
    "parent_id",
    "root_id",
    "descendants_clause",
    "subtree_clause",
    "rebased_column",
]

NodePath = tuple[int, ...]

SEPARATOR = "."


def encode_path(path: NodePath) -> str:
    """Encode a path tuple for storage."""
    if not path:
        raise ValueError("Path cannot be empty")
    return SEPARATOR.join(str(node_id) for node_id in path)


def decode_path(value: str) -> NodePath:
    """Decode a stored path."""
    if not value:
        raise ValueError("Path cannot be empty")
    return tuple(int(part) for part in value.split(SEPARATOR))


def is_descendant_of(path: NodePath, ancestor_path: NodePath) -> bool:
    """Return True if path is a proper descendant of ancestor_path.

    A node is never a descendant of itself.
    """
    n = len(ancestor_path)
    return len(path) > n and path[:n] == ancestor_path


def depth(path: NodePath) -> int:
    """Return the number of elements in the path."""
    return len(path)


def rebase(path: NodePath, old_prefix: NodePath, new_prefix: NodePath) -> NodePath:
    """Replace the leading old_prefix of path with new_prefix."""
    n = len(old_prefix)
    if path[:n] != old_prefix:
        raise ValueError(f"Path {path} does not start with {old_prefix}")
    return new_prefix + path[n:]


def child_path(parent: NodePath, node_id: int) -> NodePath:
    """Return the path of a new child of parent."""
    return parent + (node_id,)


def parent_id(path: NodePath) -> int | None:
    """Return the id of the parent, or None for a root path."""
    return path[-2] if len(path) > 1 else None


def root_id(path: NodePath) -> int:
    """Return the id of the root the path belongs to."""
    return path[0]


def descendants_clause(
    column: InstrumentedAttribute[str], path: NodePath
) -> ColumnElement[bool]:
    """SQL filter matching all proper descendants of path.

    A prefix match on ``"<path>."``, so it holds under any column collation.
    """
    return column.startswith(encode_path(path) + SEPARATOR, autoescape=True)


def subtree_clause(
    column: InstrumentedAttribute[str], path: NodePath
) -> ColumnElement[bool]:
    """SQL filter matching path itself and all of its descendants."""
    return (column == encode_path(path)) | descendants_clause(column, path)


def rebased_column(
    column: InstrumentedAttribute[str], old_prefix: NodePath, new_prefix: NodePath
) -> ColumnElement[str]:
    """SQL expression rewriting the leading old_prefix of column to new_prefix."""
    old = encode_path(old_prefix)
    new = encode_path(new_prefix)
    return literal(new).concat(func.substr(column, len(old) + 1))
