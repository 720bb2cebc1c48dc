"""Module for database models."""

from . import grant, node  # noqa: F401

__all__ = [
    "grant",
    "node",
]
