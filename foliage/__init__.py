"""Hierarchical file system layer over a metadata store and an object store."""
