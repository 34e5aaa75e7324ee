"""Persistence layer: SQLite notes store, migrations and the LanceDB vector index."""

from .metadata import MetadataStore
from .migrations import MigrationRunner, latest_version
from .vector import VectorIndex

__all__ = ["MetadataStore", "MigrationRunner", "VectorIndex", "latest_version"]
