"""
Persistence layer for integrations, mappings, business records and the
sync audit trail.

DuckDB is the default backend; DB_TYPE=memory selects the in-process
backend for local development.
"""

from functools import lru_cache

from syncengine.config import get_settings

from .base import ENTITY_MODELS, StorageBackend, StorageError
from .duckdb_storage import DuckDBStorage
from .memory import InMemoryStorage


@lru_cache
def get_storage() -> StorageBackend:
    """
    Get cached storage backend instance (singleton).

    Returns:
        StorageBackend implementation selected by settings.db_type

    Raises:
        ValueError: If db_type names an unknown backend
    """
    settings = get_settings()
    if settings.db_type == "duckdb":
        return DuckDBStorage(db_path=settings.db_path)
    if settings.db_type == "memory":
        return InMemoryStorage()
    raise ValueError(f"Unsupported db_type: {settings.db_type}")


__all__ = [
    "ENTITY_MODELS",
    "DuckDBStorage",
    "InMemoryStorage",
    "StorageBackend",
    "StorageError",
    "get_storage",
]
