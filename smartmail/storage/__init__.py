"""
Storage backends for SmartMail.

Use create_store() to build the backend named in the configuration:
    from smartmail.storage import create_store
    store = create_store(config["storage"])
"""

from typing import Dict, Optional

from .base import PersistentStore
from .memory_store import InMemoryStore
from .sqlite_store import SQLiteStore


def create_store(config: Optional[Dict] = None) -> PersistentStore:
    """Build the storage backend described by the `storage` config section."""
    config = config or {}
    backend = config.get("backend", "memory")
    if backend == "sqlite":
        return SQLiteStore(config.get("path", "~/.smartmail/smartmail.db"))
    if backend == "memory":
        return InMemoryStore()
    raise ValueError(f"Unknown storage backend: '{backend}'")


__all__ = ["PersistentStore", "InMemoryStore", "SQLiteStore", "create_store"]
