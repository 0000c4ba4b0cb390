"""Storage backends for agentmarket."""

from ..config import Settings
from .base import MarketStore
from .memory import InMemoryStore


def create_store(settings: Settings) -> MarketStore:
    """Build the store named by ``storage_backend``."""
    if settings.storage_backend == "memory":
        return InMemoryStore()
    if settings.storage_backend == "mongo":
        from .mongo import MongoStore
        return MongoStore(settings.mongodb_uri, settings.mongodb_database)
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")


__all__ = ["MarketStore", "InMemoryStore", "create_store"]
