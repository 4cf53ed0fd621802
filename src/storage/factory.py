"""Convenience factory for picking a gateway from config."""

from __future__ import annotations

from src.core.config import StorageConfig
from src.storage.gateway import PersistenceGateway
from src.storage.memory import InMemoryGateway
from src.storage.sql import SqlGateway


def create_gateway(config: StorageConfig) -> PersistenceGateway:
    """Build the gateway named by ``config.backend``.

    Raises:
        ValueError: Unknown backend name.
    """
    backend = config.backend.lower()
    if backend == "memory":
        return InMemoryGateway()
    if backend == "sql":
        return SqlGateway(config.url)
    raise ValueError(f"Unknown storage backend: {config.backend!r}")
