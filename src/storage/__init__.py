"""Persistence gateways for readings, circuit breakdowns and alerts."""

from src.storage.exceptions import StorageError, StorageNotInitializedError
from src.storage.factory import create_gateway
from src.storage.gateway import PersistenceGateway
from src.storage.memory import InMemoryGateway
from src.storage.sql import SqlGateway

__all__ = [
    "InMemoryGateway",
    "PersistenceGateway",
    "SqlGateway",
    "StorageError",
    "StorageNotInitializedError",
    "create_gateway",
]
