"""Exception hierarchy for persistence gateways."""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all persistence failures."""


class StorageNotInitializedError(StorageError):
    """A gateway call was made before ``open()`` or after ``close()``."""
