"""Abstract storage interfaces.

This module defines the contracts for the blob store holding batch payloads
and for the cache backend holding research documents.

Thread Safety:
    Thread-safe: Abstract interfaces with no shared state.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class StorageError(RuntimeError):
    """Base exception for storage backends."""


class ObjectStore(ABC):
    """Interface for object storage backends keyed by payload location."""

    @abstractmethod
    async def put(self, key: str, data: bytes, *, metadata: dict[str, str] | None = None) -> None:
        """Store data with the given key.

        Raises:
            StorageError: If the operation fails.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Retrieve data by key.

        Raises:
            StorageError: If the key is unknown or the operation fails.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete data by key."""
        raise NotImplementedError


class CacheBackend(ABC):
    """Simple cache interface used by services."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError


__all__ = ["CacheBackend", "ObjectStore", "StorageError"]
