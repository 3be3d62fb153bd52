"""Cache invalidation and read-through lookup for research documents."""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog

from ResearchEx.storage.base import CacheBackend, StorageError

from .documents import IndexDocument
from .repository import IndexRepository

logger = structlog.get_logger(__name__)


class CacheInvalidationSink(Protocol):
    def evict(self, key: str) -> None:
        """Drop ``key`` from the cache; returns immediately."""
        ...


class BackendCacheInvalidator:
    """Fire-and-forget eviction against a :class:`CacheBackend`.

    Failures are logged and never reach the caller.
    """

    def __init__(self, backend: CacheBackend) -> None:
        self._backend = backend
        self._pending: set[asyncio.Task[None]] = set()

    def evict(self, key: str) -> None:
        task = asyncio.get_running_loop().create_task(self._evict(key))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for outstanding evictions."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _evict(self, key: str) -> None:
        try:
            await self._backend.delete(key)
        except StorageError as exc:
            logger.warning("cache.evict.failed", key=key, error=str(exc))
            return
        logger.debug("cache.evicted", key=key)


class CachedDocumentReader:
    """Read-through lookup of index documents by id."""

    def __init__(
        self,
        repository: IndexRepository,
        backend: CacheBackend,
        *,
        key_prefix: str = "doc:",
        ttl_seconds: int | None = 300,
    ) -> None:
        self._repository = repository
        self._backend = backend
        self._key_prefix = key_prefix
        self._ttl_seconds = ttl_seconds

    async def find(self, document_id: str) -> IndexDocument | None:
        key = f"{self._key_prefix}{document_id}"
        try:
            cached = await self._backend.get(key)
        except StorageError as exc:
            logger.warning("cache.read.failed", key=key, error=str(exc))
            cached = None
        if cached is not None:
            return IndexDocument.from_bytes(cached)
        document = await self._repository.find_by_document_id(document_id)
        if document is None:
            return None
        try:
            await self._backend.set(key, document.to_bytes(), ttl=self._ttl_seconds)
        except StorageError as exc:
            logger.warning("cache.write.failed", key=key, error=str(exc))
        return document


__all__ = ["BackendCacheInvalidator", "CacheInvalidationSink", "CachedDocumentReader"]
