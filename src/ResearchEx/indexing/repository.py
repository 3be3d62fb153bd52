"""Index document storage."""

from __future__ import annotations

import asyncio
from typing import Protocol

from .documents import IndexDocument


class IndexRepository(Protocol):
    async def save(self, document: IndexDocument) -> IndexDocument | None:
        """Store ``document``; return the run's previously indexed document, if any."""
        ...

    async def find_by_document_id(self, document_id: str) -> IndexDocument | None: ...


class InMemoryIndexRepository:
    """In-memory stand-in for the search index, used locally and in tests."""

    def __init__(self) -> None:
        self._documents: dict[str, IndexDocument] = {}
        self._latest_by_run: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def save(self, document: IndexDocument) -> IndexDocument | None:
        async with self._lock:
            run_key = (document.tenant_id, document.run_id)
            previous_id = self._latest_by_run.get(run_key)
            self._documents[document.document_id] = document
            self._latest_by_run[run_key] = document.document_id
            if previous_id is None or previous_id == document.document_id:
                return None
            return self._documents.get(previous_id)

    async def find_by_document_id(self, document_id: str) -> IndexDocument | None:
        async with self._lock:
            return self._documents.get(document_id)

    async def find_by_run(self, tenant_id: str, run_id: str) -> IndexDocument | None:
        async with self._lock:
            document_id = self._latest_by_run.get((tenant_id, run_id))
            return self._documents.get(document_id) if document_id else None

    async def all(self) -> list[IndexDocument]:
        async with self._lock:
            return list(self._documents.values())

    def __len__(self) -> int:
        return len(self._documents)


__all__ = ["InMemoryIndexRepository", "IndexRepository"]
