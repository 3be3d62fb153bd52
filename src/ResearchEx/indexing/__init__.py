"""Research index fed by completed de-identification jobs."""

from .cache import BackendCacheInvalidator, CachedDocumentReader, CacheInvalidationSink
from .documents import IndexDocument
from .indexer import ResearchIndexer
from .repository import InMemoryIndexRepository, IndexRepository

__all__ = [
    "BackendCacheInvalidator",
    "CacheInvalidationSink",
    "CachedDocumentReader",
    "InMemoryIndexRepository",
    "IndexDocument",
    "IndexRepository",
    "ResearchIndexer",
]
