"""Storage abstractions exports."""

from .base import CacheBackend, ObjectStore, StorageError
from .cache import InMemoryCache, RedisCache
from .object_store import InMemoryObjectStore, S3ObjectStore, split_location

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "InMemoryObjectStore",
    "ObjectStore",
    "RedisCache",
    "S3ObjectStore",
    "StorageError",
    "split_location",
]
