"""Cache backend implementations."""

from __future__ import annotations

import asyncio

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .base import CacheBackend, StorageError


class InMemoryCache(CacheBackend):
    """Simple in-memory cache with TTL support."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[bytes, float | None]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and expires_at < asyncio.get_running_loop().time():
                self._data.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None:
        async with self._lock:
            expires_at = None
            if ttl:
                expires_at = asyncio.get_running_loop().time() + ttl
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._data


class RedisCache(CacheBackend):
    """Redis backed cache implementation."""

    def __init__(self, client: Redis | None = None, *, url: str | None = None) -> None:
        if client is None:
            client = Redis.from_url(url) if url else Redis()
        self._client = client

    async def get(self, key: str) -> bytes | None:
        try:
            return await self._client.get(key)
        except RedisError as exc:
            raise StorageError(f"Redis GET failed for '{key}'") from exc

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None:
        try:
            await self._client.set(key, value, ex=ttl)
        except RedisError as exc:
            raise StorageError(f"Redis SET failed for '{key}'") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            raise StorageError(f"Redis DEL failed for '{key}'") from exc

    async def close(self) -> None:
        await self._client.aclose()
