"""Object store implementations keyed by ``s3://bucket/key`` payload locations."""

from __future__ import annotations

import asyncio
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ResearchEx.utils.executors import run_blocking

from .base import ObjectStore, StorageError


class InMemoryObjectStore(ObjectStore):
    """In-memory object store used for local runs and tests."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._metadata: dict[str, dict[str, str]] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, data: bytes, *, metadata: dict[str, str] | None = None) -> None:
        async with self._lock:
            self._data[key] = data
            if metadata:
                self._metadata[key] = dict(metadata)
            elif key in self._metadata:
                del self._metadata[key]

    async def get(self, key: str) -> bytes:
        async with self._lock:
            try:
                return self._data[key]
            except KeyError as exc:
                raise StorageError(f"Object '{key}' not found") from exc

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)
            self._metadata.pop(key, None)


def split_location(location: str) -> tuple[str, str]:
    """Split ``s3://bucket/some/key`` into ``("bucket", "some/key")``."""
    if not location.startswith("s3://"):
        raise StorageError(f"Unsupported payload location '{location}'")
    bucket, _, key = location[len("s3://") :].partition("/")
    if not bucket or not key:
        raise StorageError(f"Payload location '{location}' has no bucket or key")
    return bucket, key


class S3ObjectStore(ObjectStore):
    """S3/MinIO backed object store; the location's host part names the bucket.

    Blocking boto3 calls go through :func:`run_blocking` and so run on the IO
    pool of the step that issued them, or on the default executor outside one.
    """

    def __init__(self, *, client: Any | None = None, endpoint_url: str | None = None) -> None:
        self._client = client if client is not None else boto3.client("s3", endpoint_url=endpoint_url)

    async def put(self, key: str, data: bytes, *, metadata: dict[str, str] | None = None) -> None:
        bucket, object_key = split_location(key)
        try:
            await run_blocking(
                self._client.put_object,
                Bucket=bucket,
                Key=object_key,
                Body=data,
                Metadata=metadata or {},
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to write '{key}'") from exc

    async def get(self, key: str) -> bytes:
        bucket, object_key = split_location(key)

        def _read() -> bytes:
            response = self._client.get_object(Bucket=bucket, Key=object_key)
            return response["Body"].read()

        try:
            return await run_blocking(_read)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Object '{key}' not found") from exc

    async def delete(self, key: str) -> None:
        bucket, object_key = split_location(key)
        try:
            await run_blocking(self._client.delete_object, Bucket=bucket, Key=object_key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to delete '{key}'") from exc


__all__ = ["InMemoryObjectStore", "S3ObjectStore", "split_location"]
