from __future__ import annotations

import io
import threading
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from ResearchEx.orchestration.pools import WorkerPool
from ResearchEx.storage import S3ObjectStore, split_location
from ResearchEx.storage.base import StorageError
from ResearchEx.storage.cache import InMemoryCache
from ResearchEx.storage.object_store import InMemoryObjectStore


@pytest.mark.asyncio
async def test_in_memory_store_round_trips_payload_and_metadata() -> None:
    store = InMemoryObjectStore()

    await store.put("s3://raw/tenant-x/batch-100", b"{}", metadata={"record_count": "3"})

    assert await store.get("s3://raw/tenant-x/batch-100") == b"{}"
    assert store._metadata["s3://raw/tenant-x/batch-100"] == {"record_count": "3"}


@pytest.mark.asyncio
async def test_in_memory_store_reports_missing_objects() -> None:
    store = InMemoryObjectStore()
    await store.put("s3://raw/a", b"x")
    await store.delete("s3://raw/a")

    with pytest.raises(StorageError):
        await store.get("s3://raw/a")


@pytest.mark.parametrize(
    ("location", "expected"),
    [
        ("s3://raw/tenant-x/batch-100", ("raw", "tenant-x/batch-100")),
        ("s3://deid/t/job", ("deid", "t/job")),
    ],
)
def test_split_location(location: str, expected: tuple[str, str]) -> None:
    assert split_location(location) == expected


@pytest.mark.parametrize("location", ["raw/tenant-x", "s3://", "s3://bucket-only", "file:///tmp/x"])
def test_split_location_rejects_malformed_locations(location: str) -> None:
    with pytest.raises(StorageError):
        split_location(location)


@pytest.mark.asyncio
async def test_s3_store_maps_location_to_bucket_and_key() -> None:
    client = MagicMock()
    client.get_object.return_value = {"Body": io.BytesIO(b"payload")}
    store = S3ObjectStore(client=client)

    await store.put("s3://raw/tenant-x/batch-100", b"payload", metadata={"record_count": "1"})
    data = await store.get("s3://raw/tenant-x/batch-100")

    client.put_object.assert_called_once_with(
        Bucket="raw", Key="tenant-x/batch-100", Body=b"payload", Metadata={"record_count": "1"}
    )
    client.get_object.assert_called_once_with(Bucket="raw", Key="tenant-x/batch-100")
    assert data == b"payload"


@pytest.mark.asyncio
async def test_s3_client_errors_become_storage_errors() -> None:
    client = MagicMock()
    client.get_object.side_effect = ClientError(
        {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
    )
    store = S3ObjectStore(client=client)

    with pytest.raises(StorageError):
        await store.get("s3://raw/tenant-x/batch-100")


@pytest.mark.asyncio
async def test_in_memory_cache_expires_entries() -> None:
    cache = InMemoryCache()

    await cache.set("doc:1", b"a", ttl=60)
    await cache.set("doc:2", b"b")

    assert await cache.get("doc:1") == b"a"
    assert await cache.get("doc:2") == b"b"
    await cache.delete("doc:1")
    assert await cache.get("doc:1") is None


@pytest.mark.asyncio
async def test_s3_calls_inside_a_pool_step_run_on_its_threads(io_pool: WorkerPool) -> None:
    threads: list[str] = []
    client = MagicMock()
    client.put_object.side_effect = lambda **_: threads.append(threading.current_thread().name)
    store = S3ObjectStore(client=client)

    await io_pool.run(store.put, "s3://raw/tenant-x/batch-100", b"payload")
    await store.put("s3://raw/tenant-x/batch-101", b"payload")

    assert threads[0].startswith("test-io")
    assert not threads[1].startswith("test-io")
