from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import CollectorRegistry

from ResearchEx.indexing import (
    BackendCacheInvalidator,
    CachedDocumentReader,
    InMemoryIndexRepository,
    ResearchIndexer,
)
from ResearchEx.messaging.events import DeidStage, StageEvent
from ResearchEx.observability import MessagingMetricRegistry
from ResearchEx.orchestration import WorkerPool
from ResearchEx.storage.base import StorageError
from ResearchEx.storage.cache import InMemoryCache
from tests.conftest import make_event

JOB_ID = "5f0c7a43-0a61-4e6e-8d9e-0d4bb0c6a1b2-batch-100"
OUTPUT_LOCATION = f"s3://deid/tenant-x/{JOB_ID}"


def _completed(**overrides: object) -> StageEvent:
    values: dict[str, object] = {"stage": DeidStage.COMPLETED, "run_id": JOB_ID, "quantity": OUTPUT_LOCATION}
    values.update(overrides)
    return make_event(**values)


@pytest.fixture
def repository() -> InMemoryIndexRepository:
    return InMemoryIndexRepository()


@pytest.fixture
def invalidator() -> MagicMock:
    return MagicMock()


@pytest.fixture
def indexer(
    cpu_pool: WorkerPool,
    io_pool: WorkerPool,
    repository: InMemoryIndexRepository,
    invalidator: MagicMock,
    metrics: MessagingMetricRegistry,
) -> ResearchIndexer:
    return ResearchIndexer(
        cpu_pool=cpu_pool,
        io_pool=io_pool,
        repository=repository,
        invalidator=invalidator,
        metrics=metrics,
    )


@pytest.mark.asyncio
async def test_completed_job_is_indexed(
    indexer: ResearchIndexer,
    repository: InMemoryIndexRepository,
    invalidator: MagicMock,
    registry: CollectorRegistry,
) -> None:
    document = await indexer.handle(_completed())

    assert document is not None
    assert document.tenant_id == "tenant-x"
    assert document.run_id == JOB_ID
    assert document.payload_location == OUTPUT_LOCATION
    assert await repository.find_by_run("tenant-x", JOB_ID) == document
    invalidator.evict.assert_called_once_with(f"doc:{document.document_id}")
    assert registry.get_sample_value(
        "researchex_documents_indexed_total", {"tenant_id": "tenant-x"}
    ) == 1.0


@pytest.mark.asyncio
@pytest.mark.parametrize("stage", [DeidStage.REQUESTED, DeidStage.RUNNING])
async def test_progress_events_are_skipped(
    indexer: ResearchIndexer,
    repository: InMemoryIndexRepository,
    invalidator: MagicMock,
    stage: DeidStage,
) -> None:
    assert await indexer.handle(_completed(stage=stage, quantity="s3://raw/tenant-x/batch-100")) is None
    assert len(repository) == 0
    invalidator.evict.assert_not_called()


@pytest.mark.asyncio
async def test_failed_jobs_are_skipped(indexer: ResearchIndexer, repository: InMemoryIndexRepository) -> None:
    event = _completed(stage=DeidStage.FAILED, error_code="DEID-PIPELINE-ERROR", error_message="boom")

    assert await indexer.handle(event) is None
    assert len(repository) == 0


@pytest.mark.asyncio
async def test_reindexing_a_run_evicts_previous_document(
    indexer: ResearchIndexer, invalidator: MagicMock
) -> None:
    first = await indexer.handle(_completed())
    second = await indexer.handle(_completed())

    assert first is not None and second is not None
    evicted = [call.args[0] for call in invalidator.evict.call_args_list]
    assert evicted == [
        f"doc:{first.document_id}",
        f"doc:{first.document_id}",
        f"doc:{second.document_id}",
    ]


@pytest.mark.asyncio
async def test_save_failure_propagates(
    cpu_pool: WorkerPool, io_pool: WorkerPool, invalidator: MagicMock
) -> None:
    repository = AsyncMock()
    repository.save.side_effect = StorageError("index unavailable")
    indexer = ResearchIndexer(
        cpu_pool=cpu_pool, io_pool=io_pool, repository=repository, invalidator=invalidator
    )

    with pytest.raises(StorageError):
        await indexer.handle(_completed())
    invalidator.evict.assert_not_called()


@pytest.mark.asyncio
async def test_reader_caches_and_eviction_refreshes(
    indexer: ResearchIndexer, repository: InMemoryIndexRepository
) -> None:
    cache = InMemoryCache()
    reader = CachedDocumentReader(repository, cache)
    document = await indexer.handle(_completed())
    assert document is not None

    assert await reader.find(document.document_id) == document
    assert f"doc:{document.document_id}" in cache

    invalidator = BackendCacheInvalidator(cache)
    invalidator.evict(f"doc:{document.document_id}")
    await invalidator.flush()

    assert f"doc:{document.document_id}" not in cache
    assert await reader.find("unknown") is None


@pytest.mark.asyncio
async def test_eviction_failure_is_logged_not_raised() -> None:
    backend = AsyncMock()
    backend.delete.side_effect = StorageError("redis down")
    invalidator = BackendCacheInvalidator(backend)

    invalidator.evict("doc:1")
    await invalidator.flush()

    backend.delete.assert_awaited_once_with("doc:1")


@pytest.mark.asyncio
async def test_reader_falls_back_to_repository_when_cache_fails(
    repository: InMemoryIndexRepository, indexer: ResearchIndexer
) -> None:
    document = await indexer.handle(_completed())
    assert document is not None
    backend = AsyncMock()
    backend.get.side_effect = StorageError("redis down")
    backend.set.side_effect = StorageError("redis down")

    assert await CachedDocumentReader(repository, backend).find(document.document_id) == document
