"""Indexes completed de-identification jobs."""

from __future__ import annotations

from uuid import uuid4

import structlog

from ResearchEx.messaging.events import DeidStage, StageEvent, utc_now
from ResearchEx.observability import MessagingMetricRegistry
from ResearchEx.orchestration.pools import WorkerPool

from .cache import CacheInvalidationSink
from .documents import IndexDocument
from .repository import IndexRepository

logger = structlog.get_logger(__name__)


class ResearchIndexer:
    """Turns COMPLETED job events into index documents.

    Mapping runs on the CPU pool and the save on the IO pool. Errors propagate
    so the delivering consumer withholds its acknowledgment.
    """

    def __init__(
        self,
        *,
        cpu_pool: WorkerPool,
        io_pool: WorkerPool,
        repository: IndexRepository,
        invalidator: CacheInvalidationSink,
        key_prefix: str = "doc:",
        metrics: MessagingMetricRegistry | None = None,
    ) -> None:
        self._cpu_pool = cpu_pool
        self._io_pool = io_pool
        self._repository = repository
        self._invalidator = invalidator
        self._key_prefix = key_prefix
        self._metrics = metrics

    async def handle(self, event: StageEvent) -> IndexDocument | None:
        if event.stage != DeidStage.COMPLETED:
            logger.debug("indexer.event.skipped", stage=event.stage.value, run_id=event.run_id)
            return None
        document = await self._cpu_pool.submit(self.map_document, event)
        previous = await self._io_pool.run(self._repository.save, document)
        logger.info(
            "indexer.document.indexed",
            tenant_id=document.tenant_id,
            run_id=document.run_id,
            document_id=document.document_id,
        )
        if previous is not None:
            self._invalidator.evict(self.cache_key(previous.document_id))
        self._invalidator.evict(self.cache_key(document.document_id))
        if self._metrics is not None:
            self._metrics.record_document_indexed(document.tenant_id)
        return document

    def map_document(self, event: StageEvent) -> IndexDocument:
        return IndexDocument(
            document_id=str(uuid4()),
            tenant_id=event.tenant_id,
            run_id=event.run_id,
            payload_location=str(event.quantity),
            indexed_at=utc_now(),
        )

    def cache_key(self, document_id: str) -> str:
        return f"{self._key_prefix}{document_id}"


__all__ = ["ResearchIndexer"]
