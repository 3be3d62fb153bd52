"""CDW batch load pipeline: RECEIVED → VALIDATED → PERSISTED."""

from __future__ import annotations

import asyncio
from typing import Any
from uuid import uuid4

import orjson
import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ResearchEx.messaging.events import INGESTION_FLOW, Stage
from ResearchEx.messaging.publisher import StagePublisher
from ResearchEx.observability import MessagingMetricRegistry
from ResearchEx.storage.base import ObjectStore

from .context import RunContext, RunOutcome
from .ledger import RunLedger
from .orchestrator import PipelineOrchestrator
from .pools import WorkerPool

logger = structlog.get_logger(__name__)


class BatchRequest(BaseModel):
    """Inbound request to load one CDW batch.

    ``record_count`` is deliberately unconstrained here: out-of-range counts
    are accepted and end as a FAILED run rather than a rejected request.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    tenant_id: str = Field(min_length=1, max_length=64)
    batch_id: str = Field(min_length=1, max_length=128)
    source_system: str = Field(min_length=1, max_length=128)
    record_count: int
    records: list[dict[str, Any]] | None = None

    @field_validator("tenant_id", "batch_id", "source_system")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


def raw_location(prefix: str, tenant_id: str, batch_id: str) -> str:
    return f"{prefix.rstrip('/')}/{tenant_id}/{batch_id}"


class IngestionOrchestrator(PipelineOrchestrator):
    """Validates and persists CDW batches, publishing each stage."""

    pipeline = "ingestion"
    flow = INGESTION_FLOW
    record_subject = "Batch record count"
    step_name = "Persistence"

    def __init__(
        self,
        *,
        publisher: StagePublisher,
        cpu_pool: WorkerPool,
        io_pool: WorkerPool,
        object_store: ObjectStore,
        max_record_count: int = 5_000_000,
        error_code: str = "CDW-PIPELINE-ERROR",
        raw_location_prefix: str = "s3://raw",
        ledger: RunLedger | None = None,
        metrics: MessagingMetricRegistry | None = None,
    ) -> None:
        super().__init__(
            publisher=publisher,
            cpu_pool=cpu_pool,
            io_pool=io_pool,
            max_record_count=max_record_count,
            error_code=error_code,
            ledger=ledger,
            metrics=metrics,
        )
        self._object_store = object_store
        self._raw_location_prefix = raw_location_prefix

    def context_for(self, request: BatchRequest) -> RunContext:
        return RunContext(
            pipeline=self.pipeline,
            tenant_id=request.tenant_id,
            run_id=request.batch_id,
            event_id=str(uuid4()),
            record_count=request.record_count,
            source_system=request.source_system,
            raw_location=raw_location(self._raw_location_prefix, request.tenant_id, request.batch_id),
            batch_id=request.batch_id,
            records=list(request.records) if request.records is not None else None,
        )

    async def start_pipeline(self, request: BatchRequest) -> RunOutcome:
        """Run the pipeline for ``request`` and return once its terminal event is published."""
        return await self.execute(self.context_for(request))

    def submit(self, request: BatchRequest) -> asyncio.Task[RunOutcome]:
        """Start the pipeline in the background; the caller gets no error channel."""
        return asyncio.get_running_loop().create_task(self.start_pipeline(request))

    def quantity_for(self, context: RunContext, stage: Stage) -> int:
        return context.record_count

    async def heavy_step(self, context: RunContext) -> RunContext:
        manifest = {
            "tenant_id": context.tenant_id,
            "batch_id": context.run_id,
            "source_system": context.source_system,
            "record_count": context.record_count,
            "records": context.records or [],
        }
        await self._object_store.put(
            context.raw_location,
            orjson.dumps(manifest),
            metadata={
                "record_count": str(context.record_count),
                "source_system": context.source_system,
            },
        )
        logger.info("ingestion.batch.persisted", location=context.raw_location)
        return context


__all__ = ["BatchRequest", "IngestionOrchestrator", "raw_location"]
