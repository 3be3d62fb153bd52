"""De-identification pipeline: REQUESTED → RUNNING → COMPLETED.

A run starts only from a PERSISTED ingestion event. Every delivery of such an
event starts a new job (there is no deduplication), so a redelivered event
yields a second run with a different job id.
"""

from __future__ import annotations

from typing import Any
from uuid import uuid4

import orjson
import structlog

from ResearchEx.messaging.events import DEID_FLOW, DeidStage, IngestionStage, Stage, StageEvent
from ResearchEx.messaging.publisher import StagePublisher
from ResearchEx.observability import MessagingMetricRegistry
from ResearchEx.services.masking import RecordMasker
from ResearchEx.storage.base import ObjectStore
from ResearchEx.utils.executors import run_blocking

from .context import RunContext, RunOutcome
from .ingestion import raw_location
from .ledger import RunLedger
from .orchestrator import PipelineOrchestrator
from .pools import WorkerPool

logger = structlog.get_logger(__name__)


class DeidentificationOrchestrator(PipelineOrchestrator):
    """Masks persisted batches and publishes de-identification job stages."""

    pipeline = "deidentification"
    flow = DEID_FLOW
    record_subject = "De-identification input record count"
    step_name = "Masking"

    def __init__(
        self,
        *,
        publisher: StagePublisher,
        cpu_pool: WorkerPool,
        io_pool: WorkerPool,
        object_store: ObjectStore,
        masker: RecordMasker,
        max_record_count: int = 10_000_000,
        error_code: str = "DEID-PIPELINE-ERROR",
        raw_location_prefix: str = "s3://raw",
        output_location_prefix: str = "s3://deid",
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
        self._masker = masker
        self._raw_location_prefix = raw_location_prefix
        self._output_location_prefix = output_location_prefix.rstrip("/")

    async def handle_upstream(self, event: StageEvent) -> RunOutcome | None:
        """Start a job for a PERSISTED ingestion event; any other stage is a no-op."""
        if event.stage != IngestionStage.PERSISTED:
            logger.debug(
                "deid.upstream.skipped",
                stage=event.stage.value,
                tenant_id=event.tenant_id,
                run_id=event.run_id,
            )
            return None
        return await self.execute(self.context_for(event))

    def context_for(self, event: StageEvent) -> RunContext:
        job_id = f"{uuid4()}-{event.run_id}"
        record_count = event.quantity if isinstance(event.quantity, int) else 0
        return RunContext(
            pipeline=self.pipeline,
            tenant_id=event.tenant_id,
            run_id=job_id,
            event_id=event.event_id,
            record_count=record_count,
            source_system=event.source_system,
            raw_location=raw_location(self._raw_location_prefix, event.tenant_id, event.run_id),
            output_location=f"{self._output_location_prefix}/{event.tenant_id}/{job_id}",
            batch_id=event.run_id,
        )

    def quantity_for(self, context: RunContext, stage: Stage) -> str:
        if stage == DeidStage.COMPLETED and context.output_location:
            return context.output_location
        return context.raw_location

    async def heavy_step(self, context: RunContext) -> RunContext:
        manifest: dict[str, Any] = orjson.loads(await self._object_store.get(context.raw_location))
        records = manifest.get("records") or []
        masked = await run_blocking(self._masker.mask_records, records)
        output_location = context.output_location or (
            f"{self._output_location_prefix}/{context.tenant_id}/{context.run_id}"
        )
        await self._object_store.put(
            output_location,
            orjson.dumps(
                {
                    "tenant_id": context.tenant_id,
                    "job_id": context.run_id,
                    "source_batch_id": context.batch_id,
                    "record_count": context.record_count,
                    "records": masked,
                }
            ),
            metadata={"source": context.raw_location, "record_count": str(context.record_count)},
        )
        logger.info(
            "deid.batch.masked",
            source=context.raw_location,
            location=output_location,
            masked_records=len(masked),
        )
        context.output_location = output_location
        return context


__all__ = ["DeidentificationOrchestrator"]
