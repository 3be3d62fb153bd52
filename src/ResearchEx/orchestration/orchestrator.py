"""Run state machine shared by the ingestion and de-identification services.

Every run goes through the same chain::

    publish initial ─► validate (CPU pool) ─► publish validated
        ─► heavy step (IO pool) ─► publish success

Each step returns ``Ok(context)`` or ``Err(reason)``; the first ``Err``
short-circuits the chain and becomes the run's single FAILED event. Progress
publishes are awaited, so a failed progress publish fails the run.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar

import structlog

from ResearchEx.messaging.codec import SchemaViolation
from ResearchEx.messaging.events import Stage, StageEvent, StageFlow, utc_now
from ResearchEx.messaging.kafka import TransportError
from ResearchEx.messaging.publisher import StagePublisher
from ResearchEx.observability import MessagingMetricRegistry
from ResearchEx.storage.base import StorageError
from ResearchEx.utils.errors import FoundationError
from ResearchEx.utils.logging import bound_run

from .context import RunContext, RunOutcome
from .ledger import RunLedger, RunLedgerError
from .pools import PoolSaturated, WorkerPool
from .result import Err, FailureKind, FailureReason, Ok, Result, bind

logger = structlog.get_logger(__name__)


class ValidationError(FoundationError):
    """A run violates a domain rule such as the record-count range."""

    status = 422
    problem_type = "https://researchex.dev/problems/validation-error"


class PipelineOrchestrator(ABC):
    """Drives runs of one pipeline through its stages."""

    pipeline: ClassVar[str]
    flow: ClassVar[StageFlow]
    #: Describes the counted records in validation messages.
    record_subject: ClassVar[str] = "Record count"
    #: Names the heavy step in IO failure messages.
    step_name: ClassVar[str] = "Processing"

    def __init__(
        self,
        *,
        publisher: StagePublisher,
        cpu_pool: WorkerPool,
        io_pool: WorkerPool,
        max_record_count: int,
        error_code: str,
        ledger: RunLedger | None = None,
        metrics: MessagingMetricRegistry | None = None,
    ) -> None:
        self._publisher = publisher
        self._cpu_pool = cpu_pool
        self._io_pool = io_pool
        self._max_record_count = max_record_count
        self._error_code = error_code
        self._ledger = ledger if ledger is not None else RunLedger(self.flow)
        self._metrics = metrics

    @property
    def ledger(self) -> RunLedger:
        return self._ledger

    @property
    def error_code(self) -> str:
        return self._error_code

    async def execute(self, context: RunContext) -> RunOutcome:
        """Run ``context`` to exactly one terminal event.

        Raises:
            FoundationError: The FAILED event itself could not be published;
                the caller must treat the run as unsettled.
        """
        with bound_run(
            pipeline=self.pipeline,
            tenant_id=context.tenant_id,
            run_id=context.run_id,
            event_id=context.event_id,
        ):
            logger.info("pipeline.run.started", record_count=context.record_count)
            result: Result[RunContext] = await self._publish(context, self.flow.initial)
            result = await bind(result, self._validate)
            result = await bind(result, lambda ctx: self._publish(ctx, self.flow.validated))
            result = await bind(result, self._process)
            result = await bind(result, lambda ctx: self._publish(ctx, self.flow.succeeded))

            if isinstance(result, Err):
                await self._publish_failure(context, result.reason)
                self._record_run("failed")
                logger.warning(
                    "pipeline.run.failed",
                    failure_kind=result.reason.kind.value,
                    error_message=result.reason.message,
                )
                return RunOutcome.from_context(context, result.reason)

            self._record_run("succeeded")
            logger.info("pipeline.run.succeeded", stages=[stage.value for stage in context.published])
            return RunOutcome.from_context(context)

    def validate_record_count(self, record_count: int) -> None:
        """Raise :class:`ValidationError` unless ``0 < record_count <= max``."""
        if record_count <= 0:
            raise ValidationError(f"{self.record_subject} must be greater than 0 (got {record_count})")
        if record_count > self._max_record_count:
            raise ValidationError(
                f"{self.record_subject} {record_count:,} exceeds the maximum of "
                f"{self._max_record_count:,}"
            )

    @abstractmethod
    def quantity_for(self, context: RunContext, stage: Stage) -> int | str:
        """Value published as the event quantity for ``stage``."""

    @abstractmethod
    async def heavy_step(self, context: RunContext) -> RunContext:
        """Persist or transform the run's payload under the IO pool.

        Blocking work goes through :func:`run_blocking` so it runs on the IO
        pool's threads.
        """

    def build_event(
        self,
        context: RunContext,
        stage: Stage,
        *,
        failure: FailureReason | None = None,
    ) -> StageEvent:
        return StageEvent(
            event_id=context.event_id,
            occurred_at=utc_now(),
            tenant_id=context.tenant_id,
            run_id=context.run_id,
            stage=stage,
            quantity=self.quantity_for(context, stage),
            source_system=context.source_system,
            error_code=failure.code if failure else None,
            error_message=failure.message if failure else None,
        )

    async def _validate(self, context: RunContext) -> Result[RunContext]:
        try:
            await self._cpu_pool.submit(self.validate_record_count, context.record_count)
        except ValidationError as exc:
            return self._err(FailureKind.VALIDATION, str(exc))
        except PoolSaturated as exc:
            return self._err(FailureKind.SATURATION, str(exc))
        except Exception as exc:
            logger.exception("pipeline.validate.crashed")
            return self._err(FailureKind.UNEXPECTED, f"Validation step failed: {exc}")
        return Ok(context)

    async def _process(self, context: RunContext) -> Result[RunContext]:
        try:
            updated = await self._io_pool.run(self.heavy_step, context)
        except (OSError, StorageError) as exc:
            return self._err(FailureKind.IO, f"{self.step_name} step failed: {exc}")
        except PoolSaturated as exc:
            return self._err(FailureKind.SATURATION, str(exc))
        except Exception as exc:
            logger.exception("pipeline.process.crashed")
            return self._err(FailureKind.UNEXPECTED, f"{self.step_name} step failed: {exc}")
        return Ok(updated)

    async def _publish(self, context: RunContext, stage: Stage) -> Result[RunContext]:
        try:
            self._ledger.check(context.tenant_id, context.run_id, context.event_id, stage)
            await self._publisher.publish(self.build_event(context, stage))
        except SchemaViolation as exc:
            return self._err(FailureKind.SCHEMA, f"Publishing {stage.value} failed: {exc}")
        except TransportError as exc:
            return self._err(FailureKind.TRANSPORT, f"Publishing {stage.value} failed: {exc}")
        except RunLedgerError as exc:
            return self._err(FailureKind.UNEXPECTED, str(exc))
        except Exception as exc:
            logger.exception("pipeline.publish.crashed", stage=stage.value)
            return self._err(FailureKind.UNEXPECTED, f"Publishing {stage.value} failed: {exc}")
        self._ledger.record(context.tenant_id, context.run_id, context.event_id, stage)
        context.published.append(stage)
        return Ok(context)

    async def _publish_failure(self, context: RunContext, reason: FailureReason) -> None:
        try:
            self._ledger.check(context.tenant_id, context.run_id, context.event_id, self.flow.failed)
            await self._publisher.publish(self.build_event(context, self.flow.failed, failure=reason))
        except Exception:
            logger.exception(
                "pipeline.failure.unpublished",
                failure_kind=reason.kind.value,
                error_message=reason.message,
            )
            self._record_run("unsettled")
            raise
        self._ledger.record(context.tenant_id, context.run_id, context.event_id, self.flow.failed)
        context.published.append(self.flow.failed)

    def _err(self, kind: FailureKind, message: str) -> Err:
        return Err(FailureReason(kind=kind, code=self._error_code, message=message))

    def _record_run(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_run(self.pipeline, outcome)


__all__ = ["PipelineOrchestrator", "ValidationError"]
