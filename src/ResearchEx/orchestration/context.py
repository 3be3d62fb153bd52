"""Per-run state threaded through the orchestrator's asynchronous steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ResearchEx.messaging.events import Stage, partition_key

from .result import FailureReason


@dataclass
class RunContext:
    """Correlation state of one in-flight run.

    Created when a run starts (from an inbound batch request or an upstream
    event), owned exclusively by the task driving that run and dropped once
    the terminal event is published.
    """

    pipeline: str
    tenant_id: str
    run_id: str
    event_id: str
    record_count: int
    source_system: str
    raw_location: str
    output_location: str | None = None
    batch_id: str | None = None
    records: list[dict[str, Any]] | None = None
    published: list[Stage] = field(default_factory=list)

    @property
    def key(self) -> str:
        return partition_key(self.tenant_id, self.run_id)


@dataclass(frozen=True, slots=True)
class RunOutcome:
    """What a finished run published."""

    pipeline: str
    tenant_id: str
    run_id: str
    event_id: str
    stages: tuple[Stage, ...]
    failure: FailureReason | None = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def terminal_stage(self) -> Stage | None:
        return self.stages[-1] if self.stages else None

    @classmethod
    def from_context(cls, context: RunContext, failure: FailureReason | None = None) -> RunOutcome:
        return cls(
            pipeline=context.pipeline,
            tenant_id=context.tenant_id,
            run_id=context.run_id,
            event_id=context.event_id,
            stages=tuple(context.published),
            failure=failure,
        )


__all__ = ["RunContext", "RunOutcome"]
