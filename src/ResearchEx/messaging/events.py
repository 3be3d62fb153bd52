"""Stage events exchanged between the pipeline services.

A run is one execution of a pipeline for one tenant and one batch (or job).
Every stage transition of a run is published as a :class:`StageEvent`; the
partition key ``"{tenant_id}:{run_id}"`` keeps all events of a run in one
partition and therefore in publish order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class IngestionStage(str, Enum):
    """Stages of a CDW batch load."""

    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    PERSISTED = "PERSISTED"
    FAILED = "FAILED"


class DeidStage(str, Enum):
    """Stages of a de-identification job."""

    REQUESTED = "REQUESTED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


Stage = IngestionStage | DeidStage


@dataclass(frozen=True, slots=True)
class StageFlow:
    """Ordered progress stages of one pipeline plus its absorbing failure stage."""

    initial: Stage
    validated: Stage
    succeeded: Stage
    failed: Stage

    @property
    def ordered(self) -> tuple[Stage, ...]:
        return (self.initial, self.validated, self.succeeded)

    def is_terminal(self, stage: Stage) -> bool:
        return stage in (self.succeeded, self.failed)

    def can_transition(self, current: Stage | None, target: Stage) -> bool:
        """Return whether ``target`` may follow ``current`` within one run."""
        if current is None:
            return target in (self.initial, self.failed)
        if self.is_terminal(current):
            return False
        if target == self.failed:
            return True
        order = self.ordered
        if current not in order or target not in order:
            return False
        return order.index(target) == order.index(current) + 1


INGESTION_FLOW = StageFlow(
    initial=IngestionStage.RECEIVED,
    validated=IngestionStage.VALIDATED,
    succeeded=IngestionStage.PERSISTED,
    failed=IngestionStage.FAILED,
)

DEID_FLOW = StageFlow(
    initial=DeidStage.REQUESTED,
    validated=DeidStage.RUNNING,
    succeeded=DeidStage.COMPLETED,
    failed=DeidStage.FAILED,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def partition_key(tenant_id: str, run_id: str) -> str:
    return f"{tenant_id}:{run_id}"


@dataclass(frozen=True, slots=True)
class StageEvent:
    """One stage transition of one run.

    Attributes:
        event_id: Identifier shared by every event of a run (UUID string).
        occurred_at: Timezone-aware publish timestamp.
        tenant_id: Owning tenant.
        run_id: Batch id for ingestion runs, job id for de-identification runs.
        stage: Pipeline specific stage.
        quantity: Record count (ingestion) or payload location (de-identification).
        source_system: System the batch originated from.
        error_code: Set on FAILED events only.
        error_message: Set on FAILED events only.
    """

    event_id: str
    occurred_at: datetime
    tenant_id: str
    run_id: str
    stage: Stage
    quantity: int | str
    source_system: str
    error_code: str | None = None
    error_message: str | None = None

    @property
    def key(self) -> str:
        return partition_key(self.tenant_id, self.run_id)

    @property
    def is_failure(self) -> bool:
        return self.stage.value == "FAILED"


__all__ = [
    "DEID_FLOW",
    "DeidStage",
    "INGESTION_FLOW",
    "IngestionStage",
    "Stage",
    "StageEvent",
    "StageFlow",
    "partition_key",
    "utc_now",
]
