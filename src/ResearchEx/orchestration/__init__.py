"""Pipeline orchestration: run state machines, worker pools and the run ledger."""

from .context import RunContext, RunOutcome
from .deidentification import DeidentificationOrchestrator
from .ingestion import BatchRequest, IngestionOrchestrator
from .ledger import RunLedger, RunLedgerEntry, RunLedgerError
from .orchestrator import PipelineOrchestrator, ValidationError
from .pools import PoolSaturated, WorkerPool
from .result import Err, FailureKind, FailureReason, Ok, Result, bind

__all__ = [
    "BatchRequest",
    "DeidentificationOrchestrator",
    "Err",
    "FailureKind",
    "FailureReason",
    "IngestionOrchestrator",
    "Ok",
    "PipelineOrchestrator",
    "PoolSaturated",
    "Result",
    "RunContext",
    "RunLedger",
    "RunLedgerEntry",
    "RunLedgerError",
    "RunOutcome",
    "ValidationError",
    "WorkerPool",
    "bind",
]
