"""Run ledger tracking the stages each run has published.

The ledger is the in-process guard for the terminal-event rule: once a run has
published its success stage or FAILED, no further stage may be recorded for
it. A run attempt is identified by ``(tenant_id, run_id, event_id)`` so that
resubmitting the same batch starts a fresh attempt instead of colliding with
the finished one.

Thread Safety:
    Not thread-safe. Meant to be used from the event loop that drives the
    orchestrators.

Example:
    >>> ledger = RunLedger(INGESTION_FLOW)
    >>> ledger.check("tenant-x", "batch-1", "e-1", IngestionStage.RECEIVED)
    >>> ledger.record("tenant-x", "batch-1", "e-1", IngestionStage.RECEIVED)
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime

from ResearchEx.messaging.events import Stage, StageFlow, utc_now

RunKey = tuple[str, str, str]


@dataclass
class RunTransition:
    """One recorded stage of a run."""

    stage: Stage
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class RunLedgerEntry:
    """Stage history of one run attempt."""

    tenant_id: str
    run_id: str
    event_id: str
    history: list[RunTransition] = field(default_factory=list)

    @property
    def current(self) -> Stage | None:
        return self.history[-1].stage if self.history else None

    @property
    def stages(self) -> list[Stage]:
        return [transition.stage for transition in self.history]


class RunLedgerError(RuntimeError):
    """Raised when a stage does not follow from the run's current stage."""


class RunLedger:
    """In-memory ledger of run attempts for one pipeline."""

    def __init__(self, flow: StageFlow, *, max_entries: int = 10_000) -> None:
        self._flow = flow
        self._max_entries = max_entries
        self._entries: OrderedDict[RunKey, RunLedgerEntry] = OrderedDict()

    def check(self, tenant_id: str, run_id: str, event_id: str, stage: Stage) -> None:
        """Raise :class:`RunLedgerError` if ``stage`` may not be published next."""
        entry = self._entries.get((tenant_id, run_id, event_id))
        current = entry.current if entry else None
        if not self._flow.can_transition(current, stage):
            raise RunLedgerError(
                f"Run {tenant_id}:{run_id} cannot move from "
                f"{current.value if current else 'start'} to {stage.value}"
            )

    def record(self, tenant_id: str, run_id: str, event_id: str, stage: Stage) -> RunLedgerEntry:
        self.check(tenant_id, run_id, event_id, stage)
        key = (tenant_id, run_id, event_id)
        entry = self._entries.get(key)
        if entry is None:
            entry = RunLedgerEntry(tenant_id=tenant_id, run_id=run_id, event_id=event_id)
            self._entries[key] = entry
            self._evict()
        entry.history.append(RunTransition(stage=stage))
        return entry

    def get(self, tenant_id: str, run_id: str, event_id: str) -> RunLedgerEntry | None:
        return self._entries.get((tenant_id, run_id, event_id))

    def is_terminal(self, tenant_id: str, run_id: str, event_id: str) -> bool:
        entry = self.get(tenant_id, run_id, event_id)
        return bool(entry and entry.current is not None and self._flow.is_terminal(entry.current))

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self) -> None:
        if len(self._entries) <= self._max_entries:
            return
        for key in list(self._entries):
            if len(self._entries) <= self._max_entries:
                return
            if self.is_terminal(*key):
                del self._entries[key]


__all__ = ["RunLedger", "RunLedgerEntry", "RunLedgerError", "RunTransition"]
