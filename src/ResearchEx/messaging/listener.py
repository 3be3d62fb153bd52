"""Polling workers that feed the in-memory log into stage consumers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from .consumer import StageConsumer
from .kafka import KafkaClient, TransportError

logger = structlog.get_logger(__name__)


@dataclass
class WorkerMetrics:
    processed: int = 0
    failed: int = 0
    nacked: int = 0


@dataclass
class ListenerWorker:
    """Delivers records of one topic to one consumer group.

    ``run_once`` polls a batch and hands every record to the consumer without
    waiting for its processing; ``drain`` waits until the scheduled work has
    settled and keeps polling until nothing is left to deliver.
    """

    name: str
    kafka: KafkaClient
    topic: str
    group_id: str
    consumer: StageConsumer
    batch_size: int = 10
    poll_interval_seconds: float = 0.05
    metrics: WorkerMetrics = field(default_factory=WorkerMetrics)
    _stopped: bool = field(default=False, init=False)

    def shutdown(self) -> None:
        self._stopped = True

    def health(self) -> dict[str, object]:
        return {
            "name": self.name,
            "topic": self.topic,
            "group_id": self.group_id,
            "stopped": self._stopped,
            "in_flight": self.consumer.in_flight,
            "pending": self.kafka.pending(self.topic, self.group_id),
            "metrics": self.metrics.__dict__.copy(),
        }

    def run_once(self) -> list[asyncio.Task[None]]:
        """Deliver one batch; returns the handler tasks that were scheduled."""
        if self._stopped:
            return []
        scheduled: list[asyncio.Task[None]] = []
        for record, ack in self.kafka.poll(self.topic, self.group_id, max_records=self.batch_size):
            task = self.consumer.on_message(record, ack)
            if task is None:
                if ack.nacked:
                    self.metrics.nacked += 1
                else:
                    self.metrics.processed += 1
                continue
            task.add_done_callback(self._count)
            scheduled.append(task)
        return scheduled

    async def drain(self, *, max_rounds: int = 100) -> int:
        """Poll and wait until the topic has no deliverable records left.

        Returns the number of records handed to the consumer. Partitions
        paused by a nack stay paused; their records are not waited for.
        """
        delivered = 0
        for _ in range(max_rounds):
            before = self.metrics.processed + self.metrics.nacked
            scheduled = self.run_once()
            await self.consumer.drain()
            settled = self.metrics.processed + self.metrics.nacked - before
            delivered += settled
            if not scheduled and not settled:
                break
        return delivered

    async def run_forever(self) -> None:
        logger.info("listener.started", worker=self.name, topic=self.topic, group_id=self.group_id)
        while not self._stopped:
            try:
                scheduled = self.run_once()
            except TransportError as exc:
                logger.warning("listener.poll.failed", worker=self.name, error=str(exc))
                scheduled = []
            if not scheduled:
                await asyncio.sleep(self.poll_interval_seconds)
            else:
                await asyncio.sleep(0)
        await self.consumer.drain()
        logger.info("listener.stopped", worker=self.name, metrics=self.metrics.__dict__.copy())

    def _count(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or task.exception() is not None:
            self.metrics.failed += 1
            self.metrics.nacked += 1
        else:
            self.metrics.processed += 1


__all__ = ["ListenerWorker", "WorkerMetrics"]
