"""Manual-ack stage consumer.

``on_message`` never blocks the delivery loop: it decodes and validates the
record, schedules the handler as an asyncio task and returns. The record is
acknowledged only when that task succeeds; any failure (decode, validation,
handler exception or cancellation) withholds the acknowledgment and asks for
redelivery after a fixed backoff. There is no deduplication and no
dead-letter routing, so a permanently invalid payload is redelivered forever.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from ResearchEx.observability import MessagingMetricRegistry, start_span

from .codec import StageEventCodec
from .events import StageEvent
from .kafka import Acknowledgment, ConsumerRecord

logger = structlog.get_logger(__name__)

StageHandler = Callable[[StageEvent], Awaitable[object]]


class StageConsumer:
    """Bridges delivered records to a local stage handler."""

    def __init__(
        self,
        codec: StageEventCodec,
        handler: StageHandler,
        *,
        name: str,
        backoff_seconds: float = 1.0,
        concurrency: int = 1,
        metrics: MessagingMetricRegistry | None = None,
    ) -> None:
        self._codec = codec
        self._handler = handler
        self._name = name
        self._backoff_seconds = backoff_seconds
        self._concurrency = max(1, concurrency)
        self._slots: asyncio.Semaphore | None = None
        self._metrics = metrics
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def name(self) -> str:
        return self._name

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def on_message(self, record: ConsumerRecord, ack: Acknowledgment) -> asyncio.Task[None] | None:
        """Handle one delivered record.

        Returns the task processing the record, or ``None`` when the record
        was settled synchronously (tombstone or rejected payload).
        """
        if not record.value:
            ack.acknowledge()
            self._record(record.topic, "tombstone")
            logger.debug(
                "consumer.tombstone",
                consumer=self._name,
                topic=record.topic,
                partition=record.partition,
                offset=record.offset,
            )
            return None
        try:
            event = self._codec.decode(record.value)
            self._codec.validate(event)
            task = asyncio.get_running_loop().create_task(self._process(record, event))
        except Exception as exc:
            logger.warning(
                "consumer.nack",
                consumer=self._name,
                topic=record.topic,
                partition=record.partition,
                offset=record.offset,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            ack.nack(self._backoff_seconds)
            self._record(record.topic, "nack")
            return None
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._settle(done, record, ack))
        return task

    async def drain(self) -> None:
        """Wait for every scheduled handler task to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _process(self, record: ConsumerRecord, event: StageEvent) -> None:
        if self._slots is None:
            self._slots = asyncio.Semaphore(self._concurrency)
        async with self._slots:
            with start_span(
                "stage.consume",
                consumer=self._name,
                topic=record.topic,
                partition=record.partition,
                offset=record.offset,
                stage=event.stage.value,
                tenant_id=event.tenant_id,
                run_id=event.run_id,
            ):
                await self._handler(event)

    def _settle(self, task: asyncio.Task[None], record: ConsumerRecord, ack: Acknowledgment) -> None:
        self._tasks.discard(task)
        error: BaseException | None
        if task.cancelled():
            error = asyncio.CancelledError()
        else:
            error = task.exception()
        if error is None:
            ack.acknowledge()
            self._record(record.topic, "ack")
            logger.debug(
                "consumer.ack",
                consumer=self._name,
                topic=record.topic,
                partition=record.partition,
                offset=record.offset,
            )
            return
        logger.warning(
            "consumer.nack",
            consumer=self._name,
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            error=str(error),
            error_type=type(error).__name__,
        )
        ack.nack(self._backoff_seconds)
        self._record(record.topic, "nack")

    def _record(self, topic: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_consume(topic, outcome)


__all__ = ["StageConsumer", "StageHandler"]
