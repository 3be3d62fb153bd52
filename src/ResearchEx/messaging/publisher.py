"""Stage publisher: validate, encode and append one event to the log."""

from __future__ import annotations

from time import perf_counter

import structlog

from ResearchEx.observability import MessagingMetricRegistry, start_span

from .codec import CodecError, StageEventCodec
from .events import StageEvent
from .kafka import EventTransport, RecordMetadata, TransportError

logger = structlog.get_logger(__name__)


class StagePublisher:
    """Appends stage events of one pipeline to its topic.

    The partition key is always ``"{tenant_id}:{run_id}"`` so every event of a
    run lands in the same partition. ``publish`` completes only once the
    transport has acknowledged the append.
    """

    def __init__(
        self,
        transport: EventTransport,
        topic: str,
        codec: StageEventCodec,
        *,
        metrics: MessagingMetricRegistry | None = None,
    ) -> None:
        if not topic or not topic.strip():
            raise ValueError("topic must not be blank")
        self._transport = transport
        self._topic = topic
        self._codec = codec
        self._metrics = metrics

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def codec(self) -> StageEventCodec:
        return self._codec

    async def publish(self, event: StageEvent) -> RecordMetadata:
        """Publish ``event``.

        Raises:
            SchemaViolation: The event is incomplete or violates a domain rule.
            TransportError: The broker did not accept the record.
        """
        started = perf_counter()
        stage = getattr(event.stage, "value", str(event.stage))
        with start_span(
            "stage.publish",
            topic=self._topic,
            stage=stage,
            tenant_id=event.tenant_id,
            run_id=event.run_id,
        ) as span:
            try:
                self._codec.validate(event)
                payload = self._codec.encode(event)
                metadata = await self._transport.send(
                    self._topic,
                    event.key,
                    payload,
                    headers={"schema": self._codec.schema.name, "stage": stage},
                )
            except CodecError:
                self._record(stage, "rejected", started)
                logger.warning(
                    "pipeline.stage.rejected",
                    topic=self._topic,
                    stage=stage,
                    tenant_id=event.tenant_id,
                    run_id=event.run_id,
                )
                raise
            except TransportError:
                self._record(stage, "transport_error", started)
                logger.warning(
                    "pipeline.stage.transport_failed",
                    topic=self._topic,
                    stage=stage,
                    run_id=event.run_id,
                )
                raise
            except OSError as exc:
                self._record(stage, "transport_error", started)
                raise TransportError("Failed to append stage event", detail=str(exc)) from exc
            span.set_attribute("partition", metadata.partition)
            span.set_attribute("offset", metadata.offset)
        self._record(stage, "ok", started)
        logger.info(
            "pipeline.stage.published",
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            stage=stage,
            tenant_id=event.tenant_id,
            run_id=event.run_id,
            quantity=event.quantity,
        )
        return metadata

    def _record(self, stage: str, status: str, started: float) -> None:
        if self._metrics is None:
            return
        self._metrics.record_publish(self._topic, stage, status)
        self._metrics.observe_publish_duration(self._topic, perf_counter() - started)


__all__ = ["StagePublisher"]
