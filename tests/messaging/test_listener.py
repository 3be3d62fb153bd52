from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from ResearchEx.messaging.codec import StageEventCodec
from ResearchEx.messaging.consumer import StageConsumer
from ResearchEx.messaging.events import StageEvent
from ResearchEx.messaging.kafka import KafkaClient
from ResearchEx.messaging.listener import ListenerWorker
from tests.conftest import INGESTION_TOPIC, make_event


def _worker(kafka: KafkaClient, consumer: StageConsumer) -> ListenerWorker:
    return ListenerWorker(
        name="deid-listener",
        kafka=kafka,
        topic=INGESTION_TOPIC,
        group_id="deid-service",
        consumer=consumer,
        batch_size=2,
    )


@pytest.mark.asyncio
async def test_drain_delivers_every_record(kafka: KafkaClient, ingestion_codec: StageEventCodec) -> None:
    handler = AsyncMock()
    worker = _worker(kafka, StageConsumer(ingestion_codec, handler, name="deid"))
    for batch in ("b-1", "b-2", "b-3"):
        kafka.append(INGESTION_TOPIC, f"tenant-x:{batch}", ingestion_codec.encode(make_event(run_id=batch)))
    kafka.append(INGESTION_TOPIC, "tenant-x:b-4", None)

    delivered = await worker.drain()

    assert delivered == 4
    assert handler.await_count == 3
    assert worker.metrics.processed == 4
    assert worker.health()["pending"] == 0


@pytest.mark.asyncio
async def test_failing_handler_leaves_record_pending(
    kafka: KafkaClient, ingestion_codec: StageEventCodec
) -> None:
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    consumer = StageConsumer(ingestion_codec, handler, name="deid", backoff_seconds=60.0)
    worker = _worker(kafka, consumer)
    kafka.append(INGESTION_TOPIC, "tenant-x:b-1", ingestion_codec.encode(make_event(run_id="b-1")))

    await worker.drain()

    assert worker.metrics.failed == 1
    assert worker.metrics.nacked == 1
    assert kafka.pending(INGESTION_TOPIC, "deid-service") == 1


@pytest.mark.asyncio
async def test_rejected_payload_counts_as_nacked(
    kafka: KafkaClient, ingestion_codec: StageEventCodec
) -> None:
    consumer = StageConsumer(ingestion_codec, AsyncMock(), name="deid", backoff_seconds=60.0)
    worker = _worker(kafka, consumer)
    kafka.append(INGESTION_TOPIC, "tenant-x:b-1", b"not a frame")

    await worker.drain()

    assert worker.metrics.nacked == 1
    assert worker.metrics.processed == 0


@pytest.mark.asyncio
async def test_stopped_worker_delivers_nothing(kafka: KafkaClient, ingestion_codec: StageEventCodec) -> None:
    handler = AsyncMock()
    worker = _worker(kafka, StageConsumer(ingestion_codec, handler, name="deid"))
    kafka.append(INGESTION_TOPIC, "tenant-x:b-1", ingestion_codec.encode(make_event(run_id="b-1")))

    worker.shutdown()

    assert worker.run_once() == []
    assert worker.health()["stopped"] is True
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_forever_survives_broker_outage(
    kafka: KafkaClient, ingestion_codec: StageEventCodec
) -> None:
    handler = AsyncMock()
    worker = _worker(kafka, StageConsumer(ingestion_codec, handler, name="deid"))
    worker.poll_interval_seconds = 0.001
    kafka.set_health(kafka=False)

    loop_task = asyncio.create_task(worker.run_forever())
    await asyncio.sleep(0.01)
    kafka.set_health(kafka=True)
    kafka.append(INGESTION_TOPIC, "tenant-x:b-1", ingestion_codec.encode(make_event(run_id="b-1")))
    for _ in range(100):
        if handler.await_count:
            break
        await asyncio.sleep(0.005)
    worker.shutdown()
    await asyncio.wait_for(loop_task, timeout=1.0)

    handler.assert_awaited_once()
    assert kafka.pending(INGESTION_TOPIC, "deid-service") == 0


@pytest.mark.asyncio
async def test_nacked_record_holds_back_later_acknowledgments(
    kafka: KafkaClient, ingestion_codec: StageEventCodec
) -> None:
    failing = {"batch-1"}

    async def handle(event: StageEvent) -> None:
        if event.run_id in failing:
            raise RuntimeError("downstream unavailable")

    consumer = StageConsumer(ingestion_codec, handle, name="deid", backoff_seconds=0.0)
    worker = _worker(kafka, consumer)
    first = kafka.append(INGESTION_TOPIC, "tenant-x:batch", ingestion_codec.encode(make_event(run_id="batch-1")))
    kafka.append(INGESTION_TOPIC, "tenant-x:batch", ingestion_codec.encode(make_event(run_id="batch-2")))

    worker.run_once()
    await consumer.drain()

    assert kafka.committed(INGESTION_TOPIC, "deid-service", first.partition) == 0
    assert kafka.pending(INGESTION_TOPIC, "deid-service") == 2

    failing.clear()
    await worker.drain()

    assert kafka.committed(INGESTION_TOPIC, "deid-service", first.partition) == 2
    assert kafka.pending(INGESTION_TOPIC, "deid-service") == 0
