from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from prometheus_client import CollectorRegistry

from ResearchEx.config.settings import (
    ConsumerSettings,
    DeidSettings,
    IndexerSettings,
    IngestionSettings,
    PipelineSettings,
    PoolSettings,
    get_settings,
)
from ResearchEx.messaging.codec import DEID_SCHEMA, INGESTION_SCHEMA, StageEventCodec
from ResearchEx.messaging.events import IngestionStage, StageEvent
from ResearchEx.messaging.kafka import KafkaClient
from ResearchEx.observability import MessagingMetricRegistry
from ResearchEx.orchestration.pools import WorkerPool
from ResearchEx.runtime import PipelineRuntime

INGESTION_TOPIC = "test.cdw.load.events"
DEID_TOPIC = "test.deid.jobs"


def small_pool(prefix: str) -> PoolSettings:
    return PoolSettings(thread_name_prefix=prefix, core_size=1, max_size=2, queue_capacity=8)


def make_event(**overrides: object) -> StageEvent:
    values: dict[str, object] = {
        "event_id": str(uuid4()),
        "occurred_at": datetime(2024, 5, 1, 12, 30, 15, 123456, tzinfo=timezone.utc),
        "tenant_id": "tenant-x",
        "run_id": "batch-100",
        "stage": IngestionStage.RECEIVED,
        "quantity": 1500,
        "source_system": "cdw",
    }
    values.update(overrides)
    return StageEvent(**values)  # type: ignore[arg-type]


def published(kafka: KafkaClient, topic: str, codec: StageEventCodec) -> list[StageEvent]:
    return [codec.decode(record.value) for record in kafka.records(topic) if record.value]


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.delenv("RX_ENV", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MessagingMetricRegistry:
    return MessagingMetricRegistry(registry=registry)


@pytest.fixture
def kafka() -> KafkaClient:
    client = KafkaClient(default_partitions=3)
    client.create_topics([INGESTION_TOPIC, DEID_TOPIC])
    return client


@pytest.fixture
def ingestion_codec() -> StageEventCodec:
    return StageEventCodec(INGESTION_SCHEMA)


@pytest.fixture
def deid_codec() -> StageEventCodec:
    return StageEventCodec(DEID_SCHEMA)


@pytest.fixture
def cpu_pool(metrics: MessagingMetricRegistry) -> Iterator[WorkerPool]:
    pool = WorkerPool("test-cpu", small_pool("test-cpu"), metrics=metrics)
    yield pool
    pool.shutdown(wait=False)


@pytest.fixture
def io_pool(metrics: MessagingMetricRegistry) -> Iterator[WorkerPool]:
    pool = WorkerPool("test-io", small_pool("test-io"), metrics=metrics)
    yield pool
    pool.shutdown(wait=False)


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(
        topics={"ingestion_events": INGESTION_TOPIC, "deid_events": DEID_TOPIC, "partitions": 3},
        ingestion=IngestionSettings(cpu_pool=small_pool("cdw-cpu"), io_pool=small_pool("cdw-io")),
        deid=DeidSettings(
            cpu_pool=small_pool("deid-cpu"),
            io_pool=small_pool("deid-io"),
            consumer=ConsumerSettings(group_id="deid-service", nack_backoff_seconds=0.0),
        ),
        indexer=IndexerSettings(
            cpu_pool=small_pool("research-cpu"),
            io_pool=small_pool("research-io"),
            consumer=ConsumerSettings(group_id="research-service", nack_backoff_seconds=0.0),
        ),
    )


@pytest.fixture
def runtime(settings: PipelineSettings, registry: CollectorRegistry) -> Iterator[PipelineRuntime]:
    runtime = PipelineRuntime.in_memory(settings, registry=registry)
    yield runtime
    for pool in runtime.pools.values():
        pool.shutdown(wait=False)
