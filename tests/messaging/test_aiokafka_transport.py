from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiokafka import TopicPartition
from aiokafka.errors import KafkaError

from ResearchEx.config.settings import ConsumerSettings, KafkaSettings
from ResearchEx.messaging.aiokafka_transport import AIOKafkaListener, AIOKafkaTransport
from ResearchEx.messaging.kafka import PartitionOffsets, TransportError
from tests.conftest import INGESTION_TOPIC


@pytest.mark.asyncio
async def test_send_requires_started_producer() -> None:
    transport = AIOKafkaTransport(KafkaSettings())

    with pytest.raises(TransportError):
        await transport.send(INGESTION_TOPIC, "tenant-x:batch-100", b"payload")


@pytest.mark.asyncio
async def test_send_encodes_key_and_headers() -> None:
    transport = AIOKafkaTransport(KafkaSettings())
    producer = AsyncMock()
    producer.send_and_wait.return_value = SimpleNamespace(topic=INGESTION_TOPIC, partition=2, offset=41)
    transport._producer = producer

    metadata = await transport.send(
        INGESTION_TOPIC, "tenant-x:batch-100", b"payload", headers={"stage": "RECEIVED"}
    )

    producer.send_and_wait.assert_awaited_once_with(
        INGESTION_TOPIC,
        value=b"payload",
        key=b"tenant-x:batch-100",
        headers=[("stage", b"RECEIVED")],
    )
    assert (metadata.partition, metadata.offset) == (2, 41)


@pytest.mark.asyncio
async def test_broker_errors_become_transport_errors() -> None:
    transport = AIOKafkaTransport(KafkaSettings())
    producer = AsyncMock()
    producer.send_and_wait.side_effect = KafkaError()
    transport._producer = producer

    with pytest.raises(TransportError):
        await transport.send(INGESTION_TOPIC, "tenant-x:batch-100", b"payload")


def _listener_with_client() -> tuple[AIOKafkaListener, MagicMock]:
    listener = AIOKafkaListener(
        INGESTION_TOPIC,
        KafkaSettings(),
        ConsumerSettings(group_id="deid-service"),
        MagicMock(),
    )
    client = MagicMock()
    client.commit = AsyncMock()
    listener._client = client
    return listener, client


@pytest.mark.asyncio
async def test_listener_commits_next_offset_and_rewinds_on_nack() -> None:
    listener, client = _listener_with_client()
    partition = TopicPartition(INGESTION_TOPIC, 1)
    offsets = listener._offsets.setdefault(partition, PartitionOffsets(7))
    first = offsets.deliver(7)
    second = offsets.deliver(8)

    listener.commit(partition, 7, first)
    await asyncio.sleep(0)
    listener.rewind(partition, 8, 0.0, second)
    await asyncio.sleep(0.01)

    client.commit.assert_awaited_once_with({partition: 8})
    client.pause.assert_called_once_with(partition)
    client.seek.assert_called_once_with(partition, 8)
    client.resume.assert_called_once_with(partition)


@pytest.mark.asyncio
async def test_listener_never_commits_past_a_nacked_record() -> None:
    listener, client = _listener_with_client()
    partition = TopicPartition(INGESTION_TOPIC, 0)
    offsets = listener._offsets.setdefault(partition, PartitionOffsets(3))
    failed = offsets.deliver(3)
    succeeded = offsets.deliver(4)

    listener.rewind(partition, 3, 60.0, failed)
    listener.commit(partition, 4, succeeded)
    await asyncio.sleep(0)

    client.commit.assert_not_awaited()
    client.seek.assert_called_once_with(partition, 3)
