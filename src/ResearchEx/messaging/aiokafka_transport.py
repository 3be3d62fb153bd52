"""Kafka broker transport built on aiokafka."""

from __future__ import annotations

import asyncio

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError

from ResearchEx.config.settings import ConsumerSettings, KafkaSettings

from .consumer import StageConsumer
from .kafka import ConsumerRecord, PartitionOffsets, RecordMetadata, TransportError

logger = structlog.get_logger(__name__)


class AIOKafkaTransport:
    """Idempotent producer; ``send`` returns once the broker acknowledged the append."""

    def __init__(self, settings: KafkaSettings) -> None:
        self._settings = settings
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        if self._producer is not None:
            return
        producer = AIOKafkaProducer(
            bootstrap_servers=self._settings.bootstrap_servers,
            client_id=self._settings.client_id,
            acks="all" if self._settings.acks == "all" else int(self._settings.acks),
            enable_idempotence=self._settings.enable_idempotence,
        )
        try:
            await producer.start()
        except KafkaError as exc:
            raise TransportError("Unable to connect to Kafka", detail=str(exc)) from exc
        self._producer = producer
        logger.info("kafka.producer.started", bootstrap_servers=self._settings.bootstrap_servers)

    async def stop(self) -> None:
        if self._producer is None:
            return
        await self._producer.stop()
        self._producer = None

    async def send(
        self,
        topic: str,
        key: str,
        value: bytes,
        *,
        headers: dict[str, str] | None = None,
    ) -> RecordMetadata:
        if self._producer is None:
            raise TransportError("Producer has not been started")
        try:
            metadata = await self._producer.send_and_wait(
                topic,
                value=value,
                key=key.encode("utf-8"),
                headers=[(name, text.encode("utf-8")) for name, text in (headers or {}).items()],
            )
        except KafkaError as exc:
            raise TransportError("Kafka rejected the stage event", detail=str(exc)) from exc
        return RecordMetadata(topic=metadata.topic, partition=metadata.partition, offset=metadata.offset)


class _BrokerAcknowledgment:
    __slots__ = ("_listener", "_partition", "_offset", "_generation", "_settled")

    def __init__(
        self, listener: AIOKafkaListener, partition: TopicPartition, offset: int, generation: int
    ) -> None:
        self._listener = listener
        self._partition = partition
        self._offset = offset
        self._generation = generation
        self._settled = False

    def acknowledge(self) -> None:
        if not self._settled:
            self._settled = True
            self._listener.commit(self._partition, self._offset, self._generation)

    def nack(self, backoff_seconds: float) -> None:
        if not self._settled:
            self._settled = True
            self._listener.rewind(self._partition, self._offset, backoff_seconds, self._generation)


class AIOKafkaListener:
    """Manual-commit consumer loop delivering records to a :class:`StageConsumer`."""

    def __init__(
        self,
        topic: str,
        kafka: KafkaSettings,
        settings: ConsumerSettings,
        consumer: StageConsumer,
    ) -> None:
        self._topic = topic
        self._kafka = kafka
        self._settings = settings
        self._consumer = consumer
        self._client: AIOKafkaConsumer | None = None
        self._commits: set[asyncio.Task[None]] = set()
        self._offsets: dict[TopicPartition, PartitionOffsets] = {}
        self._stopped = False

    async def start(self) -> None:
        client = AIOKafkaConsumer(
            self._topic,
            bootstrap_servers=self._kafka.bootstrap_servers,
            client_id=self._kafka.client_id,
            group_id=self._settings.group_id,
            enable_auto_commit=False,
            auto_offset_reset=self._kafka.auto_offset_reset,
        )
        try:
            await client.start()
        except KafkaError as exc:
            raise TransportError("Unable to connect to Kafka", detail=str(exc)) from exc
        self._client = client
        logger.info("kafka.consumer.started", topic=self._topic, group_id=self._settings.group_id)

    async def stop(self) -> None:
        self._stopped = True
        await self._consumer.drain()
        if self._commits:
            await asyncio.gather(*list(self._commits), return_exceptions=True)
        if self._client is not None:
            await self._client.stop()
            self._client = None

    def shutdown(self) -> None:
        self._stopped = True

    async def run_forever(self) -> None:
        if self._client is None:
            await self.start()
        client = self._client
        if client is None:
            raise TransportError("Kafka consumer is not running")
        while not self._stopped:
            batches = await client.getmany(
                timeout_ms=500, max_records=self._settings.poll_batch_size
            )
            for partition, records in batches.items():
                for message in records:
                    record = ConsumerRecord(
                        topic=message.topic,
                        partition=message.partition,
                        offset=message.offset,
                        key=message.key.decode("utf-8") if message.key is not None else None,
                        value=message.value,
                        headers={name: value.decode("utf-8") for name, value in message.headers or ()},
                        timestamp=message.timestamp / 1000.0,
                    )
                    offsets = self._offsets.setdefault(partition, PartitionOffsets(message.offset))
                    ack = _BrokerAcknowledgment(self, partition, message.offset, offsets.deliver(message.offset))
                    self._consumer.on_message(record, ack)
        await self.stop()

    def commit(self, partition: TopicPartition, offset: int, generation: int) -> None:
        """Commit up to the lowest record of ``partition`` that is still unsettled."""
        offsets = self._offsets.get(partition)
        if self._client is None or offsets is None:
            return
        position = offsets.acknowledge(offset, generation)
        if position is None:
            return
        task = asyncio.get_running_loop().create_task(self._commit(partition, position))
        self._commits.add(task)
        task.add_done_callback(self._commits.discard)

    def rewind(self, partition: TopicPartition, offset: int, backoff_seconds: float, generation: int) -> None:
        """Seek back to ``offset`` and keep the partition paused for the backoff window."""
        offsets = self._offsets.get(partition)
        if self._client is None or offsets is None or not offsets.rewind(offset, generation):
            return
        self._client.pause(partition)
        self._client.seek(partition, offset)
        asyncio.get_running_loop().call_later(backoff_seconds, self._resume, partition)
        logger.info(
            "kafka.partition.rewound",
            topic=partition.topic,
            partition=partition.partition,
            offset=offset,
            backoff_seconds=backoff_seconds,
        )

    async def _commit(self, partition: TopicPartition, position: int) -> None:
        if self._client is None:
            return
        try:
            await self._client.commit({partition: position})
        except KafkaError as exc:
            logger.warning(
                "kafka.commit.failed",
                topic=partition.topic,
                partition=partition.partition,
                position=position,
                error=str(exc),
            )

    def _resume(self, partition: TopicPartition) -> None:
        if self._client is not None:
            self._client.resume(partition)


__all__ = ["AIOKafkaListener", "AIOKafkaTransport"]
