"""Partitioned in-memory log façade with Kafka delivery semantics.

Used by local runs and tests in place of a broker. It keeps the properties
the pipeline relies on:

- records with the same key always land in the same partition, in append order
- consumer groups track a fetch position and a committed offset per partition
- acknowledgment commits up to the lowest unsettled record of the partition
- negative acknowledgment seeks back to the record and pauses the partition
  for the backoff window (at-least-once redelivery)
"""

from __future__ import annotations

import hashlib
import time
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from ResearchEx.utils.errors import FoundationError

logger = structlog.get_logger(__name__)


class TransportError(FoundationError):
    """The broker is unreachable or rejected a send."""

    status = 503
    problem_type = "https://researchex.dev/problems/transport-error"


@dataclass(frozen=True, slots=True)
class RecordMetadata:
    topic: str
    partition: int
    offset: int


@dataclass(frozen=True, slots=True)
class ConsumerRecord:
    """A record as handed to a consumer."""

    topic: str
    partition: int
    offset: int
    key: str | None
    value: bytes | None
    headers: dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Acknowledgment(Protocol):
    """Manual acknowledgment handle delivered alongside each record."""

    def acknowledge(self) -> None: ...

    def nack(self, backoff_seconds: float) -> None: ...


class EventTransport(Protocol):
    """Append-only, partitioned log used by the publisher."""

    async def send(
        self,
        topic: str,
        key: str,
        value: bytes,
        *,
        headers: dict[str, str] | None = None,
    ) -> RecordMetadata: ...


@dataclass
class _GroupState:
    position: dict[int, int] = field(default_factory=dict)
    committed: dict[int, int] = field(default_factory=dict)
    paused_until: dict[int, float] = field(default_factory=dict)
    offsets: dict[int, PartitionOffsets] = field(default_factory=dict)


class PartitionOffsets:
    """Commit bookkeeping for one partition of one consumer group.

    Records of a partition may settle out of order. The committed position
    only moves up to the lowest delivered record that has not been
    acknowledged, so a record still in flight or negatively acknowledged is
    never skipped. A nack starts a new delivery generation: settlements from
    the previous generation at or beyond the rewound offset are ignored,
    since those records will be delivered again.
    """

    __slots__ = ("committed", "_generation", "_outstanding", "_high")

    def __init__(self, committed: int = 0) -> None:
        self.committed = committed
        self._generation = 0
        self._outstanding: dict[int, int] = {}
        self._high = committed

    def deliver(self, offset: int) -> int:
        """Track a delivered record; returns the generation its settlement must carry."""
        self._outstanding[offset] = self._generation
        return self._generation

    def acknowledge(self, offset: int, generation: int) -> int | None:
        """Settle ``offset``; returns the new commit position when it advanced."""
        if self._outstanding.get(offset) != generation:
            return None
        del self._outstanding[offset]
        self._high = max(self._high, offset + 1)
        position = min(self._outstanding) if self._outstanding else self._high
        if position <= self.committed:
            return None
        self.committed = position
        return position

    def rewind(self, offset: int, generation: int) -> bool:
        """Forget every delivery at or past ``offset``; ``False`` for a stale nack."""
        if self._outstanding.get(offset) != generation:
            return False
        self._generation += 1
        self._outstanding = {key: gen for key, gen in self._outstanding.items() if key < offset}
        self._high = min(self._high, offset)
        return True


class _LogAcknowledgment:
    """Acknowledgment bound to one delivered record."""

    __slots__ = ("_client", "_group", "_record", "_generation", "_outcome")

    def __init__(self, client: KafkaClient, group: str, record: ConsumerRecord, generation: int) -> None:
        self._client = client
        self._group = group
        self._record = record
        self._generation = generation
        self._outcome: str | None = None

    @property
    def settled(self) -> bool:
        return self._outcome is not None

    @property
    def nacked(self) -> bool:
        return self._outcome == "nack"

    def acknowledge(self) -> None:
        if self._outcome is not None:
            return
        self._outcome = "ack"
        self._client.commit(self._group, self._record, self._generation)

    def nack(self, backoff_seconds: float) -> None:
        if self._outcome is not None:
            return
        self._outcome = "nack"
        self._client.seek_back(self._group, self._record, backoff_seconds, self._generation)


class KafkaClient:
    """Small in-memory partitioned log suitable for unit testing and local runs."""

    def __init__(self, *, default_partitions: int = 3) -> None:
        self._default_partitions = default_partitions
        self._topics: dict[str, list[list[ConsumerRecord]]] = {}
        self._groups: dict[tuple[str, str], _GroupState] = defaultdict(_GroupState)
        self._health: dict[str, bool] = {"kafka": True}

    # ------------------------------------------------------------------
    # Topic management
    # ------------------------------------------------------------------
    def create_topics(self, topics: Iterable[str], *, partitions: int | None = None) -> None:
        """Ensure topics exist by initialising their partitions."""

        count = partitions or self._default_partitions
        for topic in topics:
            if topic not in self._topics:
                self._topics[topic] = [[] for _ in range(count)]

    def partitions_for(self, topic: str) -> int:
        return len(self._partitions(topic))

    def partition_for(self, topic: str, key: str | None) -> int:
        """Stable key → partition mapping; unkeyed records go to partition 0."""

        count = self.partitions_for(topic)
        if key is None:
            return 0
        digest = hashlib.sha256(key.encode("utf-8")).digest()
        return int.from_bytes(digest[:4], "big") % count

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------
    async def send(
        self,
        topic: str,
        key: str,
        value: bytes,
        *,
        headers: dict[str, str] | None = None,
    ) -> RecordMetadata:
        return self.append(topic, key, value, headers=headers)

    def append(
        self,
        topic: str,
        key: str | None,
        value: bytes | None,
        *,
        headers: dict[str, str] | None = None,
    ) -> RecordMetadata:
        if not self._health["kafka"]:
            raise TransportError("Broker unavailable", detail=f"topic={topic}")
        partitions = self._partitions(topic)
        partition = self.partition_for(topic, key)
        log = partitions[partition]
        record = ConsumerRecord(
            topic=topic,
            partition=partition,
            offset=len(log),
            key=key,
            value=value,
            headers=dict(headers or {}),
        )
        log.append(record)
        return RecordMetadata(topic=topic, partition=partition, offset=record.offset)

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------
    def poll(
        self,
        topic: str,
        group: str,
        *,
        max_records: int | None = None,
    ) -> list[tuple[ConsumerRecord, _LogAcknowledgment]]:
        """Fetch records past the group's position, in order per partition."""

        if not self._health["kafka"]:
            raise TransportError("Broker unavailable", detail=f"topic={topic}")
        partitions = self._partitions(topic)
        state = self._groups[(topic, group)]
        now = time.monotonic()
        fetched: list[tuple[ConsumerRecord, _LogAcknowledgment]] = []
        for index, log in enumerate(partitions):
            if state.paused_until.get(index, 0.0) > now:
                continue
            state.paused_until.pop(index, None)
            position = state.position.get(index, state.committed.get(index, 0))
            offsets = state.offsets.setdefault(index, PartitionOffsets(state.committed.get(index, 0)))
            while position < len(log):
                if max_records is not None and len(fetched) >= max_records:
                    break
                record = log[position]
                generation = offsets.deliver(record.offset)
                fetched.append((record, _LogAcknowledgment(self, group, record, generation)))
                position += 1
            state.position[index] = position
        return fetched

    def commit(self, group: str, record: ConsumerRecord, generation: int) -> None:
        """Acknowledge ``record``; the committed offset never passes an unsettled record."""

        state = self._groups[(record.topic, group)]
        offsets = state.offsets.get(record.partition)
        if offsets is None:
            return
        position = offsets.acknowledge(record.offset, generation)
        if position is not None:
            state.committed[record.partition] = max(state.committed.get(record.partition, 0), position)

    def seek_back(
        self, group: str, record: ConsumerRecord, backoff_seconds: float, generation: int
    ) -> None:
        state = self._groups[(record.topic, group)]
        offsets = state.offsets.get(record.partition)
        if offsets is None or not offsets.rewind(record.offset, generation):
            return
        position = state.position.get(record.partition, record.offset)
        state.position[record.partition] = min(position, record.offset)
        state.paused_until[record.partition] = time.monotonic() + max(backoff_seconds, 0.0)
        logger.debug(
            "kafka.partition.rewound",
            topic=record.topic,
            group=group,
            partition=record.partition,
            offset=record.offset,
            backoff_seconds=backoff_seconds,
        )

    def committed(self, topic: str, group: str, partition: int) -> int:
        return self._groups[(topic, group)].committed.get(partition, 0)

    def pending(self, topic: str, group: str) -> int:
        """Records not yet committed by ``group`` across all partitions."""

        partitions = self._partitions(topic)
        state = self._groups[(topic, group)]
        return sum(len(log) - state.committed.get(index, 0) for index, log in enumerate(partitions))

    def records(self, topic: str) -> list[ConsumerRecord]:
        """Every record of ``topic`` ordered by partition then offset."""

        return [record for log in self._partitions(topic) for record in log]

    def partition_records(self, topic: str, partition: int) -> list[ConsumerRecord]:
        return list(self._partitions(topic)[partition])

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    def set_health(self, *, kafka: bool | None = None) -> None:
        if kafka is not None:
            self._health["kafka"] = kafka

    def health(self) -> dict[str, bool]:
        return dict(self._health)

    def _partitions(self, topic: str) -> list[list[ConsumerRecord]]:
        try:
            return self._topics[topic]
        except KeyError as exc:
            raise ValueError(f"Topic '{topic}' has not been created") from exc


__all__ = [
    "Acknowledgment",
    "ConsumerRecord",
    "EventTransport",
    "KafkaClient",
    "PartitionOffsets",
    "RecordMetadata",
    "TransportError",
]
