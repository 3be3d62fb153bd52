"""Stage events, their codec and the log they travel on."""

from .codec import (
    DEID_SCHEMA,
    INGESTION_SCHEMA,
    CodecError,
    DecodeError,
    EventSchema,
    InvalidEvent,
    SchemaViolation,
    StageEventCodec,
)
from .consumer import StageConsumer
from .events import (
    DEID_FLOW,
    INGESTION_FLOW,
    DeidStage,
    IngestionStage,
    Stage,
    StageEvent,
    StageFlow,
    partition_key,
)
from .kafka import (
    Acknowledgment,
    ConsumerRecord,
    KafkaClient,
    PartitionOffsets,
    RecordMetadata,
    TransportError,
)
from .listener import ListenerWorker, WorkerMetrics
from .publisher import StagePublisher

__all__ = [
    "Acknowledgment",
    "CodecError",
    "ConsumerRecord",
    "DEID_FLOW",
    "DEID_SCHEMA",
    "DecodeError",
    "DeidStage",
    "EventSchema",
    "INGESTION_FLOW",
    "INGESTION_SCHEMA",
    "IngestionStage",
    "InvalidEvent",
    "KafkaClient",
    "ListenerWorker",
    "PartitionOffsets",
    "RecordMetadata",
    "SchemaViolation",
    "Stage",
    "StageConsumer",
    "StageEvent",
    "StageFlow",
    "StagePublisher",
    "TransportError",
    "WorkerMetrics",
    "partition_key",
]
