"""Explicit wiring of every pipeline component from one settings object.

A :class:`PipelineRuntime` is built once at startup and passed by reference;
nothing in the package looks components up globally.
"""

from __future__ import annotations

import structlog
from prometheus_client import CollectorRegistry

from ResearchEx.config.settings import PipelineSettings
from ResearchEx.indexing import (
    BackendCacheInvalidator,
    CachedDocumentReader,
    InMemoryIndexRepository,
    ResearchIndexer,
)
from ResearchEx.messaging.codec import DEID_SCHEMA, INGESTION_SCHEMA, StageEventCodec
from ResearchEx.messaging.consumer import StageConsumer
from ResearchEx.messaging.kafka import EventTransport, KafkaClient
from ResearchEx.messaging.listener import ListenerWorker
from ResearchEx.messaging.publisher import StagePublisher
from ResearchEx.observability import MessagingMetricRegistry
from ResearchEx.orchestration import (
    DeidentificationOrchestrator,
    IngestionOrchestrator,
    WorkerPool,
)
from ResearchEx.services.masking import RecordMasker
from ResearchEx.storage import (
    CacheBackend,
    InMemoryCache,
    InMemoryObjectStore,
    ObjectStore,
    RedisCache,
    S3ObjectStore,
)

logger = structlog.get_logger(__name__)


def build_object_store(settings: PipelineSettings) -> ObjectStore:
    if settings.object_store.backend == "s3":
        return S3ObjectStore(endpoint_url=settings.object_store.endpoint_url)
    return InMemoryObjectStore()


def build_cache(settings: PipelineSettings) -> CacheBackend:
    if settings.redis.enabled:
        return RedisCache(url=settings.redis.url)
    return InMemoryCache()


class PipelineRuntime:
    """Codecs, publishers, pools, orchestrators and consumers of all three services."""

    def __init__(
        self,
        settings: PipelineSettings,
        transport: EventTransport,
        *,
        registry: CollectorRegistry | None = None,
        object_store: ObjectStore | None = None,
        cache: CacheBackend | None = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.registry = registry if registry is not None else CollectorRegistry()
        self.metrics = MessagingMetricRegistry(registry=self.registry)
        self.object_store = object_store if object_store is not None else build_object_store(settings)
        self.cache = cache if cache is not None else build_cache(settings)

        topics = settings.topics
        self.ingestion_codec = StageEventCodec(INGESTION_SCHEMA)
        self.deid_codec = StageEventCodec(DEID_SCHEMA)
        self.ingestion_publisher = StagePublisher(
            transport, topics.ingestion_events, self.ingestion_codec, metrics=self.metrics
        )
        self.deid_publisher = StagePublisher(
            transport, topics.deid_events, self.deid_codec, metrics=self.metrics
        )

        self.pools = {
            "ingestion-cpu": WorkerPool("ingestion-cpu", settings.ingestion.cpu_pool, metrics=self.metrics),
            "ingestion-io": WorkerPool("ingestion-io", settings.ingestion.io_pool, metrics=self.metrics),
            "deid-cpu": WorkerPool("deid-cpu", settings.deid.cpu_pool, metrics=self.metrics),
            "deid-io": WorkerPool("deid-io", settings.deid.io_pool, metrics=self.metrics),
            "indexer-cpu": WorkerPool("indexer-cpu", settings.indexer.cpu_pool, metrics=self.metrics),
            "indexer-io": WorkerPool("indexer-io", settings.indexer.io_pool, metrics=self.metrics),
        }

        self.ingestion = IngestionOrchestrator(
            publisher=self.ingestion_publisher,
            cpu_pool=self.pools["ingestion-cpu"],
            io_pool=self.pools["ingestion-io"],
            object_store=self.object_store,
            max_record_count=settings.ingestion.max_record_count,
            error_code=settings.ingestion.error_code,
            raw_location_prefix=settings.ingestion.raw_location_prefix,
            metrics=self.metrics,
        )
        self.deidentification = DeidentificationOrchestrator(
            publisher=self.deid_publisher,
            cpu_pool=self.pools["deid-cpu"],
            io_pool=self.pools["deid-io"],
            object_store=self.object_store,
            masker=RecordMasker(settings.deid.identifier_fields),
            max_record_count=settings.deid.max_record_count,
            error_code=settings.deid.error_code,
            raw_location_prefix=settings.deid.raw_location_prefix,
            output_location_prefix=settings.deid.output_location_prefix,
            metrics=self.metrics,
        )

        self.index_repository = InMemoryIndexRepository()
        self.invalidator = BackendCacheInvalidator(self.cache)
        self.document_reader = CachedDocumentReader(
            self.index_repository, self.cache, key_prefix=settings.indexer.cache_key_prefix
        )
        self.indexer = ResearchIndexer(
            cpu_pool=self.pools["indexer-cpu"],
            io_pool=self.pools["indexer-io"],
            repository=self.index_repository,
            invalidator=self.invalidator,
            key_prefix=settings.indexer.cache_key_prefix,
            metrics=self.metrics,
        )

        deid_consumer_settings = settings.deid.consumer
        self.deid_consumer = StageConsumer(
            self.ingestion_codec,
            self.deidentification.handle_upstream,
            name=deid_consumer_settings.group_id,
            backoff_seconds=deid_consumer_settings.nack_backoff_seconds,
            concurrency=deid_consumer_settings.concurrency,
            metrics=self.metrics,
        )
        indexer_consumer_settings = settings.indexer.consumer
        self.indexer_consumer = StageConsumer(
            self.deid_codec,
            self.indexer.handle,
            name=indexer_consumer_settings.group_id,
            backoff_seconds=indexer_consumer_settings.nack_backoff_seconds,
            concurrency=indexer_consumer_settings.concurrency,
            metrics=self.metrics,
        )

        self.listeners: list[ListenerWorker] = []
        if isinstance(transport, KafkaClient):
            transport.create_topics(
                [topics.ingestion_events, topics.deid_events], partitions=topics.partitions
            )
            self.listeners = [
                ListenerWorker(
                    name="deid-listener",
                    kafka=transport,
                    topic=topics.ingestion_events,
                    group_id=deid_consumer_settings.group_id,
                    consumer=self.deid_consumer,
                    batch_size=deid_consumer_settings.poll_batch_size,
                ),
                ListenerWorker(
                    name="indexer-listener",
                    kafka=transport,
                    topic=topics.deid_events,
                    group_id=indexer_consumer_settings.group_id,
                    consumer=self.indexer_consumer,
                    batch_size=indexer_consumer_settings.poll_batch_size,
                ),
            ]

    @classmethod
    def in_memory(
        cls,
        settings: PipelineSettings | None = None,
        *,
        registry: CollectorRegistry | None = None,
    ) -> PipelineRuntime:
        """Runtime on the in-memory log with in-memory storage and cache."""
        settings = settings or PipelineSettings()
        kafka = KafkaClient(default_partitions=settings.topics.partitions)
        return cls(
            settings,
            kafka,
            registry=registry,
            object_store=InMemoryObjectStore(),
            cache=InMemoryCache(),
        )

    async def drain(self, *, max_rounds: int = 50) -> int:
        """Deliver in-memory records downstream until every listener is idle."""
        delivered = 0
        for _ in range(max_rounds):
            round_total = 0
            for listener in self.listeners:
                round_total += await listener.drain()
            delivered += round_total
            if not round_total:
                break
        await self.invalidator.flush()
        return delivered

    async def close(self) -> None:
        for listener in self.listeners:
            listener.shutdown()
        await self.deid_consumer.drain()
        await self.indexer_consumer.drain()
        await self.invalidator.flush()
        for pool in self.pools.values():
            pool.shutdown(wait=False)
        if isinstance(self.cache, RedisCache):
            await self.cache.close()
        logger.info("runtime.closed")


__all__ = ["PipelineRuntime", "build_cache", "build_object_store"]
