"""Metric registry for stage publishing, consuming and pipeline runs."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from ResearchEx.observability.registries.base import BaseMetricRegistry


class MessagingMetricRegistry(BaseMetricRegistry):
    """Metric registry for the event-sourced pipeline.

    Scope:
        - Stage events published and consumed per topic
        - Run outcomes per pipeline
        - Worker pool occupancy
        - Research documents indexed
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        super().__init__(domain="messaging", registry=registry)
        self.initialize_collectors()

    def initialize_collectors(self) -> None:
        """Initialize all messaging metrics."""
        self._collectors["stage_events_published_total"] = Counter(
            "researchex_stage_events_published_total",
            "Stage events appended to the log",
            ["topic", "stage", "status"],
            registry=self._registry,
        )

        self._collectors["stage_publish_duration_seconds"] = Histogram(
            "researchex_stage_publish_duration_seconds",
            "Time spent validating, encoding and appending a stage event",
            ["topic"],
            registry=self._registry,
        )

        self._collectors["stage_messages_consumed_total"] = Counter(
            "researchex_stage_messages_consumed_total",
            "Stage messages delivered to a consumer, by outcome",
            ["topic", "outcome"],
            registry=self._registry,
        )

        self._collectors["pipeline_runs_total"] = Counter(
            "researchex_pipeline_runs_total",
            "Pipeline runs that reached a terminal stage",
            ["pipeline", "outcome"],
            registry=self._registry,
        )

        self._collectors["pool_in_flight"] = Gauge(
            "researchex_pool_in_flight",
            "Tasks admitted to a worker pool and not yet finished",
            ["pool"],
            registry=self._registry,
        )

        self._collectors["documents_indexed_total"] = Counter(
            "researchex_documents_indexed_total",
            "Research documents written to the index",
            ["tenant_id"],
            registry=self._registry,
        )

    def record_publish(self, topic: str, stage: str, status: str) -> None:
        self._collectors["stage_events_published_total"].labels(
            topic=topic, stage=stage, status=status
        ).inc()

    def observe_publish_duration(self, topic: str, duration_seconds: float) -> None:
        self._collectors["stage_publish_duration_seconds"].labels(topic=topic).observe(
            duration_seconds
        )

    def record_consume(self, topic: str, outcome: str) -> None:
        """Record a consumed message.

        Args:
            topic: Upstream topic name
            outcome: ``ack``, ``nack`` or ``tombstone``
        """
        self._collectors["stage_messages_consumed_total"].labels(
            topic=topic, outcome=outcome
        ).inc()

    def record_run(self, pipeline: str, outcome: str) -> None:
        self._collectors["pipeline_runs_total"].labels(pipeline=pipeline, outcome=outcome).inc()

    def set_pool_in_flight(self, pool: str, count: int) -> None:
        self._collectors["pool_in_flight"].labels(pool=pool).set(count)

    def record_document_indexed(self, tenant_id: str) -> None:
        self._collectors["documents_indexed_total"].labels(tenant_id=tenant_id).inc()
