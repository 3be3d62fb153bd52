"""OpenTelemetry helpers for publish and consume spans."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

from ResearchEx.config.settings import TelemetrySettings
from ResearchEx.utils.logging import get_correlation_id

_TRACER = trace.get_tracer("ResearchEx")


def configure_tracing(service_name: str, telemetry: TelemetrySettings) -> None:
    """Configure the global OpenTelemetry tracer provider.

    With ``exporter="none"`` spans are still created (so attributes and
    status are exercised) but nothing is exported.
    """
    resource = Resource(attributes={"service.name": service_name})
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(telemetry.sample_ratio))

    exporter: SpanExporter | None = None
    if telemetry.exporter == "otlp":
        exporter = (
            OTLPSpanExporter(endpoint=telemetry.endpoint) if telemetry.endpoint else OTLPSpanExporter()
        )
    elif telemetry.exporter == "console":
        exporter = ConsoleSpanExporter()

    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


@contextmanager
def start_span(name: str, **attributes: Any) -> Iterator[Span]:
    """Open a span named ``name`` carrying ``attributes`` and the correlation id.

    Exceptions raised in the block mark the span as errored and propagate.
    """
    with _TRACER.start_as_current_span(name, record_exception=True) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value if isinstance(value, (str, int, float, bool)) else str(value))
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


__all__ = ["configure_tracing", "start_span"]
