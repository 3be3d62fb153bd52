"""Observability helpers: Prometheus registries and OpenTelemetry spans."""

from .registries import BaseMetricRegistry, MessagingMetricRegistry
from .tracing import configure_tracing, start_span

__all__ = [
    "BaseMetricRegistry",
    "MessagingMetricRegistry",
    "configure_tracing",
    "start_span",
]
