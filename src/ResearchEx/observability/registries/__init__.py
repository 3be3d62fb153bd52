"""Domain specific Prometheus metric registries."""

from .base import BaseMetricRegistry
from .messaging import MessagingMetricRegistry

__all__ = ["BaseMetricRegistry", "MessagingMetricRegistry"]
