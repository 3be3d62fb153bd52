from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.trace import StatusCode
from prometheus_client import CollectorRegistry

from ResearchEx.observability import MessagingMetricRegistry, start_span
from ResearchEx.observability import tracing
from ResearchEx.utils.logging import bind_correlation_id, reset_correlation_id


def test_registry_exposes_named_collectors(registry: CollectorRegistry) -> None:
    metrics = MessagingMetricRegistry(registry=registry)

    metrics.record_run("ingestion", "failed")
    metrics.record_consume("test.topic", "nack")

    assert metrics.domain == "messaging"
    assert metrics.registry is registry
    assert metrics.get_collector("pipeline_runs_total") is not None
    assert registry.get_sample_value(
        "researchex_pipeline_runs_total", {"pipeline": "ingestion", "outcome": "failed"}
    ) == 1.0


def test_unknown_collector_raises_key_error(metrics: MessagingMetricRegistry) -> None:
    with pytest.raises(KeyError):
        metrics.get_collector("missing_total")


def test_start_span_sets_attributes_and_correlation_id() -> None:
    span = MagicMock()
    tracer = MagicMock()
    tracer.start_as_current_span.return_value.__enter__.return_value = span
    token = bind_correlation_id("event-1")
    try:
        with patch.object(tracing, "_TRACER", tracer):
            with start_span("stage.publish", topic="t", offset=3, missing=None):
                pass
    finally:
        reset_correlation_id(token)

    span.set_attribute.assert_any_call("topic", "t")
    span.set_attribute.assert_any_call("offset", 3)
    span.set_attribute.assert_any_call("correlation_id", "event-1")
    assert all(call.args[0] != "missing" for call in span.set_attribute.call_args_list)


def test_start_span_marks_errors_and_reraises() -> None:
    span = MagicMock()
    tracer = MagicMock()
    tracer.start_as_current_span.return_value.__enter__.return_value = span

    with patch.object(tracing, "_TRACER", tracer):
        with pytest.raises(RuntimeError):
            with start_span("stage.consume"):
                raise RuntimeError("handler failed")

    [call] = span.set_status.call_args_list
    assert call.args[0].status_code is StatusCode.ERROR
