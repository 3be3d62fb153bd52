"""Command line entry point: ``researchex demo | ingest | serve``."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
from typing import Any

import structlog
from prometheus_client import start_http_server

from ResearchEx.config.settings import PipelineSettings, load_settings
from ResearchEx.messaging.aiokafka_transport import AIOKafkaListener, AIOKafkaTransport
from ResearchEx.messaging.codec import StageEventCodec
from ResearchEx.messaging.kafka import KafkaClient
from ResearchEx.observability import configure_tracing
from ResearchEx.orchestration import BatchRequest, RunOutcome
from ResearchEx.runtime import PipelineRuntime
from ResearchEx.utils.logging import configure_logging

logger = structlog.get_logger(__name__)

_SAMPLE_RECORDS = [
    {
        "patient_name": "Hong Gildong",
        "resident_id": "900101-1234567",
        "note": "Call 010-1234-5678 or mail gildong@example.org before the follow-up.",
        "diagnosis": "J45.909",
    },
    {
        "patient_name": "Kim Younghee",
        "resident_id": "850505-2345678",
        "note": "Discharged; contact 02-345-6789.",
        "diagnosis": "E11.9",
    },
]


def _event_trail(kafka: KafkaClient, topic: str, codec: StageEventCodec) -> list[dict[str, Any]]:
    trail = []
    for record in kafka.records(topic):
        if not record.value:
            continue
        event = codec.decode(record.value)
        trail.append(
            {
                "topic": topic,
                "partition": record.partition,
                "offset": record.offset,
                "stage": event.stage.value,
                "tenant_id": event.tenant_id,
                "run_id": event.run_id,
                "quantity": event.quantity,
                "error_code": event.error_code,
                "error_message": event.error_message,
            }
        )
    return trail


def _outcome_summary(outcome: RunOutcome) -> dict[str, Any]:
    return {
        "pipeline": outcome.pipeline,
        "tenant_id": outcome.tenant_id,
        "run_id": outcome.run_id,
        "event_id": outcome.event_id,
        "stages": [stage.value for stage in outcome.stages],
        "failure": outcome.failure.message if outcome.failure else None,
    }


async def run_demo(settings: PipelineSettings, request: BatchRequest) -> dict[str, Any]:
    """Run ingestion, de-identification and indexing end to end on the in-memory log."""
    runtime = PipelineRuntime.in_memory(settings)
    try:
        outcome = await runtime.ingestion.start_pipeline(request)
        await runtime.drain()
        kafka = runtime.listeners[0].kafka
        documents = await runtime.index_repository.all()
        return {
            "ingestion": _outcome_summary(outcome),
            "events": _event_trail(kafka, settings.topics.ingestion_events, runtime.ingestion_codec)
            + _event_trail(kafka, settings.topics.deid_events, runtime.deid_codec),
            "documents": [document.summary() for document in documents],
        }
    finally:
        await runtime.close()


async def run_ingest(settings: PipelineSettings, request: BatchRequest) -> dict[str, Any]:
    transport = AIOKafkaTransport(settings.kafka)
    await transport.start()
    runtime = PipelineRuntime(settings, transport)
    try:
        outcome = await runtime.ingestion.start_pipeline(request)
        return _outcome_summary(outcome)
    finally:
        await runtime.close()
        await transport.stop()


async def run_service(settings: PipelineSettings, service: str, metrics_port: int | None) -> None:
    transport = AIOKafkaTransport(settings.kafka)
    await transport.start()
    runtime = PipelineRuntime(settings, transport)
    if service == "deid":
        listener = AIOKafkaListener(
            settings.topics.ingestion_events, settings.kafka, settings.deid.consumer, runtime.deid_consumer
        )
    else:
        listener = AIOKafkaListener(
            settings.topics.deid_events, settings.kafka, settings.indexer.consumer, runtime.indexer_consumer
        )
    if metrics_port:
        start_http_server(metrics_port, registry=runtime.registry)
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, listener.shutdown)
    logger.info("service.started", service=service)
    try:
        await listener.run_forever()
    finally:
        await runtime.close()
        await transport.stop()
        logger.info("service.stopped", service=service)


def _batch_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--batch", required=True, help="Batch identifier")
    parser.add_argument("--records", type=int, required=True, help="Declared record count")
    parser.add_argument("--source", default="cdw", help="Source system name")
    parser.add_argument(
        "--with-sample-records",
        action="store_true",
        help="Attach a small set of identifiable sample records to the batch",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="researchex", description="Clinical batch pipeline")
    parser.add_argument("--env", default=None, help="Environment profile (dev, staging, prod)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    demo = subparsers.add_parser("demo", help="Run the whole pipeline on the in-memory log")
    _batch_arguments(demo)
    demo.add_argument("--json", action="store_true", help="Emit machine-readable JSON output")

    ingest = subparsers.add_parser("ingest", help="Submit one batch against Kafka")
    _batch_arguments(ingest)

    serve = subparsers.add_parser("serve", help="Run a consuming service against Kafka")
    serve.add_argument("service", choices=["deid", "indexer"])
    serve.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics")
    return parser


def _request(args: argparse.Namespace) -> BatchRequest:
    return BatchRequest(
        tenant_id=args.tenant,
        batch_id=args.batch,
        source_system=args.source,
        record_count=args.records,
        records=_SAMPLE_RECORDS if args.with_sample_records else None,
    )


def _render_demo(report: dict[str, Any]) -> str:
    lines = [f"Run {report['ingestion']['tenant_id']}:{report['ingestion']['run_id']}", "", "Events:"]
    for event in report["events"]:
        line = f"  [{event['topic']}#{event['partition']}@{event['offset']}] {event['stage']:<10} {event['run_id']} quantity={event['quantity']}"
        if event["error_message"]:
            line += f" error={event['error_code']}: {event['error_message']}"
        lines.append(line)
    lines.append("")
    lines.append(f"Indexed documents: {len(report['documents'])}")
    for document in report["documents"]:
        lines.append(f"  - {document['document_id']} → {document['payload_location']}")
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args.env)
    configure_logging(settings=settings.logging)
    configure_tracing(settings.service_name, settings.telemetry)

    if args.command == "demo":
        report = asyncio.run(run_demo(settings, _request(args)))
        print(json.dumps(report, indent=2, default=str) if args.json else _render_demo(report))
        return 0 if report["ingestion"]["failure"] is None else 1
    if args.command == "ingest":
        summary = asyncio.run(run_ingest(settings, _request(args)))
        print(json.dumps(summary, indent=2))
        return 0 if summary["failure"] is None else 1
    asyncio.run(run_service(settings, args.service, args.metrics_port))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
