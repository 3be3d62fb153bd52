from __future__ import annotations

import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from ResearchEx import cli
from ResearchEx.config.settings import PipelineSettings
from ResearchEx.orchestration import BatchRequest


@pytest.fixture
def quiet_cli(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setattr(cli, "configure_logging", lambda **_: None)
    monkeypatch.setattr(cli, "configure_tracing", lambda *_: None)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))
    yield
    structlog.reset_defaults()


@pytest.mark.asyncio
async def test_run_demo_reports_every_event(settings: PipelineSettings) -> None:
    request = BatchRequest(tenant_id="tenant-x", batch_id="batch-100", source_system="cdw", record_count=1500)

    report = await cli.run_demo(settings, request)

    assert report["ingestion"]["stages"] == ["RECEIVED", "VALIDATED", "PERSISTED"]
    assert report["ingestion"]["failure"] is None
    assert [event["stage"] for event in report["events"]] == [
        "RECEIVED",
        "VALIDATED",
        "PERSISTED",
        "REQUESTED",
        "RUNNING",
        "COMPLETED",
    ]
    assert len(report["documents"]) == 1
    assert report["documents"][0]["payload_location"] == report["events"][-1]["quantity"]


def test_demo_command_prints_json(quiet_cli: None, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = cli.main(
        ["demo", "--tenant", "tenant-x", "--batch", "batch-100", "--records", "1500", "--with-sample-records", "--json"]
    )

    report = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert report["ingestion"]["run_id"] == "batch-100"
    assert report["events"][-1]["stage"] == "COMPLETED"


def test_demo_command_fails_for_out_of_range_count(
    quiet_cli: None, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.main(["demo", "--tenant", "tenant-x", "--batch", "batch-100", "--records", "5000001"])

    output = capsys.readouterr().out
    assert exit_code == 1
    assert "FAILED" in output
    assert "Batch record count 5,000,001 exceeds the maximum of 5,000,000" in output


def test_parser_accepts_serve_targets() -> None:
    args = cli.build_parser().parse_args(["serve", "indexer", "--metrics-port", "9102"])

    assert args.service == "indexer"
    assert args.metrics_port == 9102


def test_parser_rejects_unknown_service() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["serve", "search"])
