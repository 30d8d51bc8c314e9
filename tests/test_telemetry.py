from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from radar.core import telemetry
from radar.core.events import EventChannel
from radar.core.telemetry import (
    bind_log_context,
    build_exporter,
    build_resource,
    configure_logging,
    current_log_context,
    setup_telemetry,
    traces_endpoint,
)
from radar.schemas.jobs import QueueJob
from radar.services.queue import SmartQueueManager
from radar.services.store import InMemoryStore
from tests.fakes import FakeClock, make_settings


def test_resource_describes_role_and_worker_instance() -> None:
    settings = make_settings(environment="staging", worker_id="worker-7", store_backend="memory")

    worker = build_resource(settings, "worker").attributes
    api = build_resource(settings, "api").attributes

    assert worker["service.name"] == "engagement-radar"
    assert worker["deployment.environment"] == "staging"
    assert worker["radar.role"] == "worker"
    assert worker["radar.store_backend"] == "memory"
    assert worker["service.instance.id"] == "worker-7"
    assert api["radar.role"] == "api"
    assert "service.instance.id" not in api


def test_disabled_telemetry_keeps_role() -> None:
    runtime = setup_telemetry(make_settings(), role="worker")
    assert runtime.enabled is False
    assert runtime.role == "worker"
    assert runtime.provider is None


def test_traces_endpoint_appends_path_once() -> None:
    assert traces_endpoint("http://collector:4318") == "http://collector:4318/v1/traces"
    assert traces_endpoint("http://collector:4318/") == "http://collector:4318/v1/traces"
    assert traces_endpoint("http://collector:4318/v1/traces") == "http://collector:4318/v1/traces"


def test_exporter_only_uses_radar_settings(monkeypatch) -> None:
    created: list[dict[str, Any]] = []

    class RecordingExporter:
        def __init__(self, **kwargs: Any) -> None:
            created.append(kwargs)

    monkeypatch.setattr(telemetry, "OTLPSpanExporter", RecordingExporter)
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://ambient:4318")

    assert build_exporter(make_settings()) is None
    assert created == []

    build_exporter(
        make_settings(
            otel_exporter_otlp_endpoint="https://otel.example",
            otel_exporter_otlp_headers={"x-api-key": "secret"},
        )
    )
    build_exporter(make_settings(otel_exporter_otlp_endpoint="https://otel.example/v1/traces"))

    assert created == [
        {"endpoint": "https://otel.example/v1/traces", "headers": {"x-api-key": "secret"}},
        {"endpoint": "https://otel.example/v1/traces", "headers": None},
    ]


def test_headers_setting_reads_json_from_env(monkeypatch) -> None:
    monkeypatch.setenv("RADAR_OTEL_EXPORTER_OTLP_HEADERS", '{"authorization": "Bearer abc"}')
    assert make_settings().otel_exporter_otlp_headers == {"authorization": "Bearer abc"}


def test_log_context_nests_and_resets(caplog) -> None:
    configure_logging()
    log = logging.getLogger("radar.tests.telemetry")

    with caplog.at_level(logging.INFO, logger="radar.tests.telemetry"):
        log.info("outside")
        with bind_log_context(search_term="Revenue Operations"):
            with bind_log_context(job_kind="discover", job_id="job-1"):
                log.info("inner")
            log.info("outer")
        log.info("after")

    rendered = [record.radar_context for record in caplog.records]
    assert rendered == [
        "",
        " search_term=Revenue Operations job_kind=discover job_id=job-1",
        " search_term=Revenue Operations",
        "",
    ]
    assert current_log_context() == {}


def test_log_context_rejects_unknown_keys() -> None:
    with pytest.raises(ValueError):
        with bind_log_context(term="SDR"):
            pass


def test_processed_jobs_are_logged_with_job_context(caplog) -> None:
    configure_logging()
    clock = FakeClock()
    store = InMemoryStore()
    seen: list[dict[str, str]] = []

    async def handler(job: QueueJob) -> dict[str, Any]:
        seen.append(current_log_context())
        return {}

    manager = SmartQueueManager(
        store, EventChannel(), worker_id="worker-a", clock=clock, handler=handler, memory_sampler=lambda: 10.0
    )

    async def run() -> QueueJob:
        job = await manager.add_job("export", {})
        await manager.tick()
        return job

    with caplog.at_level(logging.INFO, logger="radar.services.queue"):
        job = asyncio.run(run())

    assert seen == [{"job_kind": "export", "job_id": job.id}]
    completed = [record for record in caplog.records if record.getMessage().startswith("job completed")]
    assert completed
    assert completed[0].radar_context == f" job_kind=export job_id={job.id}"
