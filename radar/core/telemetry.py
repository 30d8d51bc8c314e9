from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging
from typing import Literal

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_INSTANCE_ID, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from radar.core.config import Settings

Role = Literal["api", "worker"]

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s%(radar_context)s %(message)s"
)
TRACES_PATH = "/v1/traces"
# Log context keys, in the order they are rendered.
LOG_CONTEXT_KEYS = ("search_term", "job_kind", "job_id")

logger = logging.getLogger(__name__)

_log_context: ContextVar[dict[str, str]] = ContextVar("radar_log_context", default={})
_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    role: Role
    provider: TracerProvider | None


@contextmanager
def bind_log_context(**fields: str) -> Iterator[None]:
    """Tag log lines emitted inside the block with pipeline identifiers.

    Unknown keys raise, so a typo cannot silently drop context. Nested blocks inherit
    and may override outer values.
    """
    unknown = set(fields) - set(LOG_CONTEXT_KEYS)
    if unknown:
        raise ValueError(f"unsupported log context keys: {sorted(unknown)}")
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


def current_log_context() -> dict[str, str]:
    return dict(_log_context.get())


def configure_logging(level: int = logging.INFO) -> None:
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def build_resource(settings: Settings, role: Role) -> Resource:
    attributes: dict[str, str] = {
        SERVICE_NAME: settings.otel_service_name,
        DEPLOYMENT_ENVIRONMENT: settings.environment,
        "radar.role": role,
        "radar.store_backend": settings.store_backend,
    }
    if role == "worker" and settings.worker_id:
        attributes[SERVICE_INSTANCE_ID] = settings.worker_id
    return Resource.create(attributes)


def setup_telemetry(settings: Settings, *, role: Role = "api") -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, role=role, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = TracerProvider(
        resource=build_resource(settings, role),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _HTTPX_INSTRUMENTOR.instrument()
    logger.info(
        "telemetry enabled role=%s sample_ratio=%.2f export=%s",
        role,
        settings.otel_trace_sample_ratio,
        exporter is not None,
    )
    return TelemetryRuntime(enabled=True, role=role, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def traces_endpoint(base_url: str) -> str:
    """OTLP/HTTP collector URL for spans; a bare collector base gets the traces path appended."""
    trimmed = base_url.rstrip("/")
    if trimmed.endswith(TRACES_PATH):
        return trimmed
    return trimmed + TRACES_PATH


def build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    # Only RADAR_OTEL_* settings decide where spans go.
    if not settings.otel_exporter_otlp_endpoint:
        logger.info("no OTLP endpoint configured; spans stay local for service=%s", settings.otel_service_name)
        return None
    return OTLPSpanExporter(
        endpoint=traces_endpoint(settings.otel_exporter_otlp_endpoint),
        headers=dict(settings.otel_exporter_otlp_headers) or None,
    )


def _render_log_context(context: dict[str, str]) -> str:
    return "".join(f" {key}={context[key]}" for key in LOG_CONTEXT_KEYS if key in context)


def _install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = format(span_context.trace_id, "032x")
            record.span_id = format(span_context.span_id, "016x")
        else:
            record.trace_id = "0" * 32
            record.span_id = "0" * 16
        record.radar_context = _render_log_context(_log_context.get())
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
