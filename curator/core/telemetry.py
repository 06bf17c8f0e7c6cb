from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_NAMESPACE, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from curator.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16

_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    service_name: str
    provider: TracerProvider | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging(settings: Settings | None = None) -> None:
    """Install trace-correlated log records and a root handler if none exists."""
    _install_log_correlation()
    root = logging.getLogger()
    level = logging.getLevelName(settings.log_level.upper()) if settings is not None else logging.INFO
    if not isinstance(level, int):
        level = logging.INFO
    if root.handlers:
        root.setLevel(level)
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, *, service_suffix: str | None = None) -> TelemetryRuntime:
    service_name = settings.otel_service_name
    if service_suffix:
        service_name = f"{service_name}-{service_suffix}"
    if not settings.otel_enabled:
        return TelemetryRuntime(service_name=service_name)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: service_name,
                SERVICE_NAMESPACE: settings.app_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
                "curator.ai_model": settings.ai_model,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    endpoint = _exporter_endpoint(settings)
    if endpoint:
        headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logging.getLogger(__name__).info("no OTLP endpoint configured; spans for %s stay in-process", service_name)
    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(service_name=service_name, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    _httpx_instrumentor.uninstrument()
    runtime.provider.force_flush()
    runtime.provider.shutdown()


def set_job_attributes(span: trace.Span, *, kind: str, job_id: str, **extra: Any) -> None:
    """Tag a span with the job it is working on; ``None`` values are skipped."""
    span.set_attribute("job.kind", kind)
    span.set_attribute("job.id", job_id)
    for key, value in extra.items():
        if value is not None:
            span.set_attribute(f"job.{key}", value)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` as used by OTEL_EXPORTER_OTLP_HEADERS."""
    headers: dict[str, str] = {}
    for pair in (raw or "").split(","):
        key, separator, value = pair.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _exporter_endpoint(settings: Settings) -> str | None:
    return (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or None
    )


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else _EMPTY_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else _EMPTY_SPAN_ID
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
