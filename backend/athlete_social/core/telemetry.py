"""Tracing and log correlation for the storage layer.

Log records carry the active trace/span ids and the requester the current
operation runs for, so a policy denial or counter repair can be tied back to
both the request trace and the identity that triggered it.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from athlete_social.core.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s "
    "trace_id=%(trace_id)s span_id=%(span_id)s requester_id=%(requester_id)s %(message)s"
)

_current_requester: ContextVar[str | None] = ContextVar("athlete_social_requester", default=None)
_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    provider: TracerProvider | None = None
    httpx_instrumented: bool = False

    @property
    def enabled(self) -> bool:
        return self.provider is not None


@contextmanager
def requester_context(requester_id: str | None) -> Iterator[None]:
    """Bind the requester to log records and spans emitted inside the block."""
    token = _current_requester.set(requester_id)
    try:
        yield
    finally:
        _current_requester.reset(token)


@contextmanager
def storage_span(name: str, **attributes: Any) -> Iterator[trace.Span]:
    span_attributes = {
        f"athlete_social.{key}": value for key, value in attributes.items() if value is not None
    }
    requester_id = _current_requester.get()
    if requester_id:
        span_attributes.setdefault("athlete_social.requester_id", requester_id)
    tracer = trace.get_tracer("athlete_social.storage")
    with tracer.start_as_current_span(name, attributes=span_attributes) as span:
        yield span


def configure_logging(level: int = logging.INFO) -> None:
    install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if settings.otel_log_correlation:
        install_log_correlation()
    if not settings.otel_enabled:
        return TelemetryRuntime()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    endpoint = _exporter_endpoint(settings)
    if endpoint:
        headers = _parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logger.info("no OTLP endpoint configured; spans stay in process service=%s", settings.otel_service_name)

    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument()
    return TelemetryRuntime(provider=provider, httpx_instrumented=True)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.httpx_instrumented:
        _httpx_instrumentor.uninstrument()
        runtime.httpx_instrumented = False
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()
        runtime.provider = None


def install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        span_context = trace.get_current_span().get_span_context()
        record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else "-"
        record.span_id = format(span_context.span_id, "016x") if span_context.is_valid else "-"
        record.requester_id = _current_requester.get() or "-"
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True


def _exporter_endpoint(settings: Settings) -> str | None:
    return (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )


def _parse_headers(raw: str | None) -> dict[str, str]:
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}
