from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from podping_ingest.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
ZERO_TRACE_ID = "0" * 32
ZERO_SPAN_ID = "0" * 16

logger = logging.getLogger(__name__)
_default_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    """Tracing state for one process component (``api`` or ``worker``)."""

    component: str
    provider: TracerProvider | None = None
    app: FastAPI | None = field(default=None, repr=False)

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def shutdown(self) -> None:
        if self.provider is None:
            return
        if self.app is not None:
            FastAPIInstrumentor.uninstrument_app(self.app)
        else:
            _httpx_instrumentor.uninstrument()
        self.provider.force_flush()
        self.provider.shutdown()
        self.provider = None


def configure_logging(level: str = "INFO") -> None:
    # trace ids are needed by LOG_FORMAT even when tracing is off
    _install_trace_ids_on_records()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def setup_telemetry(settings: Settings, *, component: str, app: FastAPI | None = None) -> TelemetryRuntime:
    """Install a tracer provider for ``component``.

    The API instruments its FastAPI app; the worker instruments httpx so ledger
    and feed requests show up under the poll and dispatch spans.
    """
    if not settings.otel_enabled:
        return TelemetryRuntime(component=component, app=app)

    if settings.otel_log_correlation:
        _install_trace_ids_on_records()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: f"{settings.otel_service_name}-{component}",
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = _otlp_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    else:
        _httpx_instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(component=component, provider=provider, app=app)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` as used by ``OTEL_EXPORTER_OTLP_HEADERS``."""
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _otlp_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; spans for %s stay in-process", settings.otel_service_name)
        return None

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def _install_trace_ids_on_records() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _default_record_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else ZERO_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else ZERO_SPAN_ID
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
