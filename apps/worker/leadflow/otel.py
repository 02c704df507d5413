from __future__ import annotations

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span, Status, StatusCode

from leadflow.core.config import Settings

try:
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
except Exception:  # pragma: no cover - exporter is an optional extra
    OTLPSpanExporter = None  # type: ignore[assignment]


WORKER_SERVICE_NAME = "automation-worker"

_provider: TracerProvider | None = None
_exporters_attached = False


def _tracer_provider(service_name: str, settings: Settings | None = None) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    attributes = {"service.name": service_name, "service.namespace": "leadflow"}
    if settings is not None:
        attributes["service.version"] = settings.app_version
        attributes["deployment.environment"] = settings.app_env
    _provider = TracerProvider(resource=Resource.create(attributes))
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings, service_name: str = WORKER_SERVICE_NAME) -> TracerProvider | None:
    """Installs the worker's tracer provider and its exporters once per process."""
    global _exporters_attached

    if not settings.otel_enabled:
        return None

    provider = _tracer_provider(service_name, settings)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint and OTLPSpanExporter is not None:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def shutdown_otel() -> None:
    if _provider is not None:
        _provider.force_flush()
        _provider.shutdown()


def setup_inmemory_otel(service_name: str = WORKER_SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def mark_span_failed(span: Span, exc: BaseException, message: str | None = None) -> None:
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, message if message is not None else str(exc)))
