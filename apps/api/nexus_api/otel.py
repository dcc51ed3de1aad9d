from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span, Tracer

from nexus_api.context import get_correlation_id, get_tenant_id
from nexus_api.core.config import Settings, get_settings


_provider: TracerProvider | None = None
_exporters_attached = False


def _tracer_provider(service_name: str, version: str) -> TracerProvider:
    global _provider
    if _provider is None:
        _provider = TracerProvider(resource=Resource.create({"service.name": service_name, "service.version": version}))
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(settings: Settings | None = None) -> TracerProvider | None:
    """Install the SDK provider once and attach the exporters named in settings."""
    global _exporters_attached
    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _tracer_provider(settings.app_name, settings.app_version)
    if _exporters_attached:
        return provider
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "nexus-ai") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name, get_settings().app_version).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@contextmanager
def ai_span(tracer: Tracer, name: str, **attributes: Any) -> Iterator[Span]:
    """Span tagged with the request's tenant and correlation id plus any non-null attributes."""
    with tracer.start_as_current_span(name) as span:
        attributes.setdefault("tenant_id", get_tenant_id())
        attributes.setdefault("correlation_id", get_correlation_id())
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def server_request_hook(span: Span | None, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers", []))
    for header, attribute in ((b"x-correlation-id", "correlation_id"), (b"x-tenant-id", "tenant_id")):
        raw = headers.get(header)
        if raw:
            span.set_attribute(attribute, raw.decode("utf-8"))
