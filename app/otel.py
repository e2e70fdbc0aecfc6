"""Tracing for the API process.

The provider is created once per process and describes this service through
its resource (name, version and deployment environment from settings). Gate
and approval spans attach record, stage and approval ids through
``set_span_attributes``.
"""

from __future__ import annotations

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
from opentelemetry.trace import Span

from app.core.config import Settings, get_settings
from app.middleware.correlation_id import CORRELATION_HEADER, is_valid_correlation_id


_exporters_configured = False
_provider: TracerProvider | None = None


def service_resource(settings: Settings) -> Resource:
    return Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": settings.app_version,
            "deployment.environment": settings.app_env,
        }
    )


def _get_or_create_provider(settings: Settings) -> TracerProvider:
    global _provider

    if _provider is None:
        _provider = TracerProvider(resource=service_resource(settings))
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings | None = None) -> TracerProvider | None:
    global _exporters_configured

    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _get_or_create_provider(settings)
    if _exporters_configured:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_configured = True
    return provider


def setup_inmemory_otel(settings: Settings | None = None) -> InMemorySpanExporter:
    provider = _get_or_create_provider(settings or get_settings())
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def set_span_attributes(span: Span, **attributes: Any) -> None:
    """Set attributes, dropping ``None`` and stringifying ids."""
    for key, value in attributes.items():
        if value is None:
            continue
        if not isinstance(value, (str, bool, int, float)):
            value = str(value)
        span.set_attribute(key, value)


def get_fastapi_server_request_hook():
    header = CORRELATION_HEADER.encode("latin-1")

    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        raw = headers.get(header)
        if raw is None:
            return
        correlation_id = raw.decode("latin-1")
        if is_valid_correlation_id(correlation_id):
            span.set_attribute("correlation_id", correlation_id)

    return server_request_hook
