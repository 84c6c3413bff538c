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
from opentelemetry.trace import Span, Status, StatusCode

from gestionale.context import get_correlation_id
from gestionale.core.config import Settings, get_settings
from gestionale.middleware.correlation_id import is_valid_correlation_id


_configured = False
_provider: TracerProvider | None = None


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    provider = _provider
    if provider is not None:
        return provider

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": "0.1.0",
        }
    )
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def setup_otel(settings: Settings | None = None) -> TracerProvider | None:
    """Register exporters once, as configured by ``OTEL_*`` settings. No-op when tracing is off."""
    global _configured

    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _get_or_create_provider(settings.otel_service_name)
    if _configured:
        return provider

    if settings.otel_exporter_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider



def setup_inmemory_otel(service_name: str = "gestionale-api") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@contextmanager
def pipeline_span(name: str, **attributes: Any) -> Iterator[Span]:
    """Span around one pipeline action, marked as error when the block raises."""
    tracer = trace.get_tracer("gestionale.crm.pipeline")
    with tracer.start_as_current_span(name) as span:
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, str(value))
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)[:200]))
            raise


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None:
            return
        raw = dict(scope.get("headers", [])).get(b"x-correlation-id", b"").decode("latin-1")
        if raw and is_valid_correlation_id(raw):
            span.set_attribute("correlation_id", raw)

    return server_request_hook
