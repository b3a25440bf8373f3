"""
Distributed Tracing with OpenTelemetry.

Off unless TRACING_ENABLED=true. When on:
  - every HTTP request gets a server span (FastAPI instrumentation), except
    the /health and /metrics endpoints
  - every SQL statement gets a child span (SQLAlchemy instrumentation), which
    makes the conditional UPDATEs of deduct and confirm visible
  - each auto-confirmation tick runs in a manual "auto_confirm_tick" span

Spans are exported over OTLP/gRPC to OTLP_ENDPOINT.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from app.config import settings

# Health checks and scrapes would drown out real traffic
EXCLUDED_URLS = "health,metrics"

_provider: TracerProvider | None = None
_instrumented_engines: set[int] = set()


def setup_tracing() -> bool:
    """Install the global tracer provider once. Returns whether tracing is on."""
    global _provider
    if not settings.tracing_enabled:
        return False
    if _provider is not None:
        return True

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)
    _provider = provider
    return True


def instrument_fastapi(app: Any) -> None:
    """Server spans for every route except health and scrapes. Call after app creation."""
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)


def instrument_sqlalchemy(engine: Any) -> None:
    """Statement spans for an async engine; repeated calls for one engine are no-ops."""
    if not settings.tracing_enabled or id(engine) in _instrumented_engines:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    _instrumented_engines.add(id(engine))


def get_tracer(name: str) -> Tracer:
    """
    Tracer for manual spans. Returns a no-op tracer while tracing is off.

    Usage:
        tracer = get_tracer(__name__)
        with tracer.start_as_current_span("auto_confirm_tick") as span:
            add_span_attributes(span, scanned=3)
    """
    return trace.get_tracer(name)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """Set attributes, skipping None; UUIDs, datetimes and enums are stringified."""
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            span.set_attribute(key, value)
        else:
            span.set_attribute(key, str(value))


def set_span_error(span: Span, error: Exception) -> None:
    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)
