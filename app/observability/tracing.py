"""
Distributed Tracing with OpenTelemetry.

Spans cover HTTP requests, SQL queries and each reconciliation pass
(checkout ingestion, webhook application, sync item, product gating).
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

from app.config import settings

_TRACER_NAME = "app.reconciliation"
_configured = False


def setup_tracing() -> None:
    """Install the OTLP-exporting tracer provider once per process."""
    global _configured
    if not settings.tracing_enabled or _configured:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.tracing_sample_ratio)),
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)
    _configured = True


def instrument_fastapi(app: Any) -> None:
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics,health")


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace queries on an async engine (instrumented through its sync core)."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def span_attribute(value: Any) -> str | int | float | bool:
    """OTel accepts primitives only; scope keys and enums go in as strings."""
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a current span named ``reconcile.<operation_name>``.

        with trace_operation("state_merge", purchase_id=12) as span:
            span.set_attribute("scopes_changed", 1)

    Exceptions are recorded on the span and re-raised.
    """
    tracer = trace.get_tracer(_TRACER_NAME)
    with tracer.start_as_current_span(
        f"reconcile.{operation_name}",
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, span_attribute(value))
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise
