"""
Distributed Tracing with OpenTelemetry.

Spans cover HTTP requests, SQL statements and each sweep tick. Everything here
is a no-op unless TRACING_ENABLED is set; `trace_operation` then runs against
the default non-recording tracer.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode, Tracer
from sqlalchemy.ext.asyncio import AsyncEngine

from psychic_metering.config import settings

OPERATIONS_TRACER = "psychic_metering.operations"


def setup_tracing() -> None:
    """Install the global tracer provider, exporting over OTLP/gRPC."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": settings.service_name, "service.version": settings.api_version}
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: FastAPI) -> None:
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: AsyncEngine) -> None:
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """Set attributes on a span, skipping None and stringifying UUIDs and the like."""
    for key, value in attributes.items():
        if value is None:
            continue
        if not isinstance(value, (str, int, float, bool)):
            value = str(value)
        span.set_attribute(key, value)


@contextmanager
def trace_operation(
    operation_name: str, tracer: Tracer | None = None, **attributes: Any
) -> Iterator[Span]:
    """
    Run a block inside a current span, marking the span failed if the block raises.

    Usage:
        with trace_operation("sweep.paid_deduction", candidates=12) as span:
            span.set_attribute("processed", 10)
    """
    tracer = tracer or trace.get_tracer(OPERATIONS_TRACER)
    with tracer.start_as_current_span(
        operation_name, record_exception=False, set_status_on_exception=False
    ) as span:
        add_span_attributes(span, **attributes)
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise
