"""
Distributed Tracing with OpenTelemetry.

Ledger mutations, webhook events and admin overrides each run inside a span
named after the operation ("ledger.deduct", "webhook.invoice.paid",
"admin.apply_override"). FastAPI request spans wrap them and SQLAlchemy
query spans nest beneath them.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any
from uuid import UUID

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from app.config import settings

TRACER_NAME = "app.ledger"


def setup_tracing() -> None:
    """Install an OTLP-exporting tracer provider when tracing is enabled."""
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


def instrument_fastapi(app: Any) -> None:
    """Trace every HTTP request handled by the application."""
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace every statement issued through an async engine."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def _attribute_value(value: Any) -> str | int | float | bool:
    # Span attributes only accept primitives
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


@contextmanager
def trace_operation(name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a named span; exceptions mark the span as failed.

    Usage:
        with trace_operation("ledger.deduct", user_id=user_id, amount=5) as span:
            ...
            span.set_attribute("outcome", "insufficient")
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(
        name, record_exception=False, set_status_on_exception=False
    ) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, _attribute_value(value))
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise
