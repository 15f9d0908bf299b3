"""
OpenTelemetry tracing setup.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer

from orchestrator import __version__
from orchestrator.config import get_settings

logger = logging.getLogger(__name__)

TRACER_NAME = "orchestrator"


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Set up OpenTelemetry tracing.

    Installs the global tracer provider. Until this runs, spans from
    get_tracer() are no-ops.

    Args:
        enable_console_export: If True, also export spans to console.

    Returns:
        Tracer: The tracer instance.
    """
    settings = get_settings()

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
        }
    )
    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    except Exception:
        logger.warning(
            "OTLP exporter unavailable, spans will not be exported",
            exc_info=True,
            extra={"endpoint": settings.otel_exporter_otlp_endpoint},
        )

    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    return trace.get_tracer(TRACER_NAME)


def instrument_fastapi(app: Any) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: The FastAPI application instance.
    """
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Instrument SQLAlchemy engine with OpenTelemetry.

    Args:
        engine: The SQLAlchemy engine (sync_engine of an AsyncEngine).
    """
    SQLAlchemyInstrumentor().instrument(engine=engine)


def get_tracer() -> Tracer:
    """Get the orchestrator tracer from whatever provider is installed."""
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def job_span(name: str, queue: str, job_type: str, **attributes: Any) -> Iterator[Span]:
    """
    Open a span for one job operation.

    Attributes are recorded under the job. prefix; None values are skipped.
    """
    with get_tracer().start_as_current_span(name) as span:
        span.set_attribute("job.queue", queue)
        span.set_attribute("job.type", job_type)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"job.{key}", value)
        yield span
