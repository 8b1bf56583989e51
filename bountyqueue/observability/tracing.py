"""
OpenTelemetry tracing setup.
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer

from bountyqueue import __version__
from bountyqueue.config import get_settings

logger = logging.getLogger(__name__)

# Global tracer instance
_tracer: Tracer | None = None


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Set up OpenTelemetry tracing with an OTLP exporter.

    Called by the long-running processes. Library code only calls get_tracer.

    Args:
        enable_console_export: If True, also export spans to console.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

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
    except Exception as e:
        logger.warning(f"OTLP exporter unavailable, spans stay local: {e}")

    if enable_console_export:
        provider.add_span_processor(
            BatchSpanProcessor(ConsoleSpanExporter())
        )

    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(settings.otel_service_name)

    return _tracer


def get_tracer() -> Tracer:
    """
    Get the tracer instance.

    Before setup_tracing runs this is the API's proxy tracer, which records
    nothing until a provider is installed.

    Returns:
        Tracer: The tracer instance.
    """
    if _tracer is None:
        return trace.get_tracer(get_settings().otel_service_name)
    return _tracer


def create_span(name: str, **attributes: Any) -> Any:
    """
    Start a span with the given name and non-None attributes.

    Args:
        name: Span name.
        **attributes: Span attributes.

    Returns:
        A context manager for the span.
    """
    cleaned = {key: str(value) for key, value in attributes.items() if value is not None}
    return get_tracer().start_as_current_span(name, attributes=cleaned)
