"""
Structured logging setup using structlog.

Library modules log through the standard library (``logging.getLogger``) with
``extra={...}`` fields; setup_logging routes those records through structlog
so they come out as JSON (or colored console lines) with queue context attached.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from bountyqueue.config import get_settings


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Add OpenTelemetry trace context to log records.

    Args:
        logger: The logger instance.
        method_name: The method name being called.
        event_dict: The event dictionary.

    Returns:
        The event dictionary with trace context added.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def add_service_name(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag every record with the configured service name."""
    event_dict.setdefault("service", get_settings().otel_service_name)
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging for the worker and monitor processes.

    Sets up structlog with JSON or console output based on configuration and
    installs it as the formatter of the root standard library logger.
    """
    settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        add_service_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    if settings.log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # Per-request broker chatter
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def bind_worker_context(worker_id: str, queue: str) -> None:
    """
    Bind worker identity to all subsequent log records of the current task.

    Args:
        worker_id: The job worker id.
        queue: The queue name the worker serves.
    """
    structlog.contextvars.bind_contextvars(worker_id=worker_id, queue=queue)
