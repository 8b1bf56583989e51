"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from bountyqueue.observability.logging import bind_worker_context, setup_logging
from bountyqueue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from bountyqueue.observability.tracing import create_span, get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_worker_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "create_span",
]
