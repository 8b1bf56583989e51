"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from bountyqueue.constants import (
    METRIC_DLQ_DEPTH,
    METRIC_DLQ_REPLAYED,
    METRIC_DLQ_SENT,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_SENT,
    METRIC_MESSAGES_CONSUMED,
    METRIC_MESSAGES_PRODUCED,
    METRIC_PRODUCE_LATENCY,
    METRIC_PRODUCE_RETRIES,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the queue layer.

    Collects metrics for:
    - Publishes, publish retries and publish latency
    - Consumed messages by outcome
    - Dead-letter escalations, replays and depth
    - Job submissions and terminal transitions
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.messages_produced = Counter(
            METRIC_MESSAGES_PRODUCED,
            "Total number of publish calls by outcome",
            ["topic", "status"],
            registry=self._registry,
        )

        self.produce_retries = Counter(
            METRIC_PRODUCE_RETRIES,
            "Total number of failed publish attempts that were retried",
            ["topic"],
            registry=self._registry,
        )

        self.produce_latency = Histogram(
            METRIC_PRODUCE_LATENCY,
            "Latency of a single broker publish in seconds",
            ["topic"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

        self.messages_consumed = Counter(
            METRIC_MESSAGES_CONSUMED,
            "Total number of consumed messages by handler outcome",
            ["topic", "outcome"],
            registry=self._registry,
        )

        self.dlq_sent = Counter(
            METRIC_DLQ_SENT,
            "Total number of messages escalated to a dead-letter topic",
            ["topic"],
            registry=self._registry,
        )

        self.dlq_replayed = Counter(
            METRIC_DLQ_REPLAYED,
            "Total number of dead letters replayed to their original topic",
            ["topic"],
            registry=self._registry,
        )

        self.dlq_depth = Gauge(
            METRIC_DLQ_DEPTH,
            "Untriaged dead letters seen by the DLQ handler",
            registry=self._registry,
        )

        self.jobs_sent = Counter(
            METRIC_JOBS_SENT,
            "Total number of jobs accepted by send",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of jobs reaching a terminal state",
            ["queue", "state"],
            registry=self._registry,
        )

    def record_produce(self, topic: str, success: bool, attempts: int) -> None:
        """Record the outcome of a publish including its retries."""
        self.messages_produced.labels(
            topic=topic, status="success" if success else "failure"
        ).inc()
        retries = attempts - 1
        if retries > 0:
            self.produce_retries.labels(topic=topic).inc(retries)

    def observe_produce_latency(self, topic: str, duration_seconds: float) -> None:
        """Record the latency of one broker publish attempt."""
        self.produce_latency.labels(topic=topic).observe(duration_seconds)

    def record_consumed(self, topic: str, outcome: str, count: int = 1) -> None:
        """Record consumed messages (outcome: processed, retried or dead_lettered)."""
        if count > 0:
            self.messages_consumed.labels(topic=topic, outcome=outcome).inc(count)

    def record_dlq_sent(self, topic: str) -> None:
        """Record a dead-letter escalation from a forward topic."""
        self.dlq_sent.labels(topic=topic).inc()

    def record_dlq_replayed(self, topic: str) -> None:
        """Record a replay back to a forward topic."""
        self.dlq_replayed.labels(topic=topic).inc()

    def update_dlq_depth(self, depth: int) -> None:
        """Update the dead-letter depth gauge."""
        self.dlq_depth.set(depth)

    def record_job_sent(self, queue: str) -> None:
        """Record an accepted job."""
        self.jobs_sent.labels(queue=queue).inc()

    def record_job_finished(self, queue: str, state: str) -> None:
        """Record a job reaching a terminal state."""
        self.jobs_finished.labels(queue=queue, state=state).inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, also expose the registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port, registry=_metrics._registry)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
