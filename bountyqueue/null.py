"""
Disabled stand-ins for the queue components.

Returned by the factory while the queue feature flag is off. Every method
answers with a deterministic "disabled" result and never touches a broker or
raises.
"""

from collections.abc import Sequence
from typing import Any

from bountyqueue.constants import (
    DEFAULT_DLQ_TOPIC,
    ERROR_QUEUE_DISABLED,
    Topic,
)
from bountyqueue.consumer import PollingHandle
from bountyqueue.producer import BatchEntry, RetryConfig
from bountyqueue.types.envelope import DLQMessage, Envelope
from bountyqueue.types.job import JobWithMetadata
from bountyqueue.types.results import (
    AlertCheckResult,
    BatchProcessResult,
    ConsumeResult,
    DLQProcessResult,
    DLQStats,
    HealthStatus,
    ProduceResult,
    ReplayResult,
)

NULL_WORKER_ID = "null-worker"


def _disabled(topic: str) -> ProduceResult:
    return ProduceResult(success=False, topic=topic, error=ERROR_QUEUE_DISABLED)


class NullProducer:
    """Producer that reports every publish as disabled."""

    def is_ready(self) -> bool:
        return False

    def get_retry_config(self) -> RetryConfig:
        return RetryConfig(max_retries=0)

    async def produce(self, topic: Topic, data: Any, options: Any = None) -> ProduceResult:
        return _disabled(topic)

    async def produce_once(self, topic: Topic, data: Any, options: Any = None) -> ProduceResult:
        return _disabled(topic)

    async def produce_batch(self, entries: Sequence[BatchEntry]) -> list[ProduceResult]:
        return [_disabled(entry.topic) for entry in entries]

    async def publish(self, envelope: Envelope, options: Any = None, max_attempts: int | None = None) -> ProduceResult:
        return _disabled(envelope.topic)

    async def send_to_dlq(self, envelope: Envelope, error_reason: str, original_topic: Topic | None = None) -> ProduceResult:
        return _disabled(DEFAULT_DLQ_TOPIC)


class NullConsumer:
    """Consumer that returns empty batches and never polls."""

    def is_ready(self) -> bool:
        return False

    async def consume(self, topic: Topic, max_messages: int | None = None) -> ConsumeResult:
        return ConsumeResult(messages=[], error=ERROR_QUEUE_DISABLED)

    async def consume_batch(self, topic: Topic, batch_size: int | None = None) -> ConsumeResult:
        return ConsumeResult(messages=[], error=ERROR_QUEUE_DISABLED)

    async def process_batch(self, topic: Topic, handler: Any, batch_size: int | None = None) -> BatchProcessResult:
        return BatchProcessResult()

    async def process_parallel_batch(
        self,
        topic: Topic,
        handler: Any,
        batch_size: int | None = None,
        concurrency: int | None = None,
    ) -> BatchProcessResult:
        return BatchProcessResult()

    async def start_polling(self, topic: Topic, handler: Any, **kwargs: Any) -> PollingHandle:
        """Return a handle that is already stopped; no loop is started."""
        handle = PollingHandle(topic)
        handle.stop()
        return handle


class NullDeadLetterQueueHandler:
    """DLQ handler with empty stats and no-op replays."""

    def is_ready(self) -> bool:
        return False

    async def fetch_messages(self, max_messages: int | None = None) -> list[DLQMessage]:
        return []

    async def get_stats(self, max_messages: int | None = None) -> DLQStats:
        return DLQStats()

    async def replay_message(self, message: DLQMessage) -> ReplayResult:
        return ReplayResult(success=False, error=ERROR_QUEUE_DISABLED)

    async def replay_messages(self, messages: list[DLQMessage]) -> DLQProcessResult:
        return DLQProcessResult()

    async def replay_filtered(self, predicate: Any, max_messages: int | None = None) -> DLQProcessResult:
        return DLQProcessResult()

    async def replay_by_topic(self, topic: Topic, max_messages: int | None = None) -> DLQProcessResult:
        return DLQProcessResult()

    async def replay_by_time_window(
        self,
        start_time: int,
        end_time: int,
        max_messages: int | None = None,
    ) -> DLQProcessResult:
        return DLQProcessResult()

    async def process_messages(self, handler: Any, max_messages: int | None = None) -> DLQProcessResult:
        return DLQProcessResult()

    async def check_alert_thresholds(
        self,
        max_messages: int | None = None,
        max_age_ms: int | None = None,
    ) -> AlertCheckResult:
        return AlertCheckResult(alert=False)


class NullJobQueue:
    """Job queue that is never available and stores nothing."""

    def is_available(self) -> bool:
        return False

    async def start(self) -> "NullJobQueue":
        return self

    async def stop(self, graceful: bool = True, timeout: float = 5.0) -> None:
        return None

    async def send(self, name: str, data: Any, options: Any = None) -> str | None:
        return None

    async def fetch(self, name: str, options: Any = None) -> list:
        return []

    async def work(self, name: str, handler: Any, options: Any = None) -> str:
        return NULL_WORKER_ID

    async def off_work(self, name: str | None = None, worker_id: str | None = None) -> int:
        return 0

    async def complete(self, name: str, job_id: str, data: Any = None) -> bool:
        return False

    async def fail(self, name: str, job_id: str, data: Any = None) -> bool:
        return False

    async def cancel(self, name: str, job_ids: Any) -> int:
        return 0

    async def get_job_by_id(self, name: str, job_id: str) -> JobWithMetadata | None:
        return None


class NullQueueClient:
    """Queue client wired to the null components."""

    def __init__(self) -> None:
        self.producer = NullProducer()
        self.consumer = NullConsumer()

    def is_available(self) -> bool:
        return False

    async def produce(self, topic: Topic, data: Any, options: Any = None) -> ProduceResult:
        return _disabled(topic)

    async def produce_batch(self, entries: Sequence[BatchEntry]) -> list[ProduceResult]:
        return [_disabled(entry.topic) for entry in entries]

    async def consume(self, topic: Topic, max_messages: int | None = None) -> ConsumeResult:
        return ConsumeResult(messages=[], error=ERROR_QUEUE_DISABLED)

    async def process_messages(self, topic: Topic, handler: Any, max_messages: int | None = None) -> BatchProcessResult:
        return BatchProcessResult()

    async def send_to_dlq(self, envelope: Envelope, error_reason: str) -> ProduceResult:
        return _disabled(DEFAULT_DLQ_TOPIC)

    async def queue_agent_execution(self, job: Any) -> ProduceResult:
        return _disabled(Topic.AGENT_EXECUTION_QUEUE)

    async def queue_agent_result(self, result: Any) -> ProduceResult:
        return _disabled(Topic.AGENT_RESULTS_QUEUE)

    async def queue_notification(self, notification: Any) -> ProduceResult:
        return _disabled(Topic.NOTIFICATIONS_QUEUE)

    async def health_check(self) -> HealthStatus:
        return HealthStatus(connected=False, latency_ms=0, error=ERROR_QUEUE_DISABLED)

    async def get_consumer_lag(self, topic: Topic, group_id: str) -> int | None:
        return None
