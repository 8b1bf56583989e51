"""
Queue client facade.

Bundles a Producer and a Consumer over one broker connection and adds typed
helpers for the marketplace topics plus a connectivity check.
"""

import json
import logging
import time
from collections.abc import Sequence

from bountyqueue.broker.client import BrokerClient, create_broker
from bountyqueue.config import Settings, get_settings
from bountyqueue.constants import Topic
from bountyqueue.consumer import Consumer, MessageHandler
from bountyqueue.producer import BatchEntry, ProduceOptions, Producer
from bountyqueue.types.envelope import Envelope, now_ms
from bountyqueue.types.messages import (
    AgentExecutionMessage,
    AgentResultMessage,
    NotificationMessage,
)
from bountyqueue.types.results import (
    BatchProcessResult,
    ConsumeResult,
    HealthStatus,
    ProduceResult,
)

logger = logging.getLogger(__name__)

HEALTH_CHECK_KEY = "health-check"


class QueueClient:
    """High-level entry point for publishing and consuming queue messages."""

    def __init__(
        self,
        broker: BrokerClient | None = None,
        producer: Producer | None = None,
        consumer: Consumer | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()

        self._broker = broker if broker is not None else create_broker(settings)
        self.producer = producer or Producer(broker=self._broker, settings=settings)
        self.consumer = consumer or Consumer(
            broker=self._broker,
            producer=self.producer,
            settings=settings,
        )

    def is_available(self) -> bool:
        """Whether a broker client is configured."""
        return self._broker is not None

    async def produce(
        self,
        topic: Topic,
        data: object,
        options: ProduceOptions | None = None,
    ) -> ProduceResult:
        return await self.producer.produce(topic, data, options)

    async def produce_batch(self, entries: Sequence[BatchEntry]) -> list[ProduceResult]:
        return await self.producer.produce_batch(entries)

    async def consume(self, topic: Topic, max_messages: int | None = None) -> ConsumeResult:
        return await self.consumer.consume(topic, max_messages=max_messages)

    async def process_messages(
        self,
        topic: Topic,
        handler: MessageHandler,
        max_messages: int | None = None,
    ) -> BatchProcessResult:
        """Process one batch sequentially with retry and DLQ escalation."""
        return await self.consumer.process_batch(topic, handler, batch_size=max_messages)

    async def send_to_dlq(self, envelope: Envelope, error_reason: str) -> ProduceResult:
        return await self.producer.send_to_dlq(envelope, error_reason)

    async def queue_agent_execution(self, job: AgentExecutionMessage) -> ProduceResult:
        """Queue an agent run against a bounty."""
        key = f"exec-{job.agent_id}-{job.bounty_id}-{now_ms()}"
        return await self.producer.produce(
            Topic.AGENT_EXECUTION_QUEUE,
            job.model_dump(mode="json", by_alias=True, exclude_none=True),
            ProduceOptions(idempotency_key=key),
        )

    async def queue_agent_result(self, result: AgentResultMessage) -> ProduceResult:
        """Publish the outcome of an agent run; one key per execution."""
        return await self.producer.produce(
            Topic.AGENT_RESULTS_QUEUE,
            result.model_dump(mode="json", by_alias=True, exclude_none=True),
            ProduceOptions(idempotency_key=f"result-{result.execution_id}"),
        )

    async def queue_notification(self, notification: NotificationMessage) -> ProduceResult:
        """Queue an email, webhook or alert notification."""
        key = f"notif-{notification.type}-{notification.recipient}-{now_ms()}"
        return await self.producer.produce(
            Topic.NOTIFICATIONS_QUEUE,
            notification.model_dump(mode="json", by_alias=True, exclude_none=True),
            ProduceOptions(idempotency_key=key),
        )

    async def health_check(self) -> HealthStatus:
        """
        Verify broker connectivity with one probe publish.

        The probe is not an envelope, so consumers skip it as malformed.
        """
        if self._broker is None:
            return HealthStatus(connected=False, latency_ms=0, error="Kafka client not configured")

        start = time.perf_counter()
        try:
            await self._broker.produce(
                Topic.AGENT_EXECUTION_QUEUE,
                json.dumps({"type": HEALTH_CHECK_KEY, "timestamp": now_ms()}),
                key=HEALTH_CHECK_KEY,
            )
        except Exception as e:
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.warning("Broker health check failed", extra={"error": str(e)})
            return HealthStatus(connected=False, latency_ms=latency_ms, error=str(e) or type(e).__name__)

        return HealthStatus(connected=True, latency_ms=int((time.perf_counter() - start) * 1000))

    async def get_consumer_lag(self, topic: Topic, group_id: str) -> int | None:
        """Consumer lag is not exposed by the REST API."""
        return None
