"""
Producer with capped exponential backoff.

Every publish wraps the caller's data in an Envelope and retries transient
broker failures with the delays 1s, 2s, 4s, 8s (the last value repeats), up to
max_retries attempts. Failures are reported as ProduceResult data, never raised.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from bountyqueue.broker.client import BrokerClient, create_broker
from bountyqueue.config import Settings, get_settings
from bountyqueue.constants import (
    ERROR_PRODUCER_NOT_CONFIGURED,
    SPAN_PRODUCE_MESSAGE,
    Topic,
    dead_letter_topic,
)
from bountyqueue.observability.metrics import get_metrics
from bountyqueue.observability.tracing import create_span
from bountyqueue.types.envelope import (
    DeadLetterRecord,
    Envelope,
    generate_message_id,
    now_ms,
)
from bountyqueue.types.results import ProduceResult

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass
class ProduceOptions:
    """Per-publish options forwarded to the envelope and the broker."""

    idempotency_key: str | None = None
    key: str | None = None
    partition: int | None = None
    headers: dict[str, str] | None = None


@dataclass
class BatchEntry:
    """One entry of a produce_batch call."""

    topic: Topic
    data: Any
    options: ProduceOptions | None = None


@dataclass
class RetryConfig:
    """Snapshot of a producer's retry policy."""

    max_retries: int
    retry_delays_ms: list[int] = field(default_factory=list)


class Producer:
    """
    Publishes envelopes to broker topics.

    Features:
    - Capped exponential backoff between attempts
    - Concurrent batch publishing with per-entry results
    - Single-attempt publishing for callers that own their retry policy
    - Dead-letter publishing for exhausted messages
    """

    def __init__(
        self,
        broker: BrokerClient | None = None,
        max_retries: int | None = None,
        retry_delays_ms: Sequence[int] | None = None,
        settings: Settings | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """
        Initialize the producer.

        Args:
            broker: Broker client. Built from settings when omitted; the
                producer is unconfigured if credentials are missing.
            max_retries: Attempts per publish (default 5).
            retry_delays_ms: Backoff table in milliseconds (default 1s, 2s, 4s, 8s).
            settings: Settings override.
            sleep: Coroutine used to wait between attempts.
        """
        settings = settings or get_settings()

        self._broker = broker if broker is not None else create_broker(settings)
        self.max_retries = max(1, max_retries or settings.producer_max_retries)
        self.retry_delays_ms = list(retry_delays_ms or settings.producer_retry_delays_ms)
        self._sleep = sleep
        self._metrics = get_metrics()

    def is_ready(self) -> bool:
        """Whether a broker client is configured."""
        return self._broker is not None

    def get_retry_config(self) -> RetryConfig:
        """Get the current retry configuration."""
        return RetryConfig(
            max_retries=self.max_retries,
            retry_delays_ms=list(self.retry_delays_ms),
        )

    def get_retry_delay(self, attempt: int) -> float:
        """
        Delay in seconds to wait after a failed attempt.

        Args:
            attempt: Zero-based index of the attempt that failed.
        """
        index = min(attempt, len(self.retry_delays_ms) - 1)
        return self.retry_delays_ms[index] / 1000

    def build_envelope(
        self,
        topic: Topic,
        data: Any,
        options: ProduceOptions | None = None,
    ) -> Envelope:
        """Wrap data in a fresh envelope."""
        return Envelope(
            id=generate_message_id(),
            topic=topic,
            data=data,
            timestamp=now_ms(),
            retry_count=0,
            idempotency_key=options.idempotency_key if options else None,
        )

    async def produce(
        self,
        topic: Topic,
        data: Any,
        options: ProduceOptions | None = None,
    ) -> ProduceResult:
        """
        Publish data to a topic with retries.

        Args:
            topic: Destination topic.
            data: Caller payload, opaque to the queue.
            options: Idempotency key and broker routing options.

        Returns:
            ProduceResult with partition/offset on success or the last error.
        """
        envelope = self.build_envelope(topic, data, options)
        return await self.publish(envelope, options=options)

    async def produce_once(
        self,
        topic: Topic,
        data: Any,
        options: ProduceOptions | None = None,
    ) -> ProduceResult:
        """Publish with exactly one attempt; the caller handles retries."""
        envelope = self.build_envelope(topic, data, options)
        return await self.publish(envelope, options=options, max_attempts=1)

    async def produce_batch(self, entries: Sequence[BatchEntry]) -> list[ProduceResult]:
        """
        Publish several messages concurrently.

        One failing entry does not cancel the others. Results are returned in
        input order.
        """
        return list(
            await asyncio.gather(
                *(self.produce(entry.topic, entry.data, entry.options) for entry in entries)
            )
        )

    async def publish(
        self,
        envelope: Envelope,
        options: ProduceOptions | None = None,
        max_attempts: int | None = None,
    ) -> ProduceResult:
        """
        Publish an already-built envelope, preserving its id.

        Args:
            envelope: The envelope to publish to envelope.topic.
            options: Broker routing options.
            max_attempts: Attempt limit; defaults to the producer's max_retries.

        Returns:
            ProduceResult for the publish.
        """
        topic = envelope.topic
        if self._broker is None:
            return ProduceResult(success=False, topic=topic, error=ERROR_PRODUCER_NOT_CONFIGURED)

        attempts = max_attempts or self.max_retries
        value = envelope.to_wire()
        last_error: str | None = None

        for attempt in range(attempts):
            start = time.perf_counter()
            try:
                with create_span(
                    SPAN_PRODUCE_MESSAGE,
                    topic=topic,
                    message_id=envelope.id,
                    attempt=attempt + 1,
                ):
                    ack = await self._broker.produce(
                        topic,
                        value,
                        key=options.key if options else None,
                        partition=options.partition if options else None,
                        headers=options.headers if options else None,
                    )
            except Exception as e:
                self._metrics.observe_produce_latency(topic, time.perf_counter() - start)
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "Produce attempt failed",
                    extra={
                        "topic": str(topic),
                        "message_id": envelope.id,
                        "attempt": attempt + 1,
                        "max_attempts": attempts,
                        "error": last_error,
                    },
                )
                if attempt < attempts - 1:
                    await self._sleep(self.get_retry_delay(attempt))
                continue

            self._metrics.observe_produce_latency(topic, time.perf_counter() - start)
            self._metrics.record_produce(topic, success=True, attempts=attempt + 1)
            return ProduceResult(
                success=True,
                topic=topic,
                partition=ack.partition,
                offset=str(ack.offset),
            )

        self._metrics.record_produce(topic, success=False, attempts=attempts)
        logger.error(
            "Produce failed after all attempts",
            extra={"topic": str(topic), "message_id": envelope.id, "attempts": attempts},
        )
        return ProduceResult(
            success=False,
            topic=topic,
            error=last_error or "Unknown error after max retries",
        )

    async def send_to_dlq(
        self,
        envelope: Envelope,
        error_reason: str,
        original_topic: Topic | None = None,
    ) -> ProduceResult:
        """
        Wrap a failed envelope in a dead-letter record and publish it.

        Args:
            envelope: The failed message, carrying its final retry count.
            error_reason: Why the last attempt failed.
            original_topic: Topic to replay to; defaults to envelope.topic.

        Returns:
            ProduceResult of the DLQ publish.
        """
        original_topic = original_topic or envelope.topic
        failed_at = now_ms()
        record = DeadLetterRecord(
            original_message=envelope,
            error_reason=error_reason,
            failed_at=failed_at,
            original_topic=original_topic,
        )
        dlq_envelope = Envelope(
            id=f"dlq-{envelope.id}-{failed_at}",
            topic=dead_letter_topic(original_topic),
            data=record.model_dump(mode="json", by_alias=True),
            timestamp=failed_at,
        )

        result = await self.publish(dlq_envelope)
        if result.success:
            self._metrics.record_dlq_sent(original_topic)
            logger.warning(
                "Message sent to dead-letter queue",
                extra={
                    "message_id": envelope.id,
                    "original_topic": str(original_topic),
                    "retry_count": envelope.retry_count,
                    "error": error_reason,
                },
            )
        return result
