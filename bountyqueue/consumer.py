"""
Batching consumer with retry-to-DLQ escalation.

A handler failure requeues the message to the same topic with retry_count + 1;
once the incremented count reaches max_retries the message is wrapped in a
dead-letter record and published to the topic's DLQ instead.
"""

import asyncio
import logging
import os
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from typing import Any

from bountyqueue.broker.client import BrokerClient, create_broker
from bountyqueue.config import Settings, get_settings
from bountyqueue.constants import (
    ERROR_CONSUMER_NOT_CONFIGURED,
    OFFSET_RESET_EARLIEST,
    SPAN_CONSUME_BATCH,
    SPAN_PROCESS_MESSAGE,
    Topic,
)
from bountyqueue.exceptions import EnvelopeDecodeError
from bountyqueue.observability.metrics import get_metrics
from bountyqueue.observability.tracing import create_span
from bountyqueue.producer import Producer, SleepFunc
from bountyqueue.types.envelope import Envelope
from bountyqueue.types.results import BatchProcessResult, ConsumeResult, MessageError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Envelope], Awaitable[Any]]
BatchCallback = Callable[[BatchProcessResult], Any]


class PollingHandle:
    """
    Handle for a polling loop started by Consumer.start_polling.

    stop() is advisory: the loop sees it at the top of its next iteration, so
    an in-flight handler is never interrupted.
    """

    def __init__(self, topic: Topic):
        self.topic = topic
        self._running = True
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        """Whether stop() has not been requested yet."""
        return self._running

    def stop(self) -> None:
        """Request the loop to stop at the next iteration boundary."""
        self._running = False

    async def wait(self) -> None:
        """Wait for the loop task to exit."""
        if self._task is not None:
            await self._task


class Consumer:
    """
    Fetches envelope batches and drives per-message handlers.

    Features:
    - Malformed records are logged and skipped
    - Sequential and windowed-parallel batch processing
    - Requeue with incremented retry count, DLQ at the retry ceiling
    - Cooperative polling loop with an idle sleep on empty cycles
    """

    def __init__(
        self,
        broker: BrokerClient | None = None,
        producer: Producer | None = None,
        group_id: str | None = None,
        instance_id: str | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        settings: Settings | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """
        Initialize the consumer.

        Args:
            broker: Broker client. Built from settings when omitted.
            producer: Producer used for requeue and DLQ publishes. Defaults to
                one sharing this consumer's broker.
            group_id: Consumer group id.
            instance_id: Consumer instance id. Defaults to hostname + PID.
            batch_size: Maximum envelopes returned per fetch.
            max_retries: Retry ceiling before a message is dead-lettered.
            settings: Settings override.
            sleep: Coroutine used for the idle poll wait.
        """
        settings = settings or get_settings()

        self._broker = broker if broker is not None else create_broker(settings)
        self._producer = producer or Producer(broker=self._broker, settings=settings)
        self.group_id = group_id or settings.consumer_group_id
        self.instance_id = instance_id or f"instance-{os.uname().nodename}-{os.getpid()}"
        self.batch_size = batch_size or settings.consumer_batch_size
        self.max_retries = max_retries or settings.consumer_max_retries
        self.default_concurrency = settings.consumer_concurrency
        self.default_poll_interval_ms = settings.consumer_poll_interval_ms
        self._sleep = sleep
        self._backlog: dict[str, deque[Envelope]] = defaultdict(deque)
        self._metrics = get_metrics()

    def is_ready(self) -> bool:
        """Whether a broker client is configured."""
        return self._broker is not None

    def get_config(self) -> dict[str, Any]:
        """Get the current consumer configuration."""
        return {
            "group_id": self.group_id,
            "instance_id": self.instance_id,
            "batch_size": self.batch_size,
            "max_retries": self.max_retries,
        }

    async def consume(
        self,
        topic: Topic,
        max_messages: int | None = None,
    ) -> ConsumeResult:
        """
        Fetch up to max_messages envelopes from a topic.

        Records the broker returns beyond the limit are kept in a local backlog
        and served first by the next call.

        Args:
            topic: Topic to poll.
            max_messages: Batch limit; defaults to the configured batch size.

        Returns:
            ConsumeResult with the decoded envelopes, or an error string.
        """
        if self._broker is None:
            return ConsumeResult(messages=[], error=ERROR_CONSUMER_NOT_CONFIGURED)

        limit = max_messages or self.batch_size
        backlog = self._backlog[topic]

        if len(backlog) < limit:
            try:
                with create_span(SPAN_CONSUME_BATCH, topic=topic, group_id=self.group_id):
                    records = await self._broker.consume(
                        group=self.group_id,
                        instance=self.instance_id,
                        topics=[topic],
                        offset_reset=OFFSET_RESET_EARLIEST,
                    )
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.error(
                    "Consume failed",
                    extra={"topic": str(topic), "group_id": self.group_id, "error": error},
                )
                messages = self._take(backlog, limit)
                return ConsumeResult(messages=messages, error=None if messages else error)

            for record in records:
                try:
                    backlog.append(Envelope.from_wire(record.value))
                except EnvelopeDecodeError as e:
                    logger.warning(
                        "Skipping malformed message",
                        extra={
                            "topic": str(topic),
                            "offset": record.offset,
                            "partition": record.partition,
                            "error": str(e)[:200],
                        },
                    )

        return ConsumeResult(messages=self._take(backlog, limit))

    async def consume_batch(self, topic: Topic, batch_size: int | None = None) -> ConsumeResult:
        """Consume a batch of messages from a topic."""
        return await self.consume(topic, max_messages=batch_size or self.batch_size)

    @staticmethod
    def _take(backlog: deque[Envelope], limit: int) -> list[Envelope]:
        return [backlog.popleft() for _ in range(min(limit, len(backlog)))]

    async def process_batch(
        self,
        topic: Topic,
        handler: MessageHandler,
        batch_size: int | None = None,
    ) -> BatchProcessResult:
        """
        Fetch one batch and run the handler on each message in order.

        Handler errors never propagate; they drive requeue or DLQ escalation.

        Args:
            topic: Topic to consume.
            handler: Coroutine called with each envelope.
            batch_size: Batch limit override.

        Returns:
            BatchProcessResult with processed/failed/dlq_sent counts.
        """
        fetched = await self.consume_batch(topic, batch_size)
        result = BatchProcessResult()

        for message in fetched.messages:
            try:
                await self._run_handler(topic, handler, message)
            except Exception as e:
                await self._handle_failure(topic, message, e, result)
            else:
                result.processed += 1

        self._metrics.record_consumed(topic, "processed", result.processed)
        return result

    async def process_parallel_batch(
        self,
        topic: Topic,
        handler: MessageHandler,
        batch_size: int | None = None,
        concurrency: int | None = None,
    ) -> BatchProcessResult:
        """
        Fetch one batch and run the handler in fixed-size concurrent windows.

        Every message of a window settles before the next window starts; a
        failing or slow message does not cancel its siblings. Retry/DLQ logic
        is applied per message after its window completes.

        Args:
            topic: Topic to consume.
            handler: Coroutine called with each envelope.
            batch_size: Batch limit override.
            concurrency: Window size (default 5).

        Returns:
            BatchProcessResult with processed/failed/dlq_sent counts.
        """
        fetched = await self.consume_batch(topic, batch_size)
        window = max(1, concurrency or self.default_concurrency)
        result = BatchProcessResult()
        messages = fetched.messages

        for start in range(0, len(messages), window):
            chunk = messages[start:start + window]
            outcomes = await asyncio.gather(
                *(self._run_handler(topic, handler, message) for message in chunk),
                return_exceptions=True,
            )

            for message, outcome in zip(chunk, outcomes):
                if isinstance(outcome, Exception):
                    await self._handle_failure(topic, message, outcome, result)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    result.processed += 1

        self._metrics.record_consumed(topic, "processed", result.processed)
        return result

    async def _run_handler(self, topic: Topic, handler: MessageHandler, message: Envelope) -> None:
        with create_span(
            SPAN_PROCESS_MESSAGE,
            topic=topic,
            message_id=message.id,
            retry_count=message.retry_count,
        ):
            await handler(message)

    async def _handle_failure(
        self,
        topic: Topic,
        message: Envelope,
        error: Exception,
        result: BatchProcessResult,
    ) -> None:
        """Record a handler failure and requeue or dead-letter the message."""
        error_message = str(error) or type(error).__name__
        result.failed += 1
        result.errors.append(MessageError(message_id=message.id, error=error_message))

        retry_count = message.retry_count + 1
        if retry_count >= self.max_retries:
            published = await self._producer.send_to_dlq(
                message.requeued(retry_count), error_message, original_topic=topic
            )
            if published.success:
                result.dlq_sent += 1
                self._metrics.record_consumed(topic, "dead_lettered")
            else:
                logger.error(
                    "Failed to send message to DLQ",
                    extra={"message_id": message.id, "error": published.error},
                )
                result.errors.append(
                    MessageError(message_id=message.id, error=f"DLQ publish failed: {published.error}")
                )
            return

        published = await self._producer.publish(
            message.requeued(retry_count).model_copy(update={"topic": topic}),
            max_attempts=1,
        )
        if published.success:
            self._metrics.record_consumed(topic, "retried")
            logger.info(
                "Message requeued for retry",
                extra={"message_id": message.id, "topic": str(topic), "retry_count": retry_count},
            )
        else:
            logger.error(
                "Failed to requeue message",
                extra={"message_id": message.id, "error": published.error},
            )
            result.errors.append(
                MessageError(message_id=message.id, error=f"Requeue failed: {published.error}")
            )

    async def start_polling(
        self,
        topic: Topic,
        handler: MessageHandler,
        batch_size: int | None = None,
        poll_interval_ms: int | None = None,
        on_batch_complete: BatchCallback | None = None,
    ) -> PollingHandle:
        """
        Start a background fetch/process loop.

        An empty cycle (nothing processed or failed) sleeps poll_interval_ms
        before the next one. A cycle that raises is logged and also followed by
        the sleep.

        Args:
            topic: Topic to consume.
            handler: Coroutine called with each envelope.
            batch_size: Batch limit override.
            poll_interval_ms: Idle sleep in milliseconds (default 1000).
            on_batch_complete: Callback invoked with each cycle's result.

        Returns:
            PollingHandle whose stop() ends the loop.
        """
        handle = PollingHandle(topic)
        interval = (poll_interval_ms or self.default_poll_interval_ms) / 1000

        async def poll() -> None:
            logger.info(
                "Polling started",
                extra={"topic": str(topic), "group_id": self.group_id},
            )
            while handle.is_running:
                try:
                    result = await self.process_batch(topic, handler, batch_size=batch_size)

                    if on_batch_complete is not None:
                        on_batch_complete(result)

                    if result.processed == 0 and result.failed == 0:
                        await self._sleep(interval)

                except Exception as e:
                    logger.exception(
                        f"Error in polling loop: {e}",
                        extra={"topic": str(topic)},
                    )
                    await self._sleep(interval)

            logger.info("Polling stopped", extra={"topic": str(topic)})

        handle._task = asyncio.create_task(poll())
        return handle
