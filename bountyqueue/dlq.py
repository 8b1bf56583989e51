"""
Dead-letter queue inspection, statistics, replay and triage.

The broker cannot delete single records and advances the consumer group's
offset on every read, so the handler keeps a process-local view of the dead
letters it has read plus the ids it has already triaged (replayed or
deleted). Reads are served from that view, which makes statistics repeatable
and lets "delete" mean "never replay this record from here".
"""

import logging
import os
from collections.abc import Awaitable, Callable

from bountyqueue.broker.client import BrokerClient, create_broker
from bountyqueue.config import Settings, get_settings
from bountyqueue.constants import (
    DEFAULT_DLQ_TOPIC,
    ERROR_DLQ_NOT_CONFIGURED,
    ERROR_REASON_MAX_LENGTH,
    OFFSET_RESET_EARLIEST,
    SPAN_REPLAY_DEAD_LETTER,
    DLQAction,
    Topic,
)
from bountyqueue.exceptions import EnvelopeDecodeError
from bountyqueue.observability.metrics import get_metrics
from bountyqueue.observability.tracing import create_span
from bountyqueue.producer import Producer
from bountyqueue.types.envelope import DLQMessage, Envelope, now_ms
from bountyqueue.types.results import (
    AlertCheckResult,
    DLQProcessResult,
    DLQStats,
    MessageError,
    ReplayResult,
)

logger = logging.getLogger(__name__)

TriageHandler = Callable[[DLQMessage], Awaitable[DLQAction | str]]

MS_PER_HOUR = 1000 * 60 * 60


class DeadLetterQueueHandler:
    """
    Reads the dead-letter topic and replays or triages its records.

    Replay republishes the original envelope to its original topic with
    retry_count reset to 0 and a fresh timestamp; the dead-letter record itself
    is never modified.
    """

    def __init__(
        self,
        broker: BrokerClient | None = None,
        producer: Producer | None = None,
        group_id: str | None = None,
        instance_id: str | None = None,
        dlq_topic: Topic = DEFAULT_DLQ_TOPIC,
        settings: Settings | None = None,
    ):
        """
        Initialize the handler.

        Args:
            broker: Broker client. Built from settings when omitted.
            producer: Producer used for replays.
            group_id: Consumer group reading the DLQ.
            instance_id: Consumer instance id.
            dlq_topic: Dead-letter topic to read.
            settings: Settings override.
        """
        settings = settings or get_settings()

        self._broker = broker if broker is not None else create_broker(settings)
        self._producer = producer or Producer(broker=self._broker, settings=settings)
        self.group_id = group_id or settings.dlq_group_id
        self.instance_id = instance_id or f"dlq-handler-{os.uname().nodename}-{os.getpid()}"
        self.dlq_topic = dlq_topic
        self.fetch_limit = settings.dlq_fetch_limit
        self._seen: dict[str, DLQMessage] = {}
        self._triaged: set[str] = set()
        self._metrics = get_metrics()

    def is_ready(self) -> bool:
        """Whether a broker client is configured."""
        return self._broker is not None

    async def _fetch(self, max_messages: int | None = None) -> tuple[list[DLQMessage], str | None]:
        """Pull new dead letters into the local view and return untriaged ones."""
        if self._broker is None:
            return [], ERROR_DLQ_NOT_CONFIGURED

        error: str | None = None
        try:
            records = await self._broker.consume(
                group=self.group_id,
                instance=self.instance_id,
                topics=[self.dlq_topic],
                offset_reset=OFFSET_RESET_EARLIEST,
            )
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error("DLQ fetch failed", extra={"error": error})
            records = []

        for record in records:
            try:
                message = DLQMessage.from_envelope(Envelope.from_wire(record.value))
            except EnvelopeDecodeError as e:
                logger.warning(
                    "Skipping malformed dead letter",
                    extra={"offset": record.offset, "error": str(e)[:200]},
                )
                continue
            self._seen.setdefault(message.id, message)

        limit = max_messages or self.fetch_limit
        pending = [m for m in self._seen.values() if m.id not in self._triaged]
        self._metrics.update_dlq_depth(len(pending))
        return pending[:limit], error

    async def fetch_messages(self, max_messages: int | None = None) -> list[DLQMessage]:
        """
        Fetch untriaged dead letters in arrival order.

        Args:
            max_messages: Maximum records to return (default 100).

        Returns:
            The dead letters; empty when unconfigured or the broker is unreachable.
        """
        messages, _ = await self._fetch(max_messages)
        return messages

    async def replay_message(self, message: DLQMessage) -> ReplayResult:
        """
        Republish one dead letter's original envelope to its original topic.

        Args:
            message: The dead letter to replay.

        Returns:
            ReplayResult with the publish outcome.
        """
        if self._broker is None:
            return ReplayResult(success=False, error=ERROR_DLQ_NOT_CONFIGURED)

        replayed = message.original_message.model_copy(
            update={"retry_count": 0, "timestamp": now_ms(), "topic": message.original_topic}
        )

        with create_span(
            SPAN_REPLAY_DEAD_LETTER,
            dlq_id=message.id,
            original_topic=message.original_topic,
        ):
            result = await self._producer.publish(replayed)

        if not result.success:
            logger.error(
                "DLQ replay failed",
                extra={"dlq_id": message.id, "error": result.error},
            )
            return ReplayResult(success=False, error=result.error or "Unknown error")

        self._triaged.add(message.id)
        self._metrics.record_dlq_replayed(message.original_topic)
        logger.info(
            "Replayed dead letter",
            extra={
                "dlq_id": message.id,
                "message_id": replayed.id,
                "original_topic": str(message.original_topic),
            },
        )
        return ReplayResult(success=True)

    async def replay_messages(self, messages: list[DLQMessage]) -> DLQProcessResult:
        """Replay several dead letters, collecting per-message errors."""
        result = DLQProcessResult()

        for message in messages:
            outcome = await self.replay_message(message)
            if outcome.success:
                result.replayed += 1
            else:
                result.errors.append(
                    MessageError(message_id=message.id, error=outcome.error or "Unknown error")
                )

        return result

    async def replay_filtered(
        self,
        predicate: Callable[[DLQMessage], bool],
        max_messages: int | None = None,
    ) -> DLQProcessResult:
        """
        Replay every fetched dead letter matching a predicate.

        A fetch error is reported as an error entry with message id "fetch".
        """
        messages, error = await self._fetch(max_messages)
        if error:
            return DLQProcessResult(errors=[MessageError(message_id="fetch", error=error)])

        return await self.replay_messages([m for m in messages if predicate(m)])

    async def replay_by_topic(
        self,
        topic: Topic,
        max_messages: int | None = None,
    ) -> DLQProcessResult:
        """Replay dead letters whose original topic is the given topic."""
        return await self.replay_filtered(lambda m: m.original_topic == topic, max_messages)

    async def replay_by_time_window(
        self,
        start_time: int,
        end_time: int,
        max_messages: int | None = None,
    ) -> DLQProcessResult:
        """
        Replay dead letters that failed within [start_time, end_time].

        Args:
            start_time: Window start, epoch ms (inclusive).
            end_time: Window end, epoch ms (inclusive).
            max_messages: Fetch limit.
        """
        return await self.replay_filtered(
            lambda m: start_time <= m.failed_at <= end_time,
            max_messages,
        )

    async def get_stats(self, max_messages: int | None = None) -> DLQStats:
        """
        Compute statistics over the untriaged dead letters.

        Error reasons are truncated to 100 characters to bound cardinality.
        Ages are relative to the call time.
        """
        messages = await self.fetch_messages(max_messages)

        now = now_ms()
        by_topic: dict[str, int] = {}
        by_error_reason: dict[str, int] = {}
        oldest_age: int | None = None
        newest_age: int | None = None

        for message in messages:
            topic = str(message.original_topic)
            by_topic[topic] = by_topic.get(topic, 0) + 1

            reason = message.error_reason[:ERROR_REASON_MAX_LENGTH]
            by_error_reason[reason] = by_error_reason.get(reason, 0) + 1

            age = now - message.failed_at
            if oldest_age is None or age > oldest_age:
                oldest_age = age
            if newest_age is None or age < newest_age:
                newest_age = age

        return DLQStats(
            total_messages=len(messages),
            oldest_message_age=oldest_age,
            newest_message_age=newest_age,
            by_topic=by_topic,
            by_error_reason=by_error_reason,
        )

    async def process_messages(
        self,
        handler: TriageHandler,
        max_messages: int | None = None,
    ) -> DLQProcessResult:
        """
        Let a triage function decide replay, skip or delete per dead letter.

        Delete performs no broker mutation; the record is only marked as
        triaged locally. Triage function errors are captured per message.

        Args:
            handler: Coroutine returning a DLQAction (or its string value).
            max_messages: Fetch limit.

        Returns:
            DLQProcessResult with replayed/deleted/skipped counts.
        """
        messages, error = await self._fetch(max_messages)
        if error:
            return DLQProcessResult(errors=[MessageError(message_id="fetch", error=error)])

        result = DLQProcessResult()

        for message in messages:
            try:
                action = DLQAction(await handler(message))
            except Exception as e:
                result.errors.append(MessageError(message_id=message.id, error=str(e) or type(e).__name__))
                continue

            if action is DLQAction.REPLAY:
                outcome = await self.replay_message(message)
                if outcome.success:
                    result.replayed += 1
                else:
                    result.errors.append(
                        MessageError(message_id=message.id, error=outcome.error or "Replay failed")
                    )
            elif action is DLQAction.DELETE:
                self._triaged.add(message.id)
                result.deleted += 1
            else:
                result.skipped += 1

        return result

    async def check_alert_thresholds(
        self,
        max_messages: int | None = None,
        max_age_ms: int | None = None,
    ) -> AlertCheckResult:
        """
        Compare current DLQ statistics against thresholds.

        Args:
            max_messages: Alert when more dead letters than this are pending.
            max_age_ms: Alert when the oldest dead letter is older than this.

        Returns:
            AlertCheckResult with human-readable reasons.
        """
        stats = await self.get_stats()
        reasons: list[str] = []

        if max_messages and stats.total_messages > max_messages:
            reasons.append(
                f"DLQ has {stats.total_messages} messages (threshold: {max_messages})"
            )

        if max_age_ms and stats.oldest_message_age and stats.oldest_message_age > max_age_ms:
            age_hours = round(stats.oldest_message_age / MS_PER_HOUR)
            threshold_hours = round(max_age_ms / MS_PER_HOUR)
            reasons.append(
                f"Oldest DLQ message is {age_hours}h old (threshold: {threshold_hours}h)"
            )

        return AlertCheckResult(alert=bool(reasons), reasons=reasons)

