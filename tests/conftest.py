"""
Pytest configuration and shared fixtures.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

from bountyqueue.broker.client import BrokerRecord, ProduceAck
from bountyqueue.config import Settings
from bountyqueue.consumer import Consumer
from bountyqueue.dlq import DeadLetterQueueHandler
from bountyqueue.exceptions import BrokerError, EnvelopeDecodeError
from bountyqueue.job_queue import JobQueue
from bountyqueue.producer import Producer
from bountyqueue.types.envelope import Envelope, now_ms


class FakeBroker:
    """
    In-memory log broker.

    Every topic is an append-only list; each consumer group keeps its own
    offset per topic and a consume call returns everything past it.
    """

    def __init__(self) -> None:
        self.topics: dict[str, list[BrokerRecord]] = defaultdict(list)
        self.offsets: dict[tuple[str, str], int] = defaultdict(int)
        self.produce_failures: list[Exception] = []
        self.consume_failures: list[Exception] = []
        self.failing_topics: set[str] = set()
        self.produce_calls = 0
        self.consume_calls = 0
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True

    def fail_next_produces(self, count: int, message: str = "broker unavailable") -> None:
        self.produce_failures.extend(BrokerError(message) for _ in range(count))

    async def produce(
        self,
        topic: str,
        value: str,
        *,
        key: str | None = None,
        partition: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> ProduceAck:
        self.produce_calls += 1
        if topic in self.failing_topics:
            raise BrokerError(f"topic {topic} rejected the write")
        if self.produce_failures:
            raise self.produce_failures.pop(0)

        records = self.topics[str(topic)]
        record = BrokerRecord(
            topic=str(topic),
            value=value,
            partition=partition or 0,
            offset=len(records),
            timestamp=now_ms(),
            key=key,
            headers=[{"key": k, "value": v} for k, v in (headers or {}).items()],
        )
        records.append(record)
        return ProduceAck(topic=str(topic), partition=record.partition, offset=record.offset)

    async def consume(
        self,
        *,
        group: str,
        instance: str,
        topics: list[str],
        offset_reset: str = "earliest",
    ) -> list[BrokerRecord]:
        self.consume_calls += 1
        if self.consume_failures:
            raise self.consume_failures.pop(0)

        records: list[BrokerRecord] = []
        for topic in topics:
            log = self.topics[str(topic)]
            start = self.offsets[(group, str(topic))]
            records.extend(log[start:])
            self.offsets[(group, str(topic))] = len(log)
        return records

    def publish_raw(self, topic: str, value: str) -> None:
        """Append a record without going through a producer."""
        log = self.topics[str(topic)]
        log.append(BrokerRecord(topic=str(topic), value=value, offset=len(log)))

    def envelopes(self, topic: str) -> list[Envelope]:
        """Decode every envelope currently stored in a topic."""
        decoded = []
        for record in self.topics[str(topic)]:
            try:
                decoded.append(Envelope.from_wire(record.value))
            except EnvelopeDecodeError:
                continue
        return decoded


class RecordingSleep:
    """Sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with broker credentials present."""
    return Settings(
        upstash_kafka_rest_url="https://kafka.test.upstash.io",
        upstash_kafka_rest_username="test-user",
        upstash_kafka_rest_password="test-password",
        log_level="DEBUG",
        log_format="console",
        job_polling_interval_seconds=0.01,
    )


@pytest.fixture
def broker() -> FakeBroker:
    """Create an empty in-memory broker."""
    return FakeBroker()


@pytest.fixture
def sleep() -> RecordingSleep:
    """Create a recording sleep."""
    return RecordingSleep()


@pytest.fixture
def clock() -> FakeClock:
    """Create a controllable clock."""
    return FakeClock()


@pytest.fixture
def producer(broker: FakeBroker, test_settings: Settings, sleep: RecordingSleep) -> Producer:
    """Create a producer over the fake broker."""
    return Producer(broker=broker, settings=test_settings, sleep=sleep)


@pytest.fixture
def consumer(
    broker: FakeBroker,
    producer: Producer,
    test_settings: Settings,
    sleep: RecordingSleep,
) -> Consumer:
    """Create a consumer sharing the producer's broker."""
    return Consumer(
        broker=broker,
        producer=producer,
        group_id="test-group",
        instance_id="test-instance",
        settings=test_settings,
        sleep=sleep,
    )


@pytest.fixture
def dlq_handler(broker: FakeBroker, producer: Producer, test_settings: Settings) -> DeadLetterQueueHandler:
    """Create a DLQ handler sharing the producer's broker."""
    return DeadLetterQueueHandler(
        broker=broker,
        producer=producer,
        group_id="test-dlq-group",
        instance_id="test-dlq-instance",
        settings=test_settings,
    )


@pytest.fixture
def job_queue(
    broker: FakeBroker,
    producer: Producer,
    test_settings: Settings,
    clock: FakeClock,
) -> JobQueue:
    """Create a job queue (not started) on the fake clock. Work loops idle with a real sleep."""
    return JobQueue(
        broker=broker,
        producer=producer,
        settings=test_settings,
        clock=clock,
    )
