"""
Feature-flag gated access to the queue components.

Each getter consults the queue flag on every call and returns a process-wide
singleton of either the real component or its null stand-in, so flipping the
flag takes effect on the next call without a restart.
"""

import logging

from bountyqueue.broker.client import BrokerClient, create_broker
from bountyqueue.client import QueueClient
from bountyqueue.config import get_settings
from bountyqueue.consumer import Consumer
from bountyqueue.dlq import DeadLetterQueueHandler
from bountyqueue.feature_flags import FeatureFlagProvider, get_feature_flags
from bountyqueue.job_queue import JobQueue
from bountyqueue.null import (
    NullConsumer,
    NullDeadLetterQueueHandler,
    NullJobQueue,
    NullProducer,
    NullQueueClient,
)
from bountyqueue.producer import Producer

logger = logging.getLogger(__name__)

_flags: FeatureFlagProvider | None = None
_instances: dict[str, object] = {}

_null_producer = NullProducer()
_null_consumer = NullConsumer()
_null_dlq_handler = NullDeadLetterQueueHandler()
_null_job_queue = NullJobQueue()
_null_queue_client = NullQueueClient()


def set_feature_flag_provider(provider: FeatureFlagProvider | None) -> None:
    """Use a different flag backend; None restores the in-process service."""
    global _flags
    _flags = provider


def queue_enabled(user_id: str | None = None) -> bool:
    """Whether the queue flag is on."""
    flags = _flags or get_feature_flags()
    return flags.is_enabled(get_settings().queue_feature_flag, user_id)


def _broker() -> BrokerClient | None:
    if "broker" not in _instances:
        _instances["broker"] = create_broker(get_settings())
    return _instances["broker"]


def _producer() -> Producer:
    if "producer" not in _instances:
        _instances["producer"] = Producer(broker=_broker())
    return _instances["producer"]


def get_producer(user_id: str | None = None) -> Producer | NullProducer:
    """Get the producer for the current flag state."""
    if not queue_enabled(user_id):
        return _null_producer
    return _producer()


def get_consumer(user_id: str | None = None) -> Consumer | NullConsumer:
    """Get the consumer for the current flag state."""
    if not queue_enabled(user_id):
        return _null_consumer
    if "consumer" not in _instances:
        _instances["consumer"] = Consumer(broker=_broker(), producer=_producer())
    return _instances["consumer"]


def get_dlq_handler(user_id: str | None = None) -> DeadLetterQueueHandler | NullDeadLetterQueueHandler:
    """Get the dead-letter queue handler for the current flag state."""
    if not queue_enabled(user_id):
        return _null_dlq_handler
    if "dlq_handler" not in _instances:
        _instances["dlq_handler"] = DeadLetterQueueHandler(
            broker=_broker(), producer=_producer()
        )
    return _instances["dlq_handler"]


def get_job_queue(user_id: str | None = None) -> JobQueue | NullJobQueue:
    """Get the job queue for the current flag state."""
    if not queue_enabled(user_id):
        return _null_job_queue
    if "job_queue" not in _instances:
        _instances["job_queue"] = JobQueue(broker=_broker(), producer=_producer())
    return _instances["job_queue"]


def get_queue_client(user_id: str | None = None) -> QueueClient | NullQueueClient:
    """Get the queue client facade for the current flag state."""
    if not queue_enabled(user_id):
        return _null_queue_client
    if "queue_client" not in _instances:
        _instances["queue_client"] = QueueClient(broker=_broker(), producer=_producer())
    return _instances["queue_client"]


def reset_instances() -> None:
    """Forget every real singleton. Used by tests and after settings changes."""
    _instances.clear()
    logger.debug("Queue component singletons reset")


async def close_instances() -> None:
    """
    Close the shared broker connection and forget every real singleton.
    Should be called on process shutdown.
    """
    broker = _instances.get("broker")
    if broker is not None:
        await broker.aclose()
        logger.info("Broker connection closed")
    reset_instances()
