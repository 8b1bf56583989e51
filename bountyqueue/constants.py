"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class Topic(StrEnum):
    """Broker topics used by the queue layer."""

    AGENT_EXECUTION_QUEUE = "agent-execution-queue"
    AGENT_RESULTS_QUEUE = "agent-results-queue"
    NOTIFICATIONS_QUEUE = "notifications-queue"
    AGENT_EXECUTION_DLQ = "agent-execution-dlq"


# Dead-letter topic for each forward topic. A new topic needs an entry here.
DLQ_TOPICS: dict[Topic, Topic] = {
    Topic.AGENT_EXECUTION_QUEUE: Topic.AGENT_EXECUTION_DLQ,
    Topic.AGENT_RESULTS_QUEUE: Topic.AGENT_EXECUTION_DLQ,
    Topic.NOTIFICATIONS_QUEUE: Topic.AGENT_EXECUTION_DLQ,
}

DEFAULT_DLQ_TOPIC = Topic.AGENT_EXECUTION_DLQ


def dead_letter_topic(topic: Topic) -> Topic:
    """Return the dead-letter topic for a forward topic."""
    return DLQ_TOPICS.get(topic, DEFAULT_DLQ_TOPIC)


# Job queue names and the topics backing them
QUEUE_TOPICS: dict[str, Topic] = {
    "agent-execution": Topic.AGENT_EXECUTION_QUEUE,
    "agent-results": Topic.AGENT_RESULTS_QUEUE,
    "notifications": Topic.NOTIFICATIONS_QUEUE,
}


def queue_to_topic(name: str) -> Topic:
    """Map a job queue name to its topic. Unknown names use the execution queue."""
    return QUEUE_TOPICS.get(name, Topic.AGENT_EXECUTION_QUEUE)


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - CREATED -> ACTIVE (fetched)
    - ACTIVE -> COMPLETED (complete)
    - ACTIVE -> RETRY (fail, retries remain)
    - RETRY -> ACTIVE (fetched again)
    - ACTIVE -> FAILED (fail, retries exhausted; dead letter emitted)
    - CREATED/RETRY/ACTIVE -> CANCELLED (cancel)
    """

    CREATED = "created"
    RETRY = "retry"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_JOB_STATES: frozenset[JobState] = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}
)

# States a fetch may activate
FETCHABLE_JOB_STATES: frozenset[JobState] = frozenset(
    {JobState.CREATED, JobState.RETRY}
)


class DLQAction(StrEnum):
    """Triage decision for a dead letter."""

    REPLAY = "replay"
    SKIP = "skip"
    DELETE = "delete"


# Retry policy shared by every component: 1s, 2s, 4s, 8s (capped), 5 attempts
DEFAULT_RETRY_DELAYS_MS: tuple[int, ...] = (1000, 2000, 4000, 8000)
DEFAULT_MAX_RETRIES = 5

# Default values
DEFAULT_BATCH_SIZE = 10
DEFAULT_CONCURRENCY = 5
DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_DLQ_FETCH_LIMIT = 100
DEFAULT_JOB_PRIORITY = 0
DEFAULT_JOB_RETRY_DELAY_SECONDS = 1.0
DEFAULT_JOB_EXPIRE_SECONDS = 3600
DEFAULT_JOB_POLLING_INTERVAL_SECONDS = 2.0
ERROR_REASON_MAX_LENGTH = 100
OFFSET_RESET_EARLIEST = "earliest"

# Error messages
ERROR_PRODUCER_NOT_CONFIGURED = "producer not configured"
ERROR_CONSUMER_NOT_CONFIGURED = "consumer not configured"
ERROR_DLQ_NOT_CONFIGURED = "DLQ handler not configured"
ERROR_QUEUE_DISABLED = "queue disabled by feature flag"

# Metrics names
METRIC_MESSAGES_PRODUCED = "queue_messages_produced_total"
METRIC_PRODUCE_RETRIES = "queue_produce_retries_total"
METRIC_PRODUCE_LATENCY = "queue_produce_latency_seconds"
METRIC_MESSAGES_CONSUMED = "queue_messages_consumed_total"
METRIC_DLQ_SENT = "queue_dlq_sent_total"
METRIC_DLQ_REPLAYED = "queue_dlq_replayed_total"
METRIC_DLQ_DEPTH = "queue_dlq_depth"
METRIC_JOBS_SENT = "jobs_sent_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"

# Trace span names
SPAN_PRODUCE_MESSAGE = "produce_message"
SPAN_CONSUME_BATCH = "consume_batch"
SPAN_PROCESS_MESSAGE = "process_message"
SPAN_REPLAY_DEAD_LETTER = "replay_dead_letter"
SPAN_EXECUTE_JOBS = "execute_jobs"
