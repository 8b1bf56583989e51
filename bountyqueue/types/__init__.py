"""
Type definitions for the queue layer.
Contains wire formats, job records and operation results, grouped by module.
"""

from bountyqueue.types.envelope import (
    DeadLetterRecord,
    DLQMessage,
    Envelope,
)
from bountyqueue.types.job import (
    FetchOptions,
    Job,
    JobWithMetadata,
    SendOptions,
    WorkOptions,
)
from bountyqueue.types.messages import (
    AgentExecutionMessage,
    AgentResultMessage,
    NotificationMessage,
)
from bountyqueue.types.results import (
    AlertCheckResult,
    BatchProcessResult,
    ConsumeResult,
    DLQProcessResult,
    DLQStats,
    HealthStatus,
    MessageError,
    ProduceResult,
    ReplayResult,
)

__all__ = [
    # Wire types
    "Envelope",
    "DeadLetterRecord",
    "DLQMessage",
    # Job types
    "Job",
    "JobWithMetadata",
    "SendOptions",
    "FetchOptions",
    "WorkOptions",
    # Topic payloads
    "AgentExecutionMessage",
    "AgentResultMessage",
    "NotificationMessage",
    # Results
    "ProduceResult",
    "ConsumeResult",
    "BatchProcessResult",
    "MessageError",
    "ReplayResult",
    "DLQProcessResult",
    "DLQStats",
    "AlertCheckResult",
    "HealthStatus",
]
