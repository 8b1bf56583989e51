"""
Result type definitions.

Every public queue operation reports outcomes as data rather than raising.
"""

from pydantic import BaseModel, Field

from bountyqueue.types.envelope import Envelope


class ProduceResult(BaseModel):
    """Outcome of a publish."""

    success: bool
    topic: str
    partition: int | None = None
    offset: str | None = None
    error: str | None = None


class ConsumeResult(BaseModel):
    """Envelopes fetched from a topic."""

    messages: list[Envelope] = Field(default_factory=list)
    error: str | None = None


class MessageError(BaseModel):
    """Per-message failure entry."""

    message_id: str
    error: str


class BatchProcessResult(BaseModel):
    """Outcome of processing one fetched batch."""

    processed: int = 0
    failed: int = 0
    errors: list[MessageError] = Field(default_factory=list)
    dlq_sent: int = 0


class ReplayResult(BaseModel):
    """Outcome of replaying a single dead letter."""

    success: bool
    error: str | None = None


class DLQProcessResult(BaseModel):
    """Outcome of a DLQ replay or triage run."""

    replayed: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: list[MessageError] = Field(default_factory=list)


class DLQStats(BaseModel):
    """Point-in-time statistics over the dead-letter queue. Ages are in ms."""

    total_messages: int = 0
    oldest_message_age: int | None = None
    newest_message_age: int | None = None
    by_topic: dict[str, int] = Field(default_factory=dict)
    by_error_reason: dict[str, int] = Field(default_factory=dict)


class AlertCheckResult(BaseModel):
    """Outcome of a DLQ alert threshold check."""

    alert: bool
    reasons: list[str] = Field(default_factory=list)


class HealthStatus(BaseModel):
    """Broker connectivity check."""

    connected: bool
    latency_ms: int
    error: str | None = None
