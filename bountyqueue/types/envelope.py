"""
Envelope and dead-letter type definitions.

These models define the wire format of every broker record. Field names are
camelCase on the wire and snake_case in Python.
"""

import json
import random
import string
import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from bountyqueue.constants import Topic
from bountyqueue.exceptions import EnvelopeDecodeError

_ID_ALPHABET = string.digits + string.ascii_lowercase


class WireModel(BaseModel):
    """Base model for camelCase wire payloads."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def generate_message_id(prefix: str = "") -> str:
    """Generate a unique id of the form ``{epoch_ms}-{random suffix}``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=13))
    return f"{prefix}{now_ms()}-{suffix}"


class Envelope(WireModel):
    """
    Transport wrapper around every message.

    The id never changes when a message is requeued; only retry_count and
    timestamp do.
    """

    id: str
    topic: Topic
    data: Any = None
    timestamp: int = Field(default_factory=now_ms)
    retry_count: int = 0
    idempotency_key: str | None = None

    @field_validator("retry_count", mode="before")
    @classmethod
    def _default_retry_count(cls, value: Any) -> Any:
        return 0 if value is None else value

    def to_wire(self) -> str:
        """Serialize to the JSON string published to the broker."""
        payload = self.model_dump(mode="json", by_alias=True)
        if payload.get("idempotencyKey") is None:
            payload.pop("idempotencyKey", None)
        return json.dumps(payload)

    @classmethod
    def from_wire(cls, value: str | bytes | dict[str, Any]) -> "Envelope":
        """
        Decode a broker record value.

        Args:
            value: The raw record value.

        Returns:
            The decoded envelope.

        Raises:
            EnvelopeDecodeError: If the value is not a valid envelope.
        """
        try:
            if isinstance(value, dict):
                envelope = cls.model_validate(value)
            else:
                envelope = cls.model_validate_json(value)
        except ValidationError as e:
            raise EnvelopeDecodeError(str(e)) from e
        return envelope

    def requeued(self, retry_count: int) -> "Envelope":
        """Copy of this envelope for requeueing with a new retry count."""
        return self.model_copy(update={"retry_count": retry_count, "timestamp": now_ms()})


class DeadLetterRecord(WireModel):
    """Failed envelope plus failure metadata, carried as the data of a DLQ envelope."""

    original_message: Envelope
    error_reason: str
    failed_at: int
    original_topic: Topic


class DLQMessage(DeadLetterRecord):
    """A dead letter as seen by the DLQ handler, keyed by its DLQ envelope id."""

    id: str

    @classmethod
    def from_envelope(cls, envelope: Envelope) -> "DLQMessage":
        """
        Build from a DLQ envelope.

        Raises:
            EnvelopeDecodeError: If the envelope does not carry a dead-letter record.
        """
        try:
            record = DeadLetterRecord.model_validate(envelope.data)
        except ValidationError as e:
            raise EnvelopeDecodeError(str(e)) from e
        return cls(id=envelope.id, **record.model_dump())
