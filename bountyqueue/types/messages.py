"""
Payload type definitions for the forward topics.
"""

from typing import Any, Literal

from bountyqueue.types.envelope import WireModel

NotificationType = Literal["email", "webhook", "alert"]


class AgentExecutionMessage(WireModel):
    """
    Payload for the agent-execution-queue topic.
    Contains everything needed to execute an agent against a bounty.
    """

    agent_id: str
    bounty_id: str
    code: str
    test_cases: list[Any] | None = None
    metadata: dict[str, Any] | None = None


class AgentResultMessage(WireModel):
    """Payload for the agent-results-queue topic."""

    execution_id: str
    agent_id: str
    bounty_id: str
    success: bool
    output: Any = None
    error: str | None = None
    execution_time_ms: float


class NotificationMessage(WireModel):
    """Payload for the notifications-queue topic."""

    type: NotificationType
    recipient: str
    subject: str | None = None
    body: str
    metadata: dict[str, Any] | None = None
