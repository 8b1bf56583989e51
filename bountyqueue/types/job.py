"""
Job-related type definitions for the job-queue adapter.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from bountyqueue.constants import (
    DEFAULT_JOB_PRIORITY,
    DEFAULT_MAX_RETRIES,
    TERMINAL_JOB_STATES,
    JobState,
)
from bountyqueue.types.envelope import WireModel


class Job(WireModel):
    """A unit of work handed to queue workers."""

    id: str
    name: str
    data: Any = None
    expire_in_seconds: int


class JobWithMetadata(Job):
    """
    Job with its full lifecycle metadata.

    This is also the record kept in the adapter's registry and the payload of
    the envelope published for the job.
    """

    priority: int = DEFAULT_JOB_PRIORITY
    state: JobState = JobState.CREATED
    retry_limit: int = DEFAULT_MAX_RETRIES
    retry_count: int = 0
    retry_delay: float
    retry_backoff: bool = True
    start_after: datetime
    started_on: datetime | None = None
    singleton_key: str | None = None
    created_on: datetime
    completed_on: datetime | None = None
    keep_until: datetime

    @property
    def is_terminal(self) -> bool:
        """Whether the job reached completed, failed or cancelled."""
        return self.state in TERMINAL_JOB_STATES

    def to_job(self) -> Job:
        """Strip metadata."""
        return Job(
            id=self.id,
            name=self.name,
            data=self.data,
            expire_in_seconds=self.expire_in_seconds,
        )


class SendOptions(BaseModel):
    """Options for JobQueue.send."""

    id: str | None = None
    priority: int | None = None
    start_after: int | float | datetime | str | None = Field(
        default=None,
        description="Relative seconds, absolute datetime or ISO-8601 string",
    )
    singleton_key: str | None = None
    retry_limit: int | None = None
    retry_delay: float | None = Field(default=None, description="Seconds between retries")
    retry_backoff: bool | None = None
    expire_in_seconds: int | None = None
    expire_in_minutes: int | None = None
    expire_in_hours: int | None = None


class FetchOptions(BaseModel):
    """Options for JobQueue.fetch."""

    include_metadata: bool = False
    priority: bool = False
    batch_size: int = Field(default=1, ge=1)


class WorkOptions(FetchOptions):
    """Options for JobQueue.work."""

    polling_interval_seconds: float | None = None
