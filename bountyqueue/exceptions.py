"""
Exception hierarchy for the queue layer.

Only QueueNotConfiguredError is raised out of a public method; broker and
handler failures are converted into result objects at the component boundary.
"""


class QueueError(Exception):
    """Base class for queue layer errors."""


class BrokerError(QueueError):
    """A broker call failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class EnvelopeDecodeError(QueueError):
    """A broker record could not be decoded into an envelope."""


class QueueNotConfiguredError(QueueError):
    """The job queue was started without broker credentials."""
