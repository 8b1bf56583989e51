"""
Bounty Queue

Asynchronous message and job queue layer for the bounty marketplace, built on a
REST-accessible log-structured broker: producer with retry/backoff, batching
consumer with dead-lettering, DLQ replay tooling and a job-queue adapter.
"""

__version__ = "1.0.0"
