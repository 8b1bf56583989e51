"""
Job-queue adapter over broker topics.

Provides a transactional-job-queue style API (send, fetch, work, complete,
fail, cancel) on top of append/poll topics. Job state lives in a process-local
registry keyed by job id; singleton, priority and state guarantees therefore
hold within one process only.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from bountyqueue.broker.client import BrokerClient, create_broker
from bountyqueue.config import Settings, get_settings
from bountyqueue.constants import (
    DEFAULT_JOB_EXPIRE_SECONDS,
    DEFAULT_JOB_PRIORITY,
    DEFAULT_JOB_RETRY_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
    FETCHABLE_JOB_STATES,
    SPAN_EXECUTE_JOBS,
    JobState,
    Topic,
    queue_to_topic,
)
from bountyqueue.consumer import Consumer
from bountyqueue.exceptions import QueueNotConfiguredError
from bountyqueue.observability.logging import bind_worker_context
from bountyqueue.observability.metrics import get_metrics
from bountyqueue.observability.tracing import create_span
from bountyqueue.producer import Producer, SleepFunc
from bountyqueue.types.envelope import Envelope, generate_message_id
from bountyqueue.types.job import (
    FetchOptions,
    Job,
    JobWithMetadata,
    SendOptions,
    WorkOptions,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
WorkHandler = Callable[[list[Job] | list[JobWithMetadata]], Awaitable[Any]]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass
class PendingJob:
    """A job record pulled from a topic but not yet handed out by fetch."""

    record: JobWithMetadata
    replayed: bool = False


@dataclass
class WorkerHandle:
    """A background work loop registered by JobQueue.work."""

    id: str
    name: str
    running: bool = True
    task: asyncio.Task | None = field(default=None, repr=False)

    def stop(self) -> None:
        """Request the loop to stop at its next iteration."""
        self.running = False


class JobQueue:
    """
    Job queue backed by broker topics.

    Features:
    - Singleton keys: at most one non-terminal job per key
    - Scheduled jobs: never activated before start_after
    - Priority-ordered fetches
    - Retries with fixed or exponential delay, dead letter when exhausted
    - Cancellation enforced through registry state
    """

    def __init__(
        self,
        broker: BrokerClient | None = None,
        producer: Producer | None = None,
        consumer: Consumer | None = None,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """
        Initialize the job queue.

        Args:
            broker: Broker client. Built from settings when omitted.
            producer: Producer used to publish job envelopes and dead letters.
            consumer: Consumer used to pull job envelopes.
            settings: Settings override.
            clock: Returns the current aware UTC datetime.
            sleep: Coroutine used for the idle wait of work loops.
        """
        settings = settings or get_settings()

        self._broker = broker if broker is not None else create_broker(settings)
        self._producer = producer or Producer(broker=self._broker, settings=settings)
        self._consumer = consumer or Consumer(
            broker=self._broker,
            producer=self._producer,
            group_id="job-queue",
            settings=settings,
        )
        self.fetch_window = settings.job_fetch_window
        self.polling_interval_seconds = settings.job_polling_interval_seconds
        self._clock = clock
        self._sleep = sleep

        self._jobs: dict[str, JobWithMetadata] = {}
        self._pending: dict[Topic, list[PendingJob]] = defaultdict(list)
        self._workers: dict[str, WorkerHandle] = {}
        self._lock = asyncio.Lock()
        self._started = False
        self._metrics = get_metrics()

    @property
    def is_configured(self) -> bool:
        """Whether a broker client is configured."""
        return self._broker is not None

    def is_available(self) -> bool:
        """Whether the queue is configured and started."""
        return self.is_configured and self._started

    async def start(self) -> "JobQueue":
        """
        Start the queue. Required before send, fetch and work.

        Raises:
            QueueNotConfiguredError: If broker credentials are missing.
        """
        if not self.is_configured:
            raise QueueNotConfiguredError(
                "JobQueue is not configured - missing Upstash Kafka credentials"
            )
        self._started = True
        logger.info("Job queue started")
        return self

    async def stop(self, graceful: bool = True, timeout: float = 5.0) -> None:
        """
        Stop all workers and the queue.

        Args:
            graceful: Wait up to timeout seconds for work loops to exit;
                otherwise cancel them.
            timeout: Grace period in seconds.
        """
        workers = list(self._workers.values())
        for worker in workers:
            worker.stop()

        tasks = [w.task for w in workers if w.task is not None and not w.task.done()]
        if tasks:
            if graceful:
                _, still_running = await asyncio.wait(tasks, timeout=timeout)
                if still_running:
                    logger.warning(
                        f"{len(still_running)} workers still running after {timeout}s"
                    )
            else:
                for task in tasks:
                    task.cancel()

        self._workers.clear()
        self._started = False
        logger.info("Job queue stopped", extra={"workers": len(workers)})

    @staticmethod
    def _calculate_expiration(options: SendOptions) -> int:
        if options.expire_in_seconds:
            return options.expire_in_seconds
        if options.expire_in_minutes:
            return options.expire_in_minutes * 60
        if options.expire_in_hours:
            return options.expire_in_hours * 3600
        return DEFAULT_JOB_EXPIRE_SECONDS

    @staticmethod
    def _calculate_start_after(options: SendOptions, now: datetime) -> datetime:
        value = options.start_after
        if value is None:
            return now
        if isinstance(value, datetime):
            return _aware(value)
        if isinstance(value, (int, float)):
            return now + timedelta(seconds=value)
        return _aware(datetime.fromisoformat(value))

    def _job_envelope(self, job: JobWithMetadata) -> Envelope:
        return Envelope(
            id=job.id,
            topic=queue_to_topic(job.name),
            data=job.model_dump(mode="json", by_alias=True),
            timestamp=int(self._clock().timestamp() * 1000),
            retry_count=job.retry_count,
            idempotency_key=f"job-{job.id}",
        )

    def _singleton_taken(self, key: str, exclude_id: str | None = None) -> bool:
        return any(
            job.singleton_key == key and not job.is_terminal and job.id != exclude_id
            for job in self._jobs.values()
        )

    async def send(
        self,
        name: str,
        data: Any,
        options: SendOptions | None = None,
    ) -> str | None:
        """
        Publish a new job.

        Args:
            name: Queue name; mapped to a topic.
            data: Job payload.
            options: Scheduling, retry, priority and singleton options.

        Returns:
            The job id, or None when the queue is not started, the singleton
            key is held by a non-terminal job, or the publish failed.
        """
        if not self.is_available():
            logger.warning("send called on a queue that is not started", extra={"queue": name})
            return None

        options = options or SendOptions()
        now = self._clock()
        expire_in_seconds = self._calculate_expiration(options)

        job = JobWithMetadata(
            id=options.id or generate_message_id("job-"),
            name=name,
            data=data,
            expire_in_seconds=expire_in_seconds,
            priority=options.priority if options.priority is not None else DEFAULT_JOB_PRIORITY,
            state=JobState.CREATED,
            retry_limit=options.retry_limit if options.retry_limit is not None else DEFAULT_MAX_RETRIES,
            retry_count=0,
            retry_delay=(
                options.retry_delay
                if options.retry_delay is not None
                else DEFAULT_JOB_RETRY_DELAY_SECONDS
            ),
            retry_backoff=options.retry_backoff if options.retry_backoff is not None else True,
            start_after=self._calculate_start_after(options, now),
            singleton_key=options.singleton_key,
            created_on=now,
            keep_until=now + timedelta(seconds=expire_in_seconds),
        )

        async with self._lock:
            if job.singleton_key and self._singleton_taken(job.singleton_key):
                logger.info(
                    "Singleton job already queued",
                    extra={"queue": name, "singleton_key": job.singleton_key},
                )
                return None
            existing = self._jobs.get(job.id)
            if existing is not None and not existing.is_terminal:
                logger.warning("Duplicate job id", extra={"job_id": job.id})
                return None
            # Reserve before publishing so concurrent sends see the singleton key
            self._jobs[job.id] = job

        result = await self._producer.publish(self._job_envelope(job))
        if not result.success:
            async with self._lock:
                self._jobs.pop(job.id, None)
            logger.error(
                "Failed to publish job",
                extra={"queue": name, "job_id": job.id, "error": result.error},
            )
            return None

        self._metrics.record_job_sent(name)
        logger.info(
            "Job sent",
            extra={"queue": name, "job_id": job.id, "start_after": job.start_after.isoformat()},
        )
        return job.id

    async def _pull(self, topic: Topic) -> None:
        """Move newly published job envelopes of a topic into the pending buffer."""
        result = await self._consumer.consume(topic, max_messages=self.fetch_window)
        if result.error:
            logger.warning("Job fetch from broker failed", extra={"topic": str(topic), "error": result.error})

        pulled: list[PendingJob] = []
        for envelope in result.messages:
            try:
                record = JobWithMetadata.model_validate(envelope.data)
            except ValidationError as e:
                logger.warning(
                    "Skipping envelope without a job record",
                    extra={"message_id": envelope.id, "error": str(e)[:200]},
                )
                continue

            # A dead-lettered job replayed from the DLQ comes back with retry_count reset
            if record.state == JobState.FAILED and envelope.retry_count == 0:
                record = record.model_copy(
                    update={
                        "state": JobState.CREATED,
                        "retry_count": 0,
                        "start_after": self._clock(),
                        "completed_on": None,
                    }
                )
                pulled.append(PendingJob(record=record, replayed=True))
            else:
                pulled.append(PendingJob(record=record))

        if pulled:
            async with self._lock:
                self._pending[topic].extend(pulled)

    def _is_eligible(self, pending: PendingJob, now: datetime) -> bool | None:
        """
        True if the job can be activated now, False if it must wait, None if
        it must be dropped.
        """
        record = pending.record
        current = self._jobs.get(record.id)

        if current is None:
            return record.start_after <= now

        if pending.replayed and current.state == JobState.FAILED:
            if record.singleton_key and self._singleton_taken(record.singleton_key, exclude_id=record.id):
                logger.warning(
                    "Dropping replayed job: singleton key is held by another job",
                    extra={"job_id": record.id, "singleton_key": record.singleton_key},
                )
                return None
            return True
        if current.state not in FETCHABLE_JOB_STATES:
            return None
        return current.start_after <= now

    async def fetch(
        self,
        name: str,
        options: FetchOptions | None = None,
    ) -> list[Job] | list[JobWithMetadata] | None:
        """
        Activate and return jobs that are ready to run.

        Jobs whose start_after is in the future stay buffered for a later
        fetch. Cancelled, active and terminal jobs are never activated.

        Args:
            name: Queue name.
            options: Batch size, priority ordering and metadata flag.

        Returns:
            The activated jobs (possibly empty), or None if the queue is not started.
        """
        if not self.is_available():
            return None

        options = options or FetchOptions()
        topic = queue_to_topic(name)
        await self._pull(topic)

        now = self._clock()
        selected: list[JobWithMetadata] = []

        async with self._lock:
            candidates: list[PendingJob] = []
            remaining: list[PendingJob] = []
            seen: set[str] = set()
            replayed_keys: set[str] = set()

            for pending in self._pending[topic]:
                if pending.record.name != name:
                    remaining.append(pending)
                    continue
                eligible = self._is_eligible(pending, now)
                if eligible is None or pending.record.id in seen:
                    logger.debug("Dropping stale job envelope", extra={"job_id": pending.record.id})
                elif eligible:
                    key = pending.record.singleton_key
                    if pending.replayed and key:
                        if key in replayed_keys:
                            logger.warning(
                                "Dropping replayed job: singleton key is held by another job",
                                extra={"job_id": pending.record.id, "singleton_key": key},
                            )
                            continue
                        replayed_keys.add(key)
                    candidates.append(pending)
                    seen.add(pending.record.id)
                else:
                    remaining.append(pending)

            if options.priority:
                # sorted() is stable, so equal priorities keep fetch order
                ordered = sorted(candidates, key=lambda p: p.record.priority, reverse=True)
            else:
                ordered = candidates

            chosen = ordered[:options.batch_size]
            chosen_ids = {p.record.id for p in chosen}
            remaining.extend(p for p in candidates if p.record.id not in chosen_ids)
            self._pending[topic] = remaining

            for pending in chosen:
                job = pending.record
                if pending.replayed:
                    job = job.model_copy()
                else:
                    job = self._jobs.get(job.id, job)
                job.state = JobState.ACTIVE
                job.started_on = now
                self._jobs[job.id] = job
                selected.append(job.model_copy())

        if selected:
            logger.info(f"Fetched {len(selected)} jobs", extra={"queue": name})

        if options.include_metadata:
            return selected
        return [job.to_job() for job in selected]

    async def complete(self, name: str, job_id: str, data: Any = None) -> bool:
        """
        Mark a non-terminal job completed.

        Returns:
            True if the job transitioned.
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                logger.warning(
                    "complete ignored: job is unknown or finished",
                    extra={"queue": name, "job_id": job_id},
                )
                return False
            job.state = JobState.COMPLETED
            job.completed_on = self._clock()

        self._metrics.record_job_finished(name, JobState.COMPLETED)
        logger.info("Job completed", extra={"queue": name, "job_id": job_id})
        return True

    async def fail(self, name: str, job_id: str, data: Any = None) -> bool:
        """
        Record a failed attempt of a non-terminal job.

        When retry_count reaches retry_limit the job becomes failed and a
        dead letter is emitted; otherwise it moves to retry with
        start_after = now + retry_delay * (2 ** (retry_count - 1) if backoff else 1)
        and is republished.

        Args:
            name: Queue name.
            job_id: The job id.
            data: Failure details; an "error" key becomes the dead-letter reason.

        Returns:
            True if the job transitioned.
        """
        error_reason = (
            str(data["error"]) if isinstance(data, dict) and "error" in data else "Unknown error"
        )

        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                logger.warning(
                    "fail ignored: job is unknown or finished",
                    extra={"queue": name, "job_id": job_id},
                )
                return False

            now = self._clock()
            job.retry_count += 1
            exhausted = job.retry_count >= job.retry_limit

            if exhausted:
                job.state = JobState.FAILED
                job.completed_on = now
            else:
                multiplier = 2 ** (job.retry_count - 1) if job.retry_backoff else 1
                job.state = JobState.RETRY
                job.start_after = now + timedelta(seconds=job.retry_delay * multiplier)

            envelope = self._job_envelope(job)

        if exhausted:
            self._metrics.record_job_finished(name, JobState.FAILED)
            result = await self._producer.send_to_dlq(envelope, error_reason)
            logger.warning(
                "Job failed permanently",
                extra={"queue": name, "job_id": job_id, "retry_count": job.retry_count, "error": error_reason},
            )
        else:
            result = await self._producer.publish(envelope)
            logger.info(
                "Job scheduled for retry",
                extra={
                    "queue": name,
                    "job_id": job_id,
                    "retry_count": job.retry_count,
                    "start_after": job.start_after.isoformat(),
                },
            )

        if not result.success:
            logger.error(
                "Failed to publish failed job",
                extra={"queue": name, "job_id": job_id, "error": result.error},
            )
        return True

    async def cancel(self, name: str, job_ids: str | Sequence[str]) -> int:
        """
        Cancel one or more non-terminal jobs.

        No broker call is made; fetch checks registry state before activating
        any envelope still sitting in the topic.

        Returns:
            Number of jobs cancelled.
        """
        ids = [job_ids] if isinstance(job_ids, str) else list(job_ids)
        cancelled = 0

        async with self._lock:
            now = self._clock()
            for job_id in ids:
                job = self._jobs.get(job_id)
                if job is None or job.is_terminal:
                    continue
                job.state = JobState.CANCELLED
                job.completed_on = now
                cancelled += 1

        for _ in range(cancelled):
            self._metrics.record_job_finished(name, JobState.CANCELLED)
        if cancelled:
            logger.info(f"Cancelled {cancelled} jobs", extra={"queue": name})
        return cancelled

    async def get_job_by_id(self, name: str, job_id: str) -> JobWithMetadata | None:
        """Get a copy of a job's registry record."""
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job is not None else None

    async def work(
        self,
        name: str,
        handler: WorkHandler,
        options: WorkOptions | None = None,
    ) -> str:
        """
        Start a background loop that fetches jobs and runs the handler.

        The handler receives the fetched batch. When it returns every job in
        the batch is completed; when it raises every job is failed with the
        error message. An empty fetch waits polling_interval_seconds.

        Args:
            name: Queue name.
            handler: Coroutine called with each fetched batch.
            options: Fetch options plus the polling interval.

        Returns:
            The worker id, usable with off_work.
        """
        options = options or WorkOptions()
        interval = options.polling_interval_seconds or self.polling_interval_seconds
        fetch_options = FetchOptions(
            include_metadata=options.include_metadata,
            priority=options.priority,
            batch_size=options.batch_size,
        )
        worker = WorkerHandle(id=generate_message_id(f"worker-{name}-"), name=name)

        async def loop() -> None:
            bind_worker_context(worker.id, name)
            logger.info("Worker started", extra={"worker_id": worker.id, "queue": name})
            while worker.running and self._started:
                try:
                    jobs = await self.fetch(name, fetch_options)
                    if jobs is None:
                        break
                    if not jobs:
                        await self._sleep(interval)
                        continue

                    try:
                        with create_span(SPAN_EXECUTE_JOBS, queue=name, count=len(jobs)):
                            await handler(jobs)
                    except Exception as e:
                        logger.warning(
                            "Job handler failed",
                            extra={"worker_id": worker.id, "queue": name, "error": str(e)},
                        )
                        for job in jobs:
                            await self.fail(name, job.id, {"error": str(e)})
                    else:
                        for job in jobs:
                            await self.complete(name, job.id)

                except Exception as e:
                    logger.exception(
                        f"Error in worker loop: {e}",
                        extra={"worker_id": worker.id},
                    )
                    await self._sleep(interval)

            logger.info("Worker stopped", extra={"worker_id": worker.id})

        worker.task = asyncio.create_task(loop())
        self._workers[worker.id] = worker
        return worker.id

    async def off_work(self, name: str | None = None, worker_id: str | None = None) -> int:
        """
        Stop work loops, either all loops of a queue or one loop by id.

        Returns:
            Number of loops stopped.
        """
        if worker_id is not None:
            targets = [worker_id] if worker_id in self._workers else []
        else:
            targets = [wid for wid, w in self._workers.items() if w.name == name]

        for wid in targets:
            self._workers.pop(wid).stop()
        return len(targets)
