"""
Unit tests for the job-queue adapter.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from bountyqueue.config import Settings
from bountyqueue.constants import JobState, Topic
from bountyqueue.dlq import DeadLetterQueueHandler
from bountyqueue.exceptions import QueueNotConfiguredError
from bountyqueue.job_queue import JobQueue
from bountyqueue.types.job import FetchOptions, Job, JobWithMetadata, SendOptions, WorkOptions

QUEUE = "agent-execution"
WITH_METADATA = FetchOptions(include_metadata=True, batch_size=10)


@pytest_asyncio.fixture
async def started(job_queue: JobQueue):
    """A started job queue, stopped after the test."""
    await job_queue.start()
    yield job_queue
    await job_queue.stop(graceful=False)


async def wait_for_state(queue: JobQueue, job_id: str, state: JobState, timeout: float = 2.0) -> JobWithMetadata:
    async def poll() -> JobWithMetadata:
        while True:
            job = await queue.get_job_by_id(QUEUE, job_id)
            if job is not None and job.state == state:
                return job
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(poll(), timeout=timeout)


class TestLifecycle:
    """Tests for start/stop and availability."""

    @pytest.mark.asyncio
    async def test_start_requires_configuration(self):
        """Test that starting without credentials raises."""
        settings = Settings(
            upstash_kafka_rest_url=None,
            upstash_kafka_rest_username=None,
            upstash_kafka_rest_password=None,
        )
        queue = JobQueue(settings=settings)

        with pytest.raises(QueueNotConfiguredError):
            await queue.start()
        assert queue.is_available() is False

    @pytest.mark.asyncio
    async def test_operations_before_start(self, job_queue):
        """Test that send and fetch are inert until the queue is started."""
        assert await job_queue.send(QUEUE, {"n": 1}) is None
        assert await job_queue.fetch(QUEUE) is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, job_queue):
        """Test availability across start and stop."""
        assert await job_queue.start() is job_queue
        assert job_queue.is_available() is True

        await job_queue.stop()

        assert job_queue.is_available() is False


class TestSend:
    """Tests for publishing jobs."""

    @pytest.mark.asyncio
    async def test_send_publishes_job_record(self, started, broker, clock):
        """Test the envelope published for a new job."""
        job_id = await started.send(QUEUE, {"bountyId": "b1"}, SendOptions(priority=2))

        [envelope] = broker.envelopes(Topic.AGENT_EXECUTION_QUEUE)
        assert job_id.startswith("job-")
        assert envelope.id == job_id
        assert envelope.idempotency_key == f"job-{job_id}"
        assert envelope.data["state"] == "created"
        assert envelope.data["priority"] == 2
        assert envelope.data["data"] == {"bountyId": "b1"}

        job = await started.get_job_by_id(QUEUE, job_id)
        assert job.retry_limit == 5
        assert job.retry_delay == 1.0
        assert job.retry_backoff is True
        assert job.expire_in_seconds == 3600
        assert job.start_after == clock.now
        assert job.keep_until == clock.now + timedelta(hours=1)

    @pytest.mark.parametrize(
        ("options", "expected"),
        [
            (SendOptions(), 3600),
            (SendOptions(expire_in_hours=2), 7200),
            (SendOptions(expire_in_minutes=5, expire_in_hours=2), 300),
            (SendOptions(expire_in_seconds=30, expire_in_minutes=5), 30),
        ],
    )
    @pytest.mark.asyncio
    async def test_expiration_precedence(self, started, options, expected):
        """Test that seconds win over minutes, which win over hours."""
        job_id = await started.send(QUEUE, {}, options)

        job = await started.get_job_by_id(QUEUE, job_id)
        assert job.expire_in_seconds == expected

    @pytest.mark.parametrize(
        ("name", "topic"),
        [
            ("agent-execution", Topic.AGENT_EXECUTION_QUEUE),
            ("agent-results", Topic.AGENT_RESULTS_QUEUE),
            ("notifications", Topic.NOTIFICATIONS_QUEUE),
            ("execution", Topic.AGENT_EXECUTION_QUEUE),
        ],
    )
    @pytest.mark.asyncio
    async def test_queue_name_mapping(self, started, broker, name, topic):
        """Test that queue names map to topics, unknown names to the execution topic."""
        await started.send(name, {})

        assert len(broker.envelopes(topic)) == 1

    @pytest.mark.asyncio
    async def test_failed_publish_returns_none(self, started, broker):
        """Test that a publish failure returns None and releases the singleton key."""
        broker.failing_topics.add(Topic.AGENT_EXECUTION_QUEUE)

        assert await started.send(QUEUE, {}, SendOptions(singleton_key="k")) is None

        broker.failing_topics.clear()
        assert await started.send(QUEUE, {}, SendOptions(singleton_key="k")) is not None


class TestSingleton:
    """Tests for singleton keys."""

    @pytest.mark.asyncio
    async def test_singleton_exclusive_until_terminal(self, started):
        """Test that a key is held until its job completes."""
        first = await started.send(QUEUE, {"n": 1}, SendOptions(singleton_key="bounty-1"))
        second = await started.send(QUEUE, {"n": 2}, SendOptions(singleton_key="bounty-1"))

        assert first is not None
        assert second is None

        await started.fetch(QUEUE)
        assert await started.complete(QUEUE, first) is True

        third = await started.send(QUEUE, {"n": 3}, SendOptions(singleton_key="bounty-1"))
        assert third is not None

    @pytest.mark.asyncio
    async def test_singleton_released_by_cancel(self, started):
        """Test that cancelling the holder releases the key."""
        first = await started.send(QUEUE, {}, SendOptions(singleton_key="k"))
        await started.cancel(QUEUE, first)

        assert await started.send(QUEUE, {}, SendOptions(singleton_key="k")) is not None

    @pytest.mark.asyncio
    async def test_concurrent_sends(self, started):
        """Test that concurrent sends with one key produce exactly one job."""
        results = await asyncio.gather(
            *(started.send(QUEUE, {"i": i}, SendOptions(singleton_key="k")) for i in range(5))
        )

        assert len([r for r in results if r is not None]) == 1

    @pytest.mark.asyncio
    async def test_replayed_job_respects_singleton_key(self, started, broker, producer, test_settings):
        """Test that a replayed dead letter is dropped while another job holds its key."""
        original = await started.send(QUEUE, {"n": 1}, SendOptions(singleton_key="k", retry_limit=1))
        await started.fetch(QUEUE)
        await started.fail(QUEUE, original, {"error": "boom"})

        replacement = await started.send(QUEUE, {"n": 2}, SendOptions(singleton_key="k"))
        assert replacement is not None

        dlq = DeadLetterQueueHandler(broker=broker, producer=producer, settings=test_settings)
        result = await dlq.replay_filtered(lambda message: True)
        assert result.replayed == 1

        fetched = await started.fetch(QUEUE, WITH_METADATA)
        assert [job.id for job in fetched] == [replacement]

        jobs = [await started.get_job_by_id(QUEUE, job_id) for job_id in (original, replacement)]
        assert jobs[0].state == JobState.FAILED
        assert len([job for job in jobs if not job.is_terminal]) == 1


class TestFetch:
    """Tests for activating jobs."""

    @pytest.mark.asyncio
    async def test_fetch_activates_job(self, started, clock):
        """Test that a fetched job becomes active."""
        job_id = await started.send(QUEUE, {"n": 1})

        [job] = await started.fetch(QUEUE)

        assert isinstance(job, Job)
        assert not isinstance(job, JobWithMetadata)
        assert job.id == job_id
        assert job.data == {"n": 1}

        stored = await started.get_job_by_id(QUEUE, job_id)
        assert stored.state == JobState.ACTIVE
        assert stored.started_on == clock.now

    @pytest.mark.asyncio
    async def test_active_job_is_not_fetched_twice(self, started):
        """Test that an active job is not handed out again."""
        await started.send(QUEUE, {})
        await started.fetch(QUEUE)

        assert await started.fetch(QUEUE) == []

    @pytest.mark.asyncio
    async def test_batch_size(self, started):
        """Test that jobs beyond the batch size stay for the next fetch."""
        for i in range(3):
            await started.send(QUEUE, {"n": i})

        first = await started.fetch(QUEUE, FetchOptions(batch_size=2))
        second = await started.fetch(QUEUE, FetchOptions(batch_size=2))

        assert [j.data["n"] for j in first] == [0, 1]
        assert [j.data["n"] for j in second] == [2]

    @pytest.mark.asyncio
    async def test_priority_ordering(self, started):
        """Test that priority fetches return the highest priority first."""
        for priority in (1, 5, 3):
            await started.send(QUEUE, {"p": priority}, SendOptions(priority=priority))

        jobs = await started.fetch(QUEUE, FetchOptions(priority=True, batch_size=10, include_metadata=True))

        assert [j.priority for j in jobs] == [5, 3, 1]

    @pytest.mark.asyncio
    async def test_priority_ties_keep_fetch_order(self, started):
        """Test that equal priorities keep their publish order."""
        ids = [await started.send(QUEUE, {}, SendOptions(priority=1)) for _ in range(3)]

        jobs = await started.fetch(QUEUE, FetchOptions(priority=True, batch_size=10))

        assert [j.id for j in jobs] == ids

    @pytest.mark.asyncio
    async def test_without_priority_flag(self, started):
        """Test that a plain fetch keeps publish order."""
        for priority in (1, 5, 3):
            await started.send(QUEUE, {}, SendOptions(priority=priority))

        jobs = await started.fetch(QUEUE, WITH_METADATA)

        assert [j.priority for j in jobs] == [1, 5, 3]

    @pytest.mark.asyncio
    async def test_scheduled_job(self, started, clock):
        """Test that a job is not fetched before its start time."""
        job_id = await started.send(QUEUE, {}, SendOptions(start_after=clock.now + timedelta(seconds=60)))

        assert await started.fetch(QUEUE) == []

        clock.advance(61)
        [job] = await started.fetch(QUEUE)
        assert job.id == job_id

    @pytest.mark.parametrize("start_after", [30, 30.0, "2026-01-15T12:00:30+00:00"])
    @pytest.mark.asyncio
    async def test_start_after_forms(self, started, clock, start_after):
        """Test relative seconds and ISO-8601 start times."""
        await started.send(QUEUE, {}, SendOptions(start_after=start_after))

        assert await started.fetch(QUEUE) == []
        clock.advance(30)
        assert len(await started.fetch(QUEUE)) == 1

    @pytest.mark.asyncio
    async def test_other_queue_names_stay_buffered(self, started):
        """Test that names sharing a topic do not steal each other's jobs."""
        a_id = await started.send("custom-a", {})
        b_id = await started.send("custom-b", {})

        [b_job] = await started.fetch("custom-b", FetchOptions(batch_size=10))
        [a_job] = await started.fetch("custom-a", FetchOptions(batch_size=10))

        assert b_job.id == b_id
        assert a_job.id == a_id

    @pytest.mark.asyncio
    async def test_adopts_jobs_from_other_instances(self, started, broker, producer, test_settings, clock):
        """Test that a job sent by another process is fetched and tracked."""
        other = JobQueue(broker=broker, producer=producer, settings=test_settings, clock=clock)
        await other.start()
        job_id = await other.send(QUEUE, {"from": "other"})

        [job] = await started.fetch(QUEUE)

        assert job.id == job_id
        assert (await started.get_job_by_id(QUEUE, job_id)).state == JobState.ACTIVE

    @pytest.mark.asyncio
    async def test_get_job_by_id_returns_copy(self, started):
        """Test that callers cannot mutate the registry."""
        job_id = await started.send(QUEUE, {})

        job = await started.get_job_by_id(QUEUE, job_id)
        job.state = JobState.COMPLETED

        assert (await started.get_job_by_id(QUEUE, job_id)).state == JobState.CREATED
        assert await started.get_job_by_id(QUEUE, "missing") is None


class TestCompleteAndFail:
    """Tests for terminal transitions and retries."""

    @pytest.mark.asyncio
    async def test_complete(self, started, clock):
        """Test completing a job; a finished job cannot be completed again."""
        job_id = await started.send(QUEUE, {})
        await started.fetch(QUEUE)

        assert await started.complete(QUEUE, job_id) is True
        assert await started.complete(QUEUE, job_id) is False

        job = await started.get_job_by_id(QUEUE, job_id)
        assert job.state == JobState.COMPLETED
        assert job.completed_on == clock.now

    @pytest.mark.asyncio
    async def test_fail_exhausted_goes_to_dlq(self, started, broker):
        """Test that failing past the retry limit dead-letters the job."""
        job_id = await started.send("execution", {"n": 1}, SendOptions(retry_limit=1))

        assert await started.fail("execution", job_id, {"error": "boom"}) is True

        job = await started.get_job_by_id("execution", job_id)
        assert job.state == JobState.FAILED
        assert job.retry_count == 1

        [dead_letter] = broker.envelopes(Topic.AGENT_EXECUTION_DLQ)
        assert dead_letter.data["errorReason"] == "boom"
        assert dead_letter.data["originalTopic"] == "agent-execution-queue"
        assert dead_letter.data["originalMessage"]["id"] == job_id
        assert dead_letter.data["originalMessage"]["retryCount"] == 1

    @pytest.mark.asyncio
    async def test_fail_without_error_key(self, started, broker):
        """Test the default dead-letter reason."""
        job_id = await started.send(QUEUE, {}, SendOptions(retry_limit=1))
        await started.fetch(QUEUE)

        await started.fail(QUEUE, job_id)

        [dead_letter] = broker.envelopes(Topic.AGENT_EXECUTION_DLQ)
        assert dead_letter.data["errorReason"] == "Unknown error"

    @pytest.mark.asyncio
    async def test_retry_with_exponential_backoff(self, started, clock):
        """Test that retry delays double with each failure."""
        job_id = await started.send(QUEUE, {}, SendOptions(retry_limit=4, retry_delay=10))

        await started.fetch(QUEUE)
        await started.fail(QUEUE, job_id, {"error": "first"})

        job = await started.get_job_by_id(QUEUE, job_id)
        assert job.state == JobState.RETRY
        assert job.start_after == clock.now + timedelta(seconds=10)
        assert await started.fetch(QUEUE) == []

        clock.advance(10)
        [retried] = await started.fetch(QUEUE, WITH_METADATA)
        assert retried.id == job_id
        assert retried.retry_count == 1

        await started.fail(QUEUE, job_id, {"error": "second"})
        job = await started.get_job_by_id(QUEUE, job_id)
        assert job.start_after == clock.now + timedelta(seconds=20)

    @pytest.mark.asyncio
    async def test_retry_with_fixed_delay(self, started, clock):
        """Test that retry delays stay constant without backoff."""
        job_id = await started.send(
            QUEUE, {}, SendOptions(retry_limit=4, retry_delay=5, retry_backoff=False)
        )

        for _ in range(2):
            await started.fetch(QUEUE)
            await started.fail(QUEUE, job_id)
            job = await started.get_job_by_id(QUEUE, job_id)
            assert job.start_after == clock.now + timedelta(seconds=5)
            clock.advance(5)

    @pytest.mark.asyncio
    async def test_fail_ignores_finished_jobs(self, started):
        """Test that failing an unknown or finished job is ignored."""
        job_id = await started.send(QUEUE, {})
        await started.cancel(QUEUE, job_id)

        assert await started.fail(QUEUE, job_id) is False
        assert await started.complete(QUEUE, job_id) is False
        assert await started.fail(QUEUE, "missing") is False

    @pytest.mark.asyncio
    async def test_failed_job_is_not_fetched(self, started):
        """Test that a job failed before its first fetch is never handed out."""
        job_id = await started.send(QUEUE, {}, SendOptions(retry_limit=1))
        await started.fail(QUEUE, job_id)

        assert await started.fetch(QUEUE) == []

    @pytest.mark.asyncio
    async def test_replayed_dead_letter_is_fetchable(self, started, broker, producer, test_settings):
        """Test that replaying a dead-lettered job brings it back."""
        job_id = await started.send(QUEUE, {"n": 1}, SendOptions(retry_limit=1))
        await started.fetch(QUEUE)
        await started.fail(QUEUE, job_id, {"error": "boom"})

        dlq = DeadLetterQueueHandler(broker=broker, producer=producer, settings=test_settings)
        result = await dlq.replay_by_topic(Topic.AGENT_EXECUTION_QUEUE)
        assert result.replayed == 1

        [job] = await started.fetch(QUEUE, WITH_METADATA)
        assert job.id == job_id
        assert job.retry_count == 0
        assert job.state == JobState.ACTIVE


class TestCancel:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancelled_job_is_never_fetched(self, started):
        """Test that a cancelled job's envelope is dropped."""
        job_id = await started.send(QUEUE, {})

        assert await started.cancel(QUEUE, job_id) == 1
        assert await started.fetch(QUEUE) == []

        job = await started.get_job_by_id(QUEUE, job_id)
        assert job.state == JobState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_many(self, started):
        """Test cancelling several ids, skipping terminal and unknown ones."""
        a = await started.send(QUEUE, {})
        b = await started.send(QUEUE, {})
        await started.cancel(QUEUE, a)

        assert await started.cancel(QUEUE, [a, b, "missing"]) == 1


class TestWork:
    """Tests for background work loops."""

    @pytest.mark.asyncio
    async def test_work_completes_jobs(self, started):
        """Test that a successful handler completes its batch."""
        batches = []

        async def handler(jobs):
            batches.append([job.id for job in jobs])

        job_id = await started.send(QUEUE, {"n": 1})
        worker_id = await started.work(QUEUE, handler, WorkOptions(polling_interval_seconds=0.01))

        await wait_for_state(started, job_id, JobState.COMPLETED)

        assert worker_id.startswith(f"worker-{QUEUE}-")
        assert batches == [[job_id]]
        assert await started.off_work(worker_id=worker_id) == 1

    @pytest.mark.asyncio
    async def test_work_fails_jobs_on_error(self, started, broker):
        """Test that a raising handler fails every job of the batch."""
        async def handler(jobs):
            raise RuntimeError("runner crashed")

        job_id = await started.send(QUEUE, {}, SendOptions(retry_limit=1))
        await started.work(QUEUE, handler, WorkOptions(polling_interval_seconds=0.01))

        await wait_for_state(started, job_id, JobState.FAILED)

        [dead_letter] = broker.envelopes(Topic.AGENT_EXECUTION_DLQ)
        assert dead_letter.data["errorReason"] == "runner crashed"
        assert await started.off_work(QUEUE) == 1

    @pytest.mark.asyncio
    async def test_stop_ends_work_loops(self, job_queue):
        """Test that stop() ends every loop."""
        await job_queue.start()

        async def handler(jobs):
            return None

        await job_queue.work(QUEUE, handler)
        await job_queue.work("notifications", handler)

        await job_queue.stop(graceful=True, timeout=1.0)

        assert job_queue.is_available() is False
        assert await job_queue.off_work(QUEUE) == 0
