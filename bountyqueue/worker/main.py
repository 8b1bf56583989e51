"""
Worker process for executing jobs.

The worker starts one JobQueue work loop per registered handler and keeps
them running until SIGTERM/SIGINT, then stops them gracefully.
"""

import asyncio
import logging
import os
import signal

from bountyqueue.config import get_settings
from bountyqueue.factory import close_instances, get_job_queue
from bountyqueue.job_queue import JobQueue
from bountyqueue.null import NullJobQueue
from bountyqueue.observability.logging import setup_logging
from bountyqueue.observability.metrics import setup_metrics
from bountyqueue.observability.tracing import setup_tracing
from bountyqueue.worker.handlers import get_handler, list_handlers, load_handler_modules

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that runs a work loop per registered queue.

    Features:
    - One JobQueue.work loop per queue handler
    - Graceful shutdown on SIGTERM/SIGINT
    - Retry and DLQ handling delegated to the job queue
    """

    def __init__(
        self,
        job_queue: JobQueue | NullJobQueue | None = None,
        worker_id: str | None = None,
        shutdown_timeout: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            job_queue: Job queue to run against. Defaults to the flag-gated factory instance.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            shutdown_timeout: Seconds to wait for in-flight batches on stop.
        """
        settings = get_settings()

        self.job_queue = job_queue or get_job_queue()
        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.shutdown_timeout = shutdown_timeout or settings.worker_shutdown_timeout_seconds

        self._running = False
        self._stop_event = asyncio.Event()
        self._loop_ids: dict[str, str] = {}

    @property
    def is_running(self) -> bool:
        """Whether the worker has started and not been asked to stop."""
        return self._running

    @property
    def queues(self) -> list[str]:
        """Queues with an active work loop."""
        return list(self._loop_ids.keys())

    async def start(self) -> None:
        """Start the work loops and block until stop() is called."""
        if not self.job_queue.is_available():
            if isinstance(self.job_queue, NullJobQueue):
                logger.warning(
                    "Queue feature flag is disabled, worker has nothing to do",
                    extra={"worker_id": self.worker_id},
                )
                return
            await self.job_queue.start()

        queues = list_handlers()
        if not queues:
            logger.warning("No job handlers registered", extra={"worker_id": self.worker_id})

        self._running = True
        for queue in queues:
            registration = get_handler(queue)
            loop_id = await self.job_queue.work(queue, registration.handler, registration.options)
            self._loop_ids[queue] = loop_id

        logger.info(
            "Worker started",
            extra={"worker_id": self.worker_id, "queues": queues},
        )

        await self._stop_event.wait()

        await self.job_queue.stop(graceful=True, timeout=self.shutdown_timeout)
        self._loop_ids.clear()
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_event.set()


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_tracing()
    setup_metrics(settings.prometheus_port)
    load_handler_modules(settings.worker_handler_modules)

    worker = Worker()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_instances()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
