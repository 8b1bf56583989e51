"""
Dead-letter queue monitor.

Runs periodically to check the DLQ against the configured alert thresholds.
Each check refreshes the dlq_depth gauge; a breached threshold is logged at
error level so log-based alerting can pick it up.
"""

import asyncio
import logging
import signal

from bountyqueue.config import get_settings
from bountyqueue.dlq import DeadLetterQueueHandler
from bountyqueue.factory import close_instances, get_dlq_handler
from bountyqueue.null import NullDeadLetterQueueHandler
from bountyqueue.observability.logging import setup_logging
from bountyqueue.observability.metrics import setup_metrics
from bountyqueue.types.results import AlertCheckResult

logger = logging.getLogger(__name__)


class DLQMonitor:
    """
    Periodic dead-letter queue alert check.

    Runs periodically to:
    1. Read new dead letters into the handler's view
    2. Compare depth and oldest age against the thresholds
    3. Log an alert with the breached thresholds
    """

    def __init__(
        self,
        handler: DeadLetterQueueHandler | NullDeadLetterQueueHandler | None = None,
        interval_seconds: int | None = None,
        max_messages: int | None = None,
        max_age_seconds: int | None = None,
    ):
        """
        Initialize the monitor.

        Args:
            handler: DLQ handler to check. Defaults to the flag-gated factory instance.
            interval_seconds: Seconds between checks.
            max_messages: Depth threshold.
            max_age_seconds: Oldest-message age threshold.
        """
        settings = get_settings()
        self.handler = handler or get_dlq_handler()
        self.interval = interval_seconds or settings.dlq_monitor_interval_seconds
        self.max_messages = max_messages or settings.dlq_alert_max_messages
        self.max_age_ms = (max_age_seconds or settings.dlq_alert_max_age_seconds) * 1000
        self._running = False

    async def start(self) -> None:
        """Start the monitor loop."""
        logger.info(f"DLQ monitor starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in DLQ monitor loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("DLQ monitor stopped")

    async def stop(self) -> None:
        """Stop the monitor."""
        logger.info("DLQ monitor stopping")
        self._running = False

    async def run_once(self) -> AlertCheckResult:
        """
        Run one check (for testing or cron-style execution).

        Returns:
            The alert check result.
        """
        result = await self.handler.check_alert_thresholds(
            max_messages=self.max_messages,
            max_age_ms=self.max_age_ms,
        )

        if result.alert:
            logger.error("DLQ alert", extra={"reasons": result.reasons})
        else:
            logger.debug("DLQ within thresholds")

        return result


async def run_async() -> None:
    """Run the monitor asynchronously."""
    setup_logging()
    setup_metrics(get_settings().prometheus_port)

    monitor = DLQMonitor()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(monitor.stop())
        )

    try:
        await monitor.start()
    finally:
        await close_instances()


def run() -> None:
    """Run the monitor."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
